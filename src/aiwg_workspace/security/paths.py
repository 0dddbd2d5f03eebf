# src/aiwg_workspace/security/paths.py
"""
Path template resolution and path safety validation.

Templates use `{name}` placeholders, e.g.
`frameworks/{framework-id}/projects/{project-id}/requirements`.

Validation runs in a fixed order and stops at the first violation:
1. Parent-directory segments anywhere in the path
2. Absolute or system locations (deny-list)
3. Characters outside the safe set, or a null byte

Unsafe paths are always rejected, never sanitized.
"""
import logging
import re
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from aiwg_workspace.errors import (
    ForbiddenPathError,
    MissingPlaceholderError,
    PathResolutionError,
    PathSecurityError,
    PathTraversalError,
    UnsafeCharacterError,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{([a-zA-Z0-9\-]+)\}")
SAFE_PATH_RE = re.compile(r"^[a-zA-Z0-9\-_/.\s]+$")
DRIVE_RE = re.compile(r"^[a-zA-Z]:")

# Context-supplied placeholders. Values may be passed under either spelling.
CONTEXT_PLACEHOLDERS = {
    "framework-id": "framework_id",
    "project-id": "project_id",
    "campaign-id": "campaign_id",
    "story-id": "story_id",
    "epic-id": "epic_id",
    "sprint-id": "sprint_id",
}

FORBIDDEN_LOCATIONS = (
    "/etc/",
    "/root/",
    "/home/",
    "/usr/",
    "/sys/",
    "/var/",
    "/tmp/",
    "/proc/",
    "/dev/",
    "c:/",
    "d:/",
    "/windows/",
    "/system32/",
)

TIERS = ("repo", "projects", "working", "archive", "campaigns", "stories", "sprints")

PathLike = Union[str, Path]


class PathResolver:
    """
    Resolves workspace path templates against a base directory.

    One resolver is bound to one workspace root; instances over
    different roots are independent.
    """

    def __init__(self, base_path: PathLike = ".aiwg", clock: Optional[Callable[[], datetime]] = None):
        self.base_path = Path(base_path).resolve()
        self._clock = clock or datetime.now
        self._computed: Dict[str, Callable[[], str]] = {
            "YYYY-MM": lambda: self._clock().strftime("%Y-%m"),
        }

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def available_placeholders(self) -> List[str]:
        return list(CONTEXT_PLACEHOLDERS) + list(self._computed)

    @staticmethod
    def extract_placeholders(template: str) -> List[str]:
        """Placeholder names in order of first appearance."""
        names: List[str] = []
        for match in PLACEHOLDER_RE.finditer(template):
            if match.group(1) not in names:
                names.append(match.group(1))
        return names

    def _value_for(self, name: str, context: Mapping[str, object]) -> str:
        if name in self._computed:
            return self._computed[name]()
        if name in CONTEXT_PLACEHOLDERS:
            for key in (name, CONTEXT_PLACEHOLDERS[name]):
                value = context.get(key)
                if value is not None and value != "":
                    return str(value)
        raise MissingPlaceholderError(name, self.available_placeholders())

    def resolve(self, template: str, context: Optional[Mapping[str, object]] = None) -> str:
        """
        Substitute placeholders and validate the result.

        Returns:
            Normalized relative path with no remaining placeholders

        Raises:
            MissingPlaceholderError: unknown or unsupplied placeholder
            PathSecurityError: the substituted path is unsafe
        """
        context = context or {}
        values = {name: self._value_for(name, context) for name in self.extract_placeholders(template)}
        resolved = PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)
        self.validate_path(resolved)
        return self.normalize(resolved)

    def resolve_batch(
        self, templates: Iterable[str], context: Optional[Mapping[str, object]] = None
    ) -> List[str]:
        return [self.resolve(t, context) for t in templates]

    def resolve_absolute(self, template: str, context: Optional[Mapping[str, object]] = None) -> Path:
        return self.base_path / self.resolve(template, context)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate_path(self, path: str) -> None:
        """Raise a PathSecurityError subclass if `path` is unsafe."""
        if not isinstance(path, str) or not path:
            raise PathResolutionError("Path must be a non-empty string")

        unified = path.replace("\\", "/")

        if ".." in unified.split("/"):
            raise PathTraversalError(f"Path traversal detected: {path!r}", path)

        lowered = unified.lower()
        if lowered.startswith(("/", "~")) or DRIVE_RE.match(unified):
            location = next(
                (loc for loc in FORBIDDEN_LOCATIONS if lowered.startswith(loc)),
                "absolute path",
            )
            raise ForbiddenPathError(f"Forbidden path ({location}): {path!r}", path)

        if "\0" in path:
            raise UnsafeCharacterError(f"Null byte in path: {path!r}", path)
        if not SAFE_PATH_RE.match(path.replace("\\", "/")):
            raise UnsafeCharacterError(f"Unsafe characters in path: {path!r}", path)

    def is_safe(self, path: str) -> bool:
        try:
            self.validate_path(path)
        except PathResolutionError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def normalize(path: str) -> str:
        """Forward slashes, no duplicate, leading or trailing separators."""
        unified = re.sub(r"/{2,}", "/", path.replace("\\", "/"))
        return unified.strip("/")

    def detect_tier(self, path: str) -> Optional[str]:
        """Tier segment of `frameworks/{id}/{tier}/...`, or None."""
        parts = self.normalize(path).split("/")
        if len(parts) >= 3 and parts[0] == "frameworks" and parts[2] in TIERS:
            return parts[2]
        return None

    def to_absolute(self, relative: str) -> Path:
        self.validate_path(relative)
        return self.base_path / self.normalize(relative)

    def to_relative(self, absolute: PathLike) -> str:
        """Path relative to the workspace root, in POSIX form."""
        target = Path(absolute).resolve()
        try:
            rel = target.relative_to(self.base_path)
        except ValueError as exc:
            raise PathTraversalError(
                f"Path is outside the workspace root: {absolute}", str(absolute)
            ) from exc
        return PurePosixPath(*rel.parts).as_posix() if rel.parts else ""


__all__ = ["PathResolver", "PathSecurityError", "TIERS"]
