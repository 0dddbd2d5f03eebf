# src/aiwg_workspace/context.py
"""
Context Curator: isolated per-framework file context.

A framework's context is its `repo/` templates, one project's artifacts,
and (optionally) the shared resources directory. Every other registered
framework is excluded.

Design Principles:
- Lazy by default: path lists only, no directory I/O
- Eager loads skip excluded trees and are audited afterwards
- Isolation violations are fatal and never swallowed
- Cross-framework reads are explicit and still path-validated
"""
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from aiwg_workspace.errors import (
    ContextLoadError,
    IsolationViolationError,
    NotFoundError,
    PathResolutionError,
)
from aiwg_workspace.models import ContextFile, FrameworkContext, PluginPatch, PluginType
from aiwg_workspace.registry import PluginRegistry
from aiwg_workspace.security.paths import PathResolver
from aiwg_workspace.services.filter_logic import PathFilter, default_ignore_filter
from aiwg_workspace.services.fs_engine import walk_files

logger = logging.getLogger(__name__)

OWNER_RE = re.compile(r"^frameworks/([^/]+)/")

EXTENSION_TYPES = {
    ".md": "markdown",
    ".markdown": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".js": "javascript",
    ".mjs": "javascript",
    ".py": "python",
    ".txt": "text",
}

# Checked in order against the lower-cased relative path
PATH_HINTS = (
    ("template", "template"),
    ("agent", "agent"),
    ("command", "command"),
    ("requirement", "requirement"),
    ("architecture", "architecture"),
    ("shared", "shared"),
)

MetadataLoader = Callable[[Path], Optional[Mapping[str, object]]]


@dataclass
class FrameworkFile:
    framework_id: str
    path: str
    content: str


@dataclass
class ContextSizeEstimate:
    framework_id: str
    project_id: str
    file_count: int
    total_size: int
    by_path: Dict[str, int]

    @property
    def total_size_mb(self) -> float:
        return self.total_size / (1024 * 1024)


class ContextCurator:
    """
    Loads and caches per-(framework, project) context with isolation.

    Entries are keyed by framework, project and whether shared resources
    were included. An eager entry loaded without the isolation audit is
    audited before it serves a request that asks for one. The cache for a
    framework is dropped whenever its registry record changes through the
    bound registry instance.
    """

    def __init__(
        self,
        base_path: Union[str, Path] = ".aiwg",
        registry: Optional[PluginRegistry] = None,
        shared_dir: str = "shared",
        cache_ttl: float = 300.0,
        metadata_loader: Optional[MetadataLoader] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry or PluginRegistry(base_path)
        self.resolver = PathResolver(base_path)
        self.base_path = self.resolver.base_path
        self.shared_dir = shared_dir
        self.cache_ttl = cache_ttl
        self.metadata_loader = metadata_loader
        self._clock = clock
        self._ignore = default_ignore_filter()
        # (framework, project, include_shared) -> (stored_at, context, audited)
        self._cache: Dict[Tuple[str, str, bool], Tuple[float, FrameworkContext, bool]] = {}
        self.registry.subscribe(self.invalidate_cache)

    @classmethod
    def from_settings(cls, settings, registry: Optional[PluginRegistry] = None) -> "ContextCurator":
        return cls(
            base_path=settings.workspace.root,
            registry=registry,
            shared_dir=settings.workspace.shared_dir,
            cache_ttl=settings.cache.ttl_seconds,
        )

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def _framework_root(self, framework_id: str) -> Path:
        return self.base_path / "frameworks" / framework_id

    def _framework_ids(self) -> List[str]:
        return [p.id for p in self.registry.get_by_type(PluginType.FRAMEWORK)]

    def _require_framework(self, framework_id: str) -> None:
        ids = self._framework_ids()
        if framework_id not in ids:
            raise NotFoundError(f"Framework '{framework_id}' is not installed", available=ids)

    def get_context_paths(self, framework_id: str, project_id: str, include_shared: bool = True) -> List[Path]:
        root = self._framework_root(framework_id)
        paths = [root / "repo", root / "projects" / project_id]
        if include_shared:
            paths.append(self.base_path / self.shared_dir)
        return paths

    def get_excluded_paths(self, framework_id: str) -> List[Path]:
        """Roots of every other registered framework."""
        return self.exclude_frameworks(
            p.id for p in self.registry.get_by_type(PluginType.FRAMEWORK) if p.id != framework_id
        )

    def exclude_frameworks(self, framework_ids: Iterable[str]) -> List[Path]:
        return [self._framework_root(fid) for fid in framework_ids]

    def get_shared_paths(self) -> List[Path]:
        return [self.base_path / self.shared_dir]

    def has_context(self, framework_id: str) -> bool:
        return framework_id in self._framework_ids()

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def classify(self, path: Path) -> str:
        """Coarse file type for a context file."""
        if self.metadata_loader is not None:
            metadata = self.metadata_loader(path) or {}
            declared = metadata.get("type")
            if declared:
                return str(declared)

        file_type = EXTENSION_TYPES.get(path.suffix.lower())
        if file_type:
            return file_type
        lowered = path.as_posix().lower()
        for hint, hinted_type in PATH_HINTS:
            if hint in lowered:
                return hinted_type
        return "unknown"

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.base_path).as_posix()

    def _is_under(self, path: Path, roots: List[Path]) -> bool:
        resolved = path.resolve()
        return any(resolved.is_relative_to(root.resolve()) for root in roots)

    def _collect(self, directory: Path, excluded: List[Path]) -> List[ContextFile]:
        def keep(path: Path) -> bool:
            rel = self._relative(path) + ("/" if path.is_dir() else "")
            return not self._ignore.matches(rel) and not self._is_under(path, excluded)

        files = []
        try:
            for path in walk_files(directory, keep):
                files.append(
                    ContextFile(
                        path=self._relative(path),
                        absolute_path=path.resolve(),
                        size=path.stat().st_size,
                        type=self.classify(path),
                    )
                )
        except OSError as e:
            raise ContextLoadError(f"Cannot load context from {directory}: {e}") from e
        return files

    def load_context(
        self,
        framework_id: str,
        project_id: str,
        lazy: bool = True,
        include_shared: bool = True,
        verify_isolation: bool = True,
        use_cache: bool = True,
    ) -> FrameworkContext:
        """
        Build the context for one framework and project.

        Raises:
            NotFoundError: the framework is not installed
            IsolationViolationError: an eager load leaked another framework's files
        """
        key = (framework_id, project_id, include_shared)
        if use_cache:
            entry = self._fresh_entry(key)
            if entry is not None:
                stored_at, cached, audited = entry
                if lazy:
                    return cached
                if not cached.lazy:
                    if verify_isolation and not audited:
                        self.verify_isolation(cached)
                        self._cache[key] = (stored_at, cached, True)
                    return cached

        self._require_framework(framework_id)
        context = FrameworkContext(
            framework_id=framework_id,
            project_id=project_id,
            context_paths=self.get_context_paths(framework_id, project_id, include_shared),
            excluded_paths=self.get_excluded_paths(framework_id),
            lazy=lazy,
        )

        if not lazy:
            started = time.perf_counter()
            files: List[ContextFile] = []
            for directory in context.context_paths:
                files.extend(self._collect(directory, context.excluded_paths))
            context.files = files
            context.file_count = len(files)
            context.total_size = sum(f.size for f in files)
            logger.debug(
                f"Loaded {len(files)} file(s) for {framework_id}:{project_id} "
                f"in {time.perf_counter() - started:.2f}s"
            )
            if verify_isolation:
                self.verify_isolation(context)

        self._cache[key] = (self._clock(), context, not lazy and verify_isolation)
        return context

    def verify_isolation(self, context: FrameworkContext) -> None:
        """Raise if any loaded file belongs to another framework."""
        violations = []
        for f in context.files or []:
            candidates = [f.path]
            try:
                candidates.append(self.resolver.to_relative(f.absolute_path))
            except PathResolutionError:
                # Resolved outside the workspace; the apparent path still applies
                pass
            for rel in candidates:
                if rel.startswith(f"{self.shared_dir}/"):
                    continue
                match = OWNER_RE.match(rel)
                if match and match.group(1) != context.framework_id:
                    violations.append({"path": f.path, "owner": match.group(1)})
                    break
        if violations:
            logger.error(
                f"Isolation violation loading '{context.framework_id}': "
                f"{len(violations)} foreign file(s)"
            )
            raise IsolationViolationError(context.framework_id, violations)

    def load_context_paths(self, paths: Iterable[str]) -> List[ContextFile]:
        """Load explicit workspace-relative paths; each is security-validated."""
        files: List[ContextFile] = []
        for rel in paths:
            absolute = self.resolver.to_absolute(rel)
            if absolute.is_file():
                files.append(
                    ContextFile(
                        path=self._relative(absolute),
                        absolute_path=absolute.resolve(),
                        size=absolute.stat().st_size,
                        type=self.classify(absolute),
                    )
                )
            else:
                files.extend(self._collect(absolute, []))
        return files

    def get_context_files(self, framework_id: str, project_id: str) -> List[ContextFile]:
        return self.load_context(framework_id, project_id, lazy=False).files or []

    def search_context(self, framework_id: str, pattern: str) -> List[str]:
        """
        Files in a framework matching a gitignore-style pattern.

        Paths are matched relative to the framework root and returned
        relative to the workspace root.
        """
        self._require_framework(framework_id)
        root = self._framework_root(framework_id)
        matcher = PathFilter([pattern])
        return [
            self._relative(path)
            for path in walk_files(root)
            if not self._ignore.matches(self._relative(path))
            and matcher.matches(path.relative_to(root).as_posix())
        ]

    def detect_context_size(self, framework_id: str, project_id: str, include_shared: bool = True) -> ContextSizeEstimate:
        """Pre-flight estimate of an eager load."""
        self._require_framework(framework_id)
        excluded = self.get_excluded_paths(framework_id)
        by_path: Dict[str, int] = {}
        count = 0
        for directory in self.get_context_paths(framework_id, project_id, include_shared):
            files = self._collect(directory, excluded)
            count += len(files)
            by_path[self._relative(directory)] = sum(f.size for f in files)
        return ContextSizeEstimate(
            framework_id=framework_id,
            project_id=project_id,
            file_count=count,
            total_size=sum(by_path.values()),
            by_path=by_path,
        )

    # -------------------------------------------------------------------------
    # Cross-framework access
    # -------------------------------------------------------------------------

    def read_from_framework(self, framework_id: str, relative_path: str) -> FrameworkFile:
        """
        Explicitly read a file from any installed framework.

        Bypasses context exclusion but not path validation.
        """
        self._require_framework(framework_id)
        rel = self.resolver.normalize(f"frameworks/{framework_id}/{relative_path}")
        absolute = self.resolver.to_absolute(rel)
        if not absolute.is_file():
            raise NotFoundError(f"No file '{relative_path}' in framework '{framework_id}'")
        try:
            content = absolute.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ContextLoadError(f"Cannot read {rel} as UTF-8 text: {e}") from e
        logger.info(f"Cross-framework read: {rel}")
        return FrameworkFile(framework_id=framework_id, path=rel, content=content)

    def link_frameworks(self, source_id: str, target_id: str) -> List[str]:
        """
        Record that `source_id` references `target_id`.

        Metadata only; loaded contexts stay isolated.
        """
        self._require_framework(source_id)
        self._require_framework(target_id)
        source = self.registry.get_plugin(source_id)
        linked = list(source.linked_frameworks)
        if target_id not in linked:
            linked.append(target_id)
            self.registry.update_plugin(source_id, PluginPatch(linked_frameworks=linked))
            logger.info(f"Linked framework '{source_id}' -> '{target_id}'")
        return linked

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _fresh_entry(self, key: Tuple[str, str, bool]) -> Optional[Tuple[float, FrameworkContext, bool]]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() - entry[0] >= self.cache_ttl:
            del self._cache[key]
            return None
        return entry

    def get_cached(
        self, framework_id: str, project_id: str, include_shared: bool = True
    ) -> Optional[FrameworkContext]:
        entry = self._fresh_entry((framework_id, project_id, include_shared))
        return entry[1] if entry is not None else None

    def invalidate_cache(self, framework_id: str) -> None:
        for key in [k for k in self._cache if k[0] == framework_id]:
            del self._cache[key]

    def clear_cache(self) -> None:
        self._cache.clear()
