# src/aiwg_workspace/services/filter_logic.py
import logging
from pathlib import Path
from typing import Iterable, List

import pathspec

logger = logging.getLogger(__name__)

# Junk that never belongs in a loaded context
DEFAULT_IGNORES = [".git/", "__pycache__/", "*.tmp", ".DS_Store"]


class PathFilter:
    """
    File path matching using gitignore-style patterns.
    """

    def __init__(self, patterns: Iterable[str]):
        self.patterns: List[str] = [p for p in patterns if p]
        self.spec = pathspec.PathSpec.from_lines("gitwildmatch", self.patterns)
        logger.debug(f"PathFilter initialized with {len(self.patterns)} rules")

    def matches(self, rel_path: str) -> bool:
        """
        Check if the relative POSIX path matches any rule.
        """
        return self.spec.match_file(rel_path)

    def select(self, paths: Iterable[Path], root: Path) -> List[Path]:
        """Paths under `root` whose root-relative form matches."""
        return [p for p in paths if self.matches(p.relative_to(root).as_posix())]


def default_ignore_filter() -> PathFilter:
    return PathFilter(DEFAULT_IGNORES)
