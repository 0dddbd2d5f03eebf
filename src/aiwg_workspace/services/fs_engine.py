# src/aiwg_workspace/services/fs_engine.py
"""
Filesystem primitives shared by the registry, migration and context code.

- Iterative tree walking with a visited set (no recursion)
- Directory sizing and content checksums
- Atomic JSON writes (temp file + replace)
- Directory moves: rename, else copy-then-delete across filesystems
"""
import errno
import hashlib
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Collection, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def walk_files(
    root: Path, filter_func: Optional[Callable[[Path], bool]] = None
) -> Iterator[Path]:
    """
    Yield files under `root` in sorted order.

    Symlinked directories are not descended into. `filter_func`, when
    given, is called for every entry (file or directory); returning False
    prunes it.
    """
    root = Path(root)
    if not root.is_dir():
        return

    visited = set()
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            st = current.stat()
        except OSError:
            continue
        key = (st.st_dev, st.st_ino)
        if key in visited:
            continue
        visited.add(key)

        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.warning(f"Cannot read directory {current}: {e}")
            continue

        subdirs = []
        for entry in entries:
            path = Path(entry.path)
            if filter_func is not None and not filter_func(path):
                continue
            if entry.is_dir(follow_symlinks=False):
                subdirs.append(path)
            elif entry.is_file():
                yield path
        # Reverse so the stack pops subdirectories in sorted order
        stack.extend(reversed(subdirs))


def dir_size(root: Path) -> int:
    """Total size in bytes of the files under `root`."""
    total = 0
    for path in walk_files(root):
        try:
            total += path.stat().st_size
        except OSError:
            continue
    return total


def count_files(root: Path) -> int:
    return sum(1 for _ in walk_files(root))


def tree_checksum(root: Path, exclude: Collection[str] = ()) -> Tuple[str, int, int]:
    """
    SHA-256 over every file under `root`, in sorted relative-path order.

    Each file contributes its relative POSIX path and its content, so
    renames and moves change the checksum as well as edits.

    Args:
        root: directory to hash
        exclude: relative paths to leave out

    Returns:
        (hex digest, file count, total bytes)
    """
    root = Path(root)
    files = []
    for path in walk_files(root):
        rel = path.relative_to(root).as_posix()
        if rel not in exclude:
            files.append((rel, path))
    files.sort(key=lambda item: item[0])

    digest = hashlib.sha256()
    total = 0
    for rel, path in files:
        digest.update(rel.encode("utf-8"))
        digest.update(b"\0")
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
                total += len(chunk)
        digest.update(b"\0")
    return digest.hexdigest(), len(files), total


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a sibling temp file, then atomically replace `path`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def copy_tree(src: Path, dst: Path, ignore_names: Collection[str] = ()) -> None:
    """Deep-copy a directory tree, preserving symlinks and metadata."""
    ignore = shutil.ignore_patterns(*ignore_names) if ignore_names else None
    shutil.copytree(src, dst, symlinks=True, ignore=ignore)


def move_path(src: Path, dst: Path) -> None:
    """
    Move a file or directory.

    Uses rename when possible; across filesystems falls back to copy
    then delete.
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.rename(src, dst)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
    logger.debug(f"Cross-device move {src} -> {dst}, copying")
    if src.is_dir():
        copy_tree(src, dst)
        shutil.rmtree(src)
    else:
        shutil.copy2(src, dst)
        src.unlink()


def remove_tree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()
