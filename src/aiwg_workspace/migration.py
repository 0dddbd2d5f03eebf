# src/aiwg_workspace/migration.py
"""
Migration Tool: legacy workspace layout -> framework-scoped layout.

Legacy top-level directories (`requirements/`, `architecture/`, ...) move to
`frameworks/{framework}/projects/{project}/{dir}`; `working/` moves to
`frameworks/{framework}/working/`.

State machine:
    idle -> validating -> backing-up -> migrating | migrating-incrementally
         -> updating-references -> verifying -> completed
                                              \\-> rolling-back -> rolled-back

Design Principles:
- Every pre-flight check runs; failures are reported together
- A full sibling backup with a checksummed manifest precedes any move
- Any failure after the backup triggers automatic rollback
- A lock marker prevents concurrent migrations
"""
import logging
import re
import shutil
import time
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from tqdm import tqdm

from aiwg_workspace.errors import (
    MigrationError,
    MigrationValidationError,
    RollbackError,
    ValidationError,
    WorkspaceError,
)
from aiwg_workspace.models import ID_PATTERN, BackupManifest, PluginType
from aiwg_workspace.registry import BACKUPS_DIRNAME, REGISTRY_FILENAME, LOCK_SUFFIX, PluginRegistry
from aiwg_workspace.services.filter_logic import PathFilter
from aiwg_workspace.services.fs_engine import (
    atomic_write_json,
    copy_tree,
    count_files,
    dir_size,
    move_path,
    remove_tree,
    tree_checksum,
    walk_files,
)
from aiwg_workspace.services.locking import LockFile

logger = logging.getLogger(__name__)

LEGACY_PROJECT_DIRS = (
    "intake",
    "requirements",
    "architecture",
    "planning",
    "testing",
    "security",
    "deployment",
    "risks",
    "gates",
    "reports",
    "team",
    "quality",
    "handoffs",
    "decisions",
)
WORKING_DIR = "working"

MIGRATION_LOCK_NAME = ".migration-lock"
BACKUP_MANIFEST_NAME = "migration-manifest.json"
BACKUP_IGNORES = (MIGRATION_LOCK_NAME, REGISTRY_FILENAME + LOCK_SUFFIX)

_ID_RE = re.compile(ID_PATTERN)


class MigrationState(StrEnum):
    IDLE = "idle"
    VALIDATING = "validating"
    BACKING_UP = "backing-up"
    MIGRATING = "migrating"
    MIGRATING_INCREMENTALLY = "migrating-incrementally"
    UPDATING_REFERENCES = "updating-references"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"


class MigrationStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GB"


@dataclass
class DirectoryInfo:
    file_count: int
    size: int

    @property
    def size_formatted(self) -> str:
        return format_bytes(self.size)


@dataclass
class StructureAnalysis:
    """Legacy directories present at the workspace root."""

    directories: Dict[str, DirectoryInfo] = field(default_factory=dict)

    @property
    def total_files(self) -> int:
        return sum(d.file_count for d in self.directories.values())

    @property
    def total_size(self) -> int:
        return sum(d.size for d in self.directories.values())


@dataclass
class PlannedMove:
    source: str
    target: str
    file_count: int
    size: int


@dataclass
class MigrationPlan:
    project_id: str
    framework_id: str
    actions: List[PlannedMove]
    incremental: bool
    reference_files: int
    estimated_time: str

    @property
    def total_files(self) -> int:
        return sum(a.file_count for a in self.actions)


@dataclass
class PreflightCheck:
    check: str
    passed: bool
    message: str = ""


@dataclass
class VerificationResult:
    success: bool
    checks: Dict[str, bool] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


@dataclass
class MigrationResult:
    project_id: str
    framework_id: str
    backup_path: Optional[Path]
    migrated_files: int
    references_updated: int
    incremental: bool
    duration_seconds: float


@dataclass
class DirComparison:
    source_count: int
    target_count: int
    source_size: int
    target_size: int

    @property
    def file_count_match(self) -> bool:
        return self.source_count == self.target_count

    @property
    def size_match(self) -> bool:
        return abs(self.source_size - self.target_size) < 1024


@dataclass
class MigrationReport:
    status: MigrationStatus
    analysis: StructureAnalysis
    backups: List[Path]
    frameworks_installed: List[str]

    @property
    def latest_backup(self) -> Optional[Path]:
        return self.backups[0] if self.backups else None


class MigrationTool:
    """
    Migrates one workspace root in place, with backup and rollback.

    Backups are sibling directories named `{root}.backup.{timestamp}`.
    """

    def __init__(
        self,
        base_path: Union[str, Path] = ".aiwg",
        registry: Optional[PluginRegistry] = None,
        default_framework_id: str = "sdlc-complete",
        default_project_id: str = "default-project",
        incremental_threshold_bytes: int = 1024 * 1024 * 1024,
        batch_size: int = 50,
        reference_patterns: Iterable[str] = ("*.md", "*.markdown", "*.txt"),
        show_progress: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        disk_usage: Callable[[Path], Tuple[int, int, int]] = shutil.disk_usage,
    ):
        self.base_path = Path(base_path).resolve()
        self.registry = registry or PluginRegistry(self.base_path)
        self.default_framework_id = default_framework_id
        self.default_project_id = default_project_id
        self.incremental_threshold_bytes = incremental_threshold_bytes
        self.batch_size = max(1, batch_size)
        self.reference_filter = PathFilter(reference_patterns)
        self.show_progress = show_progress
        self.lock_path = self.base_path / MIGRATION_LOCK_NAME
        self._clock = clock
        self._disk_usage = disk_usage
        self.state = MigrationState.IDLE
        self.history: List[Tuple[MigrationState, datetime]] = []

    @classmethod
    def from_settings(cls, settings, registry: Optional[PluginRegistry] = None) -> "MigrationTool":
        cfg = settings.migration
        return cls(
            base_path=settings.workspace.root,
            registry=registry,
            default_framework_id=cfg.default_framework_id,
            default_project_id=cfg.default_project_id,
            incremental_threshold_bytes=cfg.incremental_threshold_bytes,
            batch_size=cfg.batch_size,
            reference_patterns=cfg.reference_patterns,
            show_progress=cfg.show_progress,
        )

    def _transition(self, state: MigrationState) -> None:
        self.state = state
        self.history.append((state, self._clock()))
        logger.info(f"Migration state: {state}")

    # -------------------------------------------------------------------------
    # Layout
    # -------------------------------------------------------------------------

    def _legacy_names(self) -> Tuple[str, ...]:
        return LEGACY_PROJECT_DIRS + (WORKING_DIR,)

    def _target_for(self, legacy_dir: str, project_id: str, framework_id: str) -> str:
        if legacy_dir == WORKING_DIR:
            return f"frameworks/{framework_id}/{WORKING_DIR}"
        return f"frameworks/{framework_id}/projects/{project_id}/{legacy_dir}"

    def build_path_mapping(self, project_id: str, framework_id: str) -> Dict[str, str]:
        """Literal legacy path prefixes and their replacements."""
        prefix = self.base_path.name
        return {
            f"{prefix}/{name}/": f"{prefix}/{self._target_for(name, project_id, framework_id)}/"
            for name in self._legacy_names()
        }

    def derive_project_id(self) -> str:
        """Project name from the enclosing pyproject.toml, else the default."""
        pyproject = self.base_path.parent / "pyproject.toml"
        try:
            with open(pyproject, "rb") as f:
                name = tomllib.load(f).get("project", {}).get("name", "")
        except (OSError, tomllib.TOMLDecodeError):
            return self.default_project_id
        candidate = re.sub(r"[^a-z0-9-]+", "-", str(name).lower()).strip("-")
        return candidate if candidate else self.default_project_id

    def analyze_existing_structure(self) -> StructureAnalysis:
        analysis = StructureAnalysis()
        for name in self._legacy_names():
            path = self.base_path / name
            if path.is_dir():
                analysis.directories[name] = DirectoryInfo(
                    file_count=count_files(path), size=dir_size(path)
                )
        return analysis

    # -------------------------------------------------------------------------
    # Pre-flight
    # -------------------------------------------------------------------------

    def check_disk_space(self) -> PreflightCheck:
        required = 2 * dir_size(self.base_path)
        try:
            free = self._disk_usage(self.base_path.parent)[2]
        except OSError as e:
            return PreflightCheck("disk-space", False, f"Cannot determine free space: {e}")
        if free < required:
            return PreflightCheck(
                "disk-space", False,
                f"Need {format_bytes(required)} free, have {format_bytes(free)}",
            )
        return PreflightCheck("disk-space", True)

    def check_permissions(self, framework_id: str) -> PreflightCheck:
        if not self.base_path.is_dir():
            return PreflightCheck("permissions", False, f"Workspace root not found: {self.base_path}")
        probe = self.base_path / f".write-test-{time.time_ns()}"
        try:
            probe.write_text("")
            probe.unlink()
            (self.base_path / "frameworks" / framework_id).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return PreflightCheck("permissions", False, f"Workspace is not writable: {e}")
        return PreflightCheck("permissions", True)

    def detect_conflicts(self, project_id: str, framework_id: str) -> PreflightCheck:
        conflicts = []
        for rel in (
            f"frameworks/{framework_id}/projects/{project_id}",
            f"frameworks/{framework_id}/{WORKING_DIR}",
        ):
            path = self.base_path / rel
            if path.is_dir() and any(path.iterdir()):
                conflicts.append(rel)
        if conflicts:
            return PreflightCheck("conflicts", False, f"Target already populated: {', '.join(conflicts)}")
        return PreflightCheck("conflicts", True)

    def check_migration_lock(self) -> PreflightCheck:
        if self.lock_path.exists():
            holder = LockFile(self.lock_path).holder()
            return PreflightCheck(
                "lock", False,
                f"Migration lock present ({holder}); another migration may be running. "
                f"Remove {self.lock_path} if it is stale.",
            )
        return PreflightCheck("lock", True)

    def run_preflight_checks(self, project_id: str, framework_id: str) -> List[PreflightCheck]:
        return [
            self.check_disk_space(),
            self.check_permissions(framework_id),
            self.detect_conflicts(project_id, framework_id),
            self.check_migration_lock(),
        ]

    def validate(self, project_id: str, framework_id: str) -> List[PreflightCheck]:
        """
        Run all pre-flight checks.

        Raises:
            MigrationValidationError: listing every failed check
        """
        checks = self.run_preflight_checks(project_id, framework_id)
        failed = [c for c in checks if not c.passed]
        if failed:
            raise MigrationValidationError(
                [{"check": c.check, "message": c.message} for c in failed]
            )
        return checks

    # -------------------------------------------------------------------------
    # Backup & rollback
    # -------------------------------------------------------------------------

    def _backup_glob(self) -> str:
        return f"{self.base_path.name}.backup.*"

    def create_backup(self) -> Path:
        """Deep-copy the workspace to a sibling directory and write its manifest."""
        now = self._clock()
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup = self.base_path.parent / f"{self.base_path.name}.backup.{stamp}"
        suffix = 1
        while backup.exists():
            backup = self.base_path.parent / f"{self.base_path.name}.backup.{stamp}-{suffix}"
            suffix += 1

        logger.info(f"Creating backup {backup.name}")
        copy_tree(self.base_path, backup, ignore_names=BACKUP_IGNORES)
        checksum, file_count, total_size = tree_checksum(backup, exclude={BACKUP_MANIFEST_NAME})
        manifest = BackupManifest(
            timestamp=now,
            source_path=str(self.base_path),
            backup_path=str(backup),
            checksum=checksum,
            file_count=file_count,
            total_size=total_size,
        )
        atomic_write_json(backup / BACKUP_MANIFEST_NAME, manifest.model_dump(mode="json", by_alias=True))
        logger.info(f"Backup complete: {file_count} file(s), {format_bytes(total_size)}")
        return backup

    def list_backups(self) -> List[Path]:
        """Backups that still carry a manifest, newest first."""
        return sorted(
            (p for p in self.base_path.parent.glob(self._backup_glob())
             if (p / BACKUP_MANIFEST_NAME).is_file()),
            key=lambda p: p.name,
            reverse=True,
        )

    @staticmethod
    def read_manifest(backup: Path) -> BackupManifest:
        manifest_path = backup / BACKUP_MANIFEST_NAME
        try:
            return BackupManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise RollbackError(f"Backup manifest missing: {manifest_path}") from e
        except (OSError, PydanticValidationError) as e:
            raise RollbackError(f"Backup manifest unreadable: {manifest_path}: {e}") from e

    def rollback(self, backup: Optional[Path] = None) -> Path:
        """
        Restore the workspace from a backup (the newest by default).

        The backup is verified against its manifest checksum first; on a
        mismatch nothing is touched.

        Raises:
            RollbackError: no backup, unreadable manifest or checksum mismatch
        """
        if backup is None:
            backups = self.list_backups()
            if not backups:
                raise RollbackError(f"No backup found for {self.base_path}")
            backup = backups[0]

        manifest = self.read_manifest(backup)
        checksum, _, _ = tree_checksum(backup, exclude={BACKUP_MANIFEST_NAME})
        if checksum != manifest.checksum:
            raise RollbackError(
                f"Checksum mismatch for {backup.name}: refusing to restore",
                {"expected": manifest.checksum, "actual": checksum},
            )

        logger.warning(f"Rolling back {self.base_path} from {backup.name}")
        (backup / BACKUP_MANIFEST_NAME).unlink()
        try:
            remove_tree(self.base_path)
            move_path(backup, self.base_path)
        except OSError as e:
            raise RollbackError(
                f"Restore from {backup} failed: {e}. Restore it manually."
            ) from e
        logger.info("Rollback complete")
        return self.base_path

    def clean_backups(self, older_than_days: float) -> int:
        """Delete backups whose manifest timestamp is older than the given age."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = 0
        for backup in self.list_backups():
            try:
                manifest = self.read_manifest(backup)
            except RollbackError as e:
                logger.warning(f"Skipping backup without usable manifest: {e.message}")
                continue
            if manifest.timestamp < cutoff:
                shutil.rmtree(backup)
                removed += 1
                logger.info(f"Removed old backup {backup.name}")
        return removed

    # -------------------------------------------------------------------------
    # Moves & references
    # -------------------------------------------------------------------------

    def _plan_moves(self, analysis: StructureAnalysis, project_id: str, framework_id: str) -> List[PlannedMove]:
        return [
            PlannedMove(
                source=name,
                target=self._target_for(name, project_id, framework_id),
                file_count=info.file_count,
                size=info.size,
            )
            for name, info in analysis.directories.items()
        ]

    def _execute_moves(self, moves: List[PlannedMove], incremental: bool) -> int:
        batch_size = self.batch_size if incremental else max(1, len(moves))
        batches = [moves[i:i + batch_size] for i in range(0, len(moves), batch_size)]
        migrated = 0
        with tqdm(
            total=len(moves),
            desc="Migrating",
            unit="dir",
            disable=not self.show_progress,
        ) as pbar:
            for number, batch in enumerate(batches, 1):
                if incremental:
                    logger.info(f"Batch {number}/{len(batches)}")
                for move in batch:
                    logger.info(f"Moving {move.source}/ -> {move.target}/")
                    move_path(self.base_path / move.source, self.base_path / move.target)
                    migrated += move.file_count
                    pbar.update(1)
        return migrated

    def _reference_files(self) -> List[Path]:
        return [
            path
            for path in walk_files(self.base_path)
            if self.reference_filter.matches(path.relative_to(self.base_path).as_posix())
        ]

    def find_references(self) -> Dict[str, List[str]]:
        """Text files still mentioning legacy prefixes, mapped to the prefixes found."""
        prefixes = [f"{self.base_path.name}/{name}/" for name in self._legacy_names()]
        found: Dict[str, List[str]] = {}
        for path in self._reference_files():
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            hits = [p for p in prefixes if p in text]
            if hits:
                found[path.relative_to(self.base_path).as_posix()] = hits
        return found

    def replace_references(self, mapping: Mapping[str, str]) -> int:
        """Rewrite literal prefixes in text files; returns the number of files changed."""
        if not mapping:
            return 0
        pattern = re.compile(
            "|".join(re.escape(old) for old in sorted(mapping, key=len, reverse=True))
        )
        updated = 0
        for path in self._reference_files():
            try:
                text = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.debug(f"Skipping non-UTF-8 file {path}")
                continue
            rewritten = pattern.sub(lambda m: mapping[m.group(0)], text)
            if rewritten != text:
                path.write_text(rewritten, encoding="utf-8")
                updated += 1
        return updated

    def update_internal_references(self, project_id: str, framework_id: str) -> int:
        return self.replace_references(self.build_path_mapping(project_id, framework_id))

    def verify_migration(
        self, project_id: str, framework_id: str, analysis: StructureAnalysis
    ) -> VerificationResult:
        """Every migrated directory must be gone from the root and present at its target."""
        result = VerificationResult(success=True)
        for name in analysis.directories:
            source = self.base_path / name
            target = self.base_path / self._target_for(name, project_id, framework_id)
            ok = not source.exists() and target.is_dir()
            result.checks[name] = ok
            if not ok:
                result.errors.append(
                    f"{name}: source {'still exists' if source.exists() else 'removed'}, "
                    f"target {'present' if target.is_dir() else 'missing'}"
                )
        result.success = all(result.checks.values())
        return result

    def compare_dir_structures(self, source: Path, target: Path) -> DirComparison:
        return DirComparison(
            source_count=count_files(source),
            target_count=count_files(target),
            source_size=dir_size(source),
            target_size=dir_size(target),
        )

    # -------------------------------------------------------------------------
    # Orchestration
    # -------------------------------------------------------------------------

    def _resolve_ids(self, project_id: Optional[str], framework_id: Optional[str]) -> Tuple[str, str]:
        project_id = project_id or self.derive_project_id()
        framework_id = framework_id or self.default_framework_id
        problems = [
            (label, f"must match {ID_PATTERN}")
            for label, value in (("project-id", project_id), ("framework-id", framework_id))
            if not _ID_RE.match(value)
        ]
        if problems:
            raise ValidationError(problems, subject="migration target")
        return project_id, framework_id

    def _estimate_time(self, total_files: int, incremental: bool) -> str:
        if incremental:
            return "several minutes"
        return "10-15 seconds" if total_files > 100 else "5-10 seconds"

    def dry_run(self, project_id: Optional[str] = None, framework_id: Optional[str] = None) -> MigrationPlan:
        """Plan a migration without touching the filesystem."""
        project_id, framework_id = self._resolve_ids(project_id, framework_id)
        analysis = self.analyze_existing_structure()
        incremental = analysis.total_size > self.incremental_threshold_bytes
        return MigrationPlan(
            project_id=project_id,
            framework_id=framework_id,
            actions=self._plan_moves(analysis, project_id, framework_id),
            incremental=incremental,
            reference_files=len(self.find_references()),
            estimated_time=self._estimate_time(analysis.total_files, incremental),
        )

    def migrate(
        self,
        project_id: Optional[str] = None,
        framework_id: Optional[str] = None,
        skip_backup: bool = False,
    ) -> MigrationResult:
        """
        Run the full migration.

        Raises:
            MigrationValidationError: pre-flight failed; nothing was changed
            MigrationError: a step failed (rolled back unless skip_backup)
            RollbackError: a step failed and the automatic rollback failed too
        """
        started = time.perf_counter()
        project_id, framework_id = self._resolve_ids(project_id, framework_id)

        self._transition(MigrationState.VALIDATING)
        try:
            self.validate(project_id, framework_id)
        except MigrationValidationError:
            self._transition(MigrationState.FAILED)
            raise

        lock = LockFile(self.lock_path, retries=1)
        lock.acquire()
        backup: Optional[Path] = None
        try:
            analysis = self.analyze_existing_structure()
            if not skip_backup:
                self._transition(MigrationState.BACKING_UP)
                backup = self.create_backup()

            incremental = analysis.total_size > self.incremental_threshold_bytes
            self._transition(
                MigrationState.MIGRATING_INCREMENTALLY if incremental else MigrationState.MIGRATING
            )
            migrated = self._execute_moves(
                self._plan_moves(analysis, project_id, framework_id), incremental
            )

            self._transition(MigrationState.UPDATING_REFERENCES)
            references = self.update_internal_references(project_id, framework_id)

            self._transition(MigrationState.VERIFYING)
            verification = self.verify_migration(project_id, framework_id, analysis)
            if not verification.success:
                raise MigrationError(
                    "Migration verification failed: " + "; ".join(verification.errors),
                    details={"checks": verification.checks},
                )

            self._register_project(project_id, framework_id)
            self._transition(MigrationState.COMPLETED)
        except Exception as exc:
            if skip_backup or backup is None:
                self._transition(MigrationState.FAILED)
                if isinstance(exc, MigrationError) and not skip_backup:
                    raise
                raise MigrationError(f"Migration failed: {exc}", no_safety_net=skip_backup) from exc

            self._transition(MigrationState.ROLLING_BACK)
            try:
                self.rollback(backup)
            except RollbackError as rollback_exc:
                self._transition(MigrationState.FAILED)
                logger.critical(f"Automatic rollback failed: {rollback_exc.message}")
                raise rollback_exc from exc
            self._transition(MigrationState.ROLLED_BACK)
            if isinstance(exc, WorkspaceError):
                raise
            raise MigrationError(f"Migration failed and was rolled back: {exc}") from exc
        finally:
            lock.release()

        return MigrationResult(
            project_id=project_id,
            framework_id=framework_id,
            backup_path=backup,
            migrated_files=migrated,
            references_updated=references,
            incremental=incremental,
            duration_seconds=time.perf_counter() - started,
        )

    def _register_project(self, project_id: str, framework_id: str) -> None:
        if not self.registry.registry_path.exists():
            return
        plugin = self.registry.find_plugin(framework_id)
        if plugin is None or plugin.type != PluginType.FRAMEWORK:
            logger.info(f"Framework '{framework_id}' not registered; project not recorded")
            return
        self.registry.add_project(framework_id, project_id)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_migration_status(self) -> MigrationStatus:
        if self.lock_path.exists():
            return MigrationStatus.IN_PROGRESS
        if any((self.base_path / name).is_dir() for name in self._legacy_names()):
            return MigrationStatus.PENDING
        frameworks = self.base_path / "frameworks"
        if frameworks.is_dir() and any(
            p.is_dir() and p.name != BACKUPS_DIRNAME for p in frameworks.iterdir()
        ):
            return MigrationStatus.COMPLETED
        return MigrationStatus.UNKNOWN

    def get_migration_report(self) -> MigrationReport:
        frameworks = self.base_path / "frameworks"
        installed = sorted(
            p.name for p in frameworks.iterdir() if p.is_dir() and p.name != BACKUPS_DIRNAME
        ) if frameworks.is_dir() else []
        return MigrationReport(
            status=self.get_migration_status(),
            analysis=self.analyze_existing_structure(),
            backups=self.list_backups(),
            frameworks_installed=installed,
        )
