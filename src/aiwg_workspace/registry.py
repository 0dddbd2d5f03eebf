# src/aiwg_workspace/registry.py
"""
Plugin Registry: durable store for installed plugin records.

The registry lives at `{root}/frameworks/registry.json`:

    {"version": "1.0", "plugins": [ {...PluginRecord...}, ... ]}

Design Principles:
- Explicit store object bound to a base path (no module-level state)
- Every mutation: lock -> read -> mutate -> revalidate -> temp write -> replace -> unlock
- Reads take no lock but always revalidate; malformed files are a hard SchemaError
- The legacy `{"frameworks": [...]}` shape is migrated on first read and persisted
"""
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from aiwg_workspace.errors import (
    DuplicateError,
    NotFoundError,
    SchemaError,
    ValidationError,
    WorkspaceError,
)
from aiwg_workspace.models import (
    ID_PATTERN,
    SCHEMA_VERSION,
    HealthStatus,
    PluginPatch,
    PluginRecord,
    PluginType,
    RegistryFile,
    validate_plugin_data,
)
from aiwg_workspace.services.fs_engine import atomic_write_json
from aiwg_workspace.services.locking import LockFile

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "registry.json"
LOCK_SUFFIX = ".lock"
BACKUPS_DIRNAME = "backups"
MANIFEST_FILENAME = "manifest.json"

_ID_RE = re.compile(ID_PATTERN)

RecordInput = Union[PluginRecord, Mapping[str, Any]]
ChangeListener = Callable[[str], None]


@dataclass
class RegistryReport:
    """Non-raising result of validating the on-disk registry."""

    valid: bool
    errors: List[str] = field(default_factory=list)
    plugin_count: int = 0


@dataclass
class IntegrityReport:
    valid: bool
    issues: List[str] = field(default_factory=list)


def _validate_document(data: Any) -> Tuple[Optional[RegistryFile], List[str]]:
    """Validate a whole registry document, collecting every problem."""
    if not isinstance(data, dict):
        return None, ["registry must be a JSON object"]

    problems: List[str] = []
    version = data.get("version")
    if version != SCHEMA_VERSION:
        problems.append(f"version: unsupported schema version {version!r}")

    plugins = data.get("plugins")
    if not isinstance(plugins, list):
        return None, problems + ["plugins: must be a list"]

    records: List[PluginRecord] = []
    seen = set()
    for index, raw in enumerate(plugins):
        try:
            record = validate_plugin_data(raw)
        except ValidationError as e:
            problems.extend(f"plugins[{index}].{f}: {m}" for f, m in e.errors)
            continue
        if record.id in seen:
            problems.append(f"plugins[{index}].id: duplicate id '{record.id}'")
        seen.add(record.id)
        records.append(record)

    if problems:
        return None, problems
    return RegistryFile(version=SCHEMA_VERSION, plugins=records), []


def _migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert `{"frameworks": [...]}` into the current plugins shape."""
    plugins = []
    for fw in data.get("frameworks") or []:
        if not isinstance(fw, dict):
            plugins.append(fw)
            continue
        migrated = dict(fw)
        migrated.setdefault("type", PluginType.FRAMEWORK.value)
        migrated.setdefault("health", HealthStatus.UNKNOWN.value)
        plugins.append(migrated)
    rest = {k: v for k, v in data.items() if k not in ("frameworks", "plugins", "version")}
    return {"version": SCHEMA_VERSION, "plugins": plugins, **rest}


class PluginRegistry:
    """
    CRUD store for plugin records, safe across concurrent processes.

    Multiple instances over different base paths coexist independently.
    """

    def __init__(
        self,
        base_path: Union[str, Path] = ".aiwg",
        lock_retries: int = 3,
        lock_retry_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.base_path = Path(base_path)
        self.frameworks_dir = self.base_path / "frameworks"
        self.registry_path = self.frameworks_dir / REGISTRY_FILENAME
        self.lock_path = self.frameworks_dir / (REGISTRY_FILENAME + LOCK_SUFFIX)
        self.backups_dir = self.frameworks_dir / BACKUPS_DIRNAME
        self.lock_retries = lock_retries
        self.lock_retry_delay = lock_retry_delay
        self._sleep = sleep
        self._clock = clock
        self._listeners: List[ChangeListener] = []

    @classmethod
    def from_settings(cls, settings, base_path: Optional[Path] = None) -> "PluginRegistry":
        return cls(
            base_path=base_path or settings.workspace.root,
            lock_retries=settings.registry.lock_retries,
            lock_retry_delay=settings.registry.lock_retry_delay_ms / 1000.0,
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _lock(self) -> LockFile:
        return LockFile(
            self.lock_path,
            retries=self.lock_retries,
            retry_delay=self.lock_retry_delay,
            sleep=self._sleep,
        )

    def _parse_file(self) -> Tuple[RegistryFile, bool]:
        """Read and validate the registry file. Returns (document, was_legacy)."""
        try:
            text = self.registry_path.read_text(encoding="utf-8")
        except OSError as e:
            raise SchemaError(f"Cannot read registry {self.registry_path}: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SchemaError(f"Malformed registry {self.registry_path}: {e}") from e

        legacy = isinstance(data, dict) and "plugins" not in data and "frameworks" in data
        if legacy:
            data = _migrate_legacy(data)

        document, problems = _validate_document(data)
        if problems:
            raise SchemaError(
                f"Invalid registry {self.registry_path}: " + "; ".join(problems),
                {"errors": problems},
            )
        return document, legacy

    def _write(self, document: RegistryFile) -> None:
        atomic_write_json(self.registry_path, document.to_document())

    def _notify(self, plugin_ids: Iterable[str]) -> None:
        for plugin_id in plugin_ids:
            for listener in list(self._listeners):
                listener(plugin_id)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a callback invoked with a plugin id after each change.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def initialize(self) -> RegistryFile:
        """Create an empty registry if none exists. Idempotent."""
        if self.registry_path.exists():
            return self.load()
        with self._lock():
            if not self.registry_path.exists():
                document = RegistryFile()
                self._write(document)
                logger.info(f"Initialized plugin registry at {self.registry_path}")
                return document
        return self.load()

    def load(self) -> RegistryFile:
        """Read the registry, creating it on first use."""
        if not self.registry_path.exists():
            return self.initialize()
        document, legacy = self._parse_file()
        if legacy:
            with self._lock():
                document, legacy = self._parse_file()
                if legacy:
                    self._write(document)
                    logger.info(f"Migrated legacy registry schema to {SCHEMA_VERSION}")
        return document

    def _mutate(self, operation: Callable[[RegistryFile], Tuple[Any, List[str]]]) -> Any:
        """
        Run `operation` against the current document under the lock.

        `operation` returns (result, changed_ids); nothing is written
        when no ids changed.
        """
        with self._lock():
            if self.registry_path.exists():
                document, _ = self._parse_file()
            else:
                document = RegistryFile()

            result, changed = operation(document)

            if changed:
                revalidated, problems = _validate_document(document.to_document())
                if problems:
                    raise ValidationError(
                        [("registry", p) for p in problems], subject="registry"
                    )
                self._write(revalidated)
        self._notify(changed)
        return result

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    @staticmethod
    def _index(document: RegistryFile, plugin_id: str) -> int:
        for i, plugin in enumerate(document.plugins):
            if plugin.id == plugin_id:
                return i
        raise NotFoundError(
            f"Plugin '{plugin_id}' is not registered",
            available=[p.id for p in document.plugins],
        )

    def add_plugin(self, record: RecordInput) -> PluginRecord:
        """
        Register a new plugin.

        Raises:
            DuplicateError: the id is already registered
            ValidationError: the record is malformed (all failing fields listed)
        """
        data = record.to_document() if isinstance(record, PluginRecord) else dict(record)

        def operation(document: RegistryFile):
            plugin_id = data.get("id")
            if any(p.id == plugin_id for p in document.plugins):
                raise DuplicateError(f"Plugin '{plugin_id}' is already registered")
            new_record = validate_plugin_data(data)
            document.plugins.append(new_record)
            return new_record, [new_record.id]

        added = self._mutate(operation)
        logger.info(f"Registered {added.type} '{added.id}' v{added.version}")
        return added

    def update_plugin(self, plugin_id: str, patch: Union[PluginPatch, Mapping[str, Any]]) -> PluginRecord:
        """
        Merge a patch over an existing record and revalidate it.

        Raises:
            NotFoundError: no such plugin
            ValidationError: the patch or merged record is invalid
        """
        if not isinstance(patch, PluginPatch):
            try:
                patch = PluginPatch.model_validate(dict(patch))
            except PydanticValidationError as e:
                raise ValidationError(
                    [(".".join(str(p) for p in err["loc"]), err["msg"]) for err in e.errors()],
                    subject=f"patch for '{plugin_id}'",
                ) from e

        def operation(document: RegistryFile):
            index = self._index(document, plugin_id)
            updated = validate_plugin_data(patch.apply_to(document.plugins[index]))
            document.plugins[index] = updated
            return updated, [plugin_id]

        updated = self._mutate(operation)
        logger.debug(f"Updated plugin '{plugin_id}'")
        return updated

    def remove_plugin(self, plugin_id: str) -> PluginRecord:
        def operation(document: RegistryFile):
            index = self._index(document, plugin_id)
            return document.plugins.pop(index), [plugin_id]

        removed = self._mutate(operation)
        logger.info(f"Removed plugin '{plugin_id}'")
        return removed

    def find_plugin(self, plugin_id: str) -> Optional[PluginRecord]:
        for plugin in self.load().plugins:
            if plugin.id == plugin_id:
                return plugin
        return None

    def get_plugin(self, plugin_id: str) -> PluginRecord:
        document = self.load()
        return document.plugins[self._index(document, plugin_id)]

    def is_installed(self, plugin_id: str) -> bool:
        return self.find_plugin(plugin_id) is not None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_plugins(self) -> List[PluginRecord]:
        return list(self.load().plugins)

    def get_by_type(self, plugin_type: Union[PluginType, str]) -> List[PluginRecord]:
        plugin_type = PluginType(plugin_type)
        return [p for p in self.list_plugins() if p.type == plugin_type]

    def get_healthy(self) -> List[PluginRecord]:
        return [p for p in self.list_plugins() if p.health == HealthStatus.HEALTHY]

    def get_errors(self) -> List[PluginRecord]:
        return [p for p in self.list_plugins() if p.health == HealthStatus.ERROR]

    def get_plugins_with_issues(self) -> List[PluginRecord]:
        return [
            p
            for p in self.list_plugins()
            if p.health in (HealthStatus.WARNING, HealthStatus.ERROR)
        ]

    def get_add_ons_for(self, framework_id: str) -> List[PluginRecord]:
        return [
            p
            for p in self.list_plugins()
            if p.type == PluginType.ADD_ON and p.parent_framework == framework_id
        ]

    def get_extensions_for(self, framework_id: str) -> List[PluginRecord]:
        return [
            p
            for p in self.list_plugins()
            if p.type == PluginType.EXTENSION and p.extends_framework == framework_id
        ]

    def get_projects(self, framework_id: str) -> List[str]:
        return list(self.get_plugin(framework_id).projects)

    # -------------------------------------------------------------------------
    # Projects & health
    # -------------------------------------------------------------------------

    def _framework_index(self, document: RegistryFile, framework_id: str) -> int:
        index = self._index(document, framework_id)
        if document.plugins[index].type != PluginType.FRAMEWORK:
            raise ValidationError(
                [("type", f"'{framework_id}' is a {document.plugins[index].type}; only frameworks own projects")],
                subject=f"plugin '{framework_id}'",
            )
        return index

    def add_project(self, framework_id: str, project_id: str) -> PluginRecord:
        """Attach a project to a framework. Adding an existing project is a no-op."""
        if not isinstance(project_id, str) or not _ID_RE.match(project_id):
            raise ValidationError([("project-id", f"must match {ID_PATTERN}")], subject="project")

        def operation(document: RegistryFile):
            index = self._framework_index(document, framework_id)
            record = document.plugins[index]
            if project_id in record.projects:
                return record, []
            updated = record.model_copy(update={"projects": record.projects + [project_id]})
            document.plugins[index] = updated
            return updated, [framework_id]

        record = self._mutate(operation)
        logger.info(f"Project '{project_id}' attached to '{framework_id}'")
        return record

    def remove_project(self, framework_id: str, project_id: str) -> PluginRecord:
        def operation(document: RegistryFile):
            index = self._framework_index(document, framework_id)
            record = document.plugins[index]
            if project_id not in record.projects:
                raise NotFoundError(
                    f"Project '{project_id}' is not attached to '{framework_id}'",
                    available=record.projects,
                )
            updated = record.model_copy(
                update={"projects": [p for p in record.projects if p != project_id]}
            )
            document.plugins[index] = updated
            return updated, [framework_id]

        return self._mutate(operation)

    def set_health_status(
        self,
        plugin_id: str,
        status: Union[HealthStatus, str],
        checked_at: Optional[datetime] = None,
    ) -> PluginRecord:
        return self.update_plugin(
            plugin_id,
            PluginPatch(health=HealthStatus(status).value, health_checked_at=checked_at or self._clock()),
        )

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def validate_registry(self) -> RegistryReport:
        """Validate the on-disk registry without raising."""
        if not self.registry_path.exists():
            return RegistryReport(valid=False, errors=["registry file does not exist"])
        try:
            document, _ = self._parse_file()
        except SchemaError as e:
            return RegistryReport(valid=False, errors=e.details.get("errors") or [e.message])
        return RegistryReport(valid=True, plugin_count=len(document.plugins))

    def check_integrity(self) -> IntegrityReport:
        """Cross-record and filesystem consistency checks."""
        plugins = {p.id: p for p in self.list_plugins()}
        issues = []
        for plugin in plugins.values():
            dep = plugin.dependency
            if dep and dep not in plugins:
                issues.append(f"{plugin.id}: references unregistered plugin '{dep}'")
            for linked in plugin.linked_frameworks:
                if linked not in plugins:
                    issues.append(f"{plugin.id}: linked to unregistered framework '{linked}'")

        if self.frameworks_dir.is_dir():
            for entry in sorted(self.frameworks_dir.iterdir()):
                if entry.is_dir() and entry.name != BACKUPS_DIRNAME and entry.name not in plugins:
                    issues.append(f"{entry.name}: directory present but not registered")
        return IntegrityReport(valid=not issues, issues=issues)

    # -------------------------------------------------------------------------
    # Registry backups
    # -------------------------------------------------------------------------

    def create_backup(self, reason: str = "manual") -> Path:
        """Snapshot the current registry into frameworks/backups/."""
        document = self.load()
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%fZ")
        path = self.backups_dir / f"registry-{stamp}.json"
        atomic_write_json(
            path,
            {
                "reason": reason,
                "created": self._clock().isoformat(),
                "registry": document.to_document(),
            },
        )
        logger.info(f"Registry backup created ({reason}): {path.name}")
        return path

    def list_backups(self) -> List[Path]:
        """Registry backups, newest first."""
        if not self.backups_dir.is_dir():
            return []
        return sorted(self.backups_dir.glob("registry-*.json"), reverse=True)

    def _read_backup(self, path: Path) -> RegistryFile:
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SchemaError(f"Unreadable registry backup {path}: {e}") from e
        data = payload.get("registry") if isinstance(payload, dict) else None
        document, problems = _validate_document(data)
        if problems:
            raise SchemaError(f"Invalid registry backup {path}: " + "; ".join(problems))
        return document

    def restore_from_backup(self, path: Path, create_backup_first: bool = True) -> RegistryFile:
        document = self._read_backup(path)
        if create_backup_first and self.registry_path.exists():
            try:
                self.create_backup("pre-restore")
            except SchemaError:
                logger.warning("Current registry is invalid; restoring without a pre-restore backup")
        with self._lock():
            self._write(document)
        self._notify(p.id for p in document.plugins)
        logger.info(f"Registry restored from {Path(path).name}")
        return document

    def clean_backups(self, keep_count: int = 5) -> int:
        """Delete all but the newest `keep_count` registry backups."""
        stale = self.list_backups()[keep_count:]
        for path in stale:
            path.unlink()
        return len(stale)

    def recover(self) -> str:
        """
        Bring the registry back to a valid state.

        Strategies, in order: keep it if valid; restore the newest
        readable backup; rebuild from per-plugin manifest.json files.

        Returns:
            The strategy that succeeded: "valid", "backup" or "rebuild"
        """
        if self.validate_registry().valid:
            return "valid"

        for path in self.list_backups():
            try:
                self.restore_from_backup(path, create_backup_first=False)
            except SchemaError as e:
                logger.warning(f"Skipping unusable backup {path.name}: {e.message}")
                continue
            return "backup"

        document = RegistryFile(plugins=self._scan_manifests())
        with self._lock():
            self._write(document)
        self._notify(p.id for p in document.plugins)
        logger.warning(f"Registry rebuilt from disk with {len(document.plugins)} plugin(s)")
        return "rebuild"

    def _scan_manifests(self) -> List[PluginRecord]:
        records: List[PluginRecord] = []
        if not self.frameworks_dir.is_dir():
            return records
        for entry in sorted(self.frameworks_dir.iterdir()):
            manifest_path = entry / MANIFEST_FILENAME
            if not manifest_path.is_file():
                continue
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
                records.append(
                    validate_plugin_data(
                        {
                            "id": manifest.get("id", entry.name),
                            "type": manifest.get("type", PluginType.FRAMEWORK.value),
                            "name": manifest.get("name", entry.name),
                            "version": manifest.get("version"),
                            "install-date": self._clock().isoformat(),
                            "repo-path": f"frameworks/{entry.name}/repo/",
                            "parent-framework": manifest.get("parent-framework"),
                            "extends": manifest.get("extends"),
                        }
                    )
                )
            except (OSError, json.JSONDecodeError, AttributeError, WorkspaceError) as e:
                logger.warning(f"Cannot rebuild record for {entry.name}: {e}")
        return records
