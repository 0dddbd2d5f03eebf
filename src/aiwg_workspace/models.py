# src/aiwg_workspace/models.py
"""
Data models for the workspace core.

On-disk documents (registry.json, manifest.json, migration-manifest.json)
keep their established key spelling through field aliases; Python code
uses snake_case attribute names.
"""
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from aiwg_workspace.errors import ValidationError

SCHEMA_VERSION = "1.0"
ID_PATTERN = r"^[a-z0-9-]+$"
SEMVER_PATTERN = r"^\d+\.\d+\.\d+$"

KebabId = Annotated[str, StringConstraints(pattern=ID_PATTERN)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PluginType(StrEnum):
    FRAMEWORK = "framework"
    ADD_ON = "add-on"
    EXTENSION = "extension"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Registry
# =============================================================================


class PluginRecord(BaseModel):
    """
    A registered plugin.

    Unknown keys found on disk are preserved so records written by newer
    tools survive a round trip.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: KebabId
    type: PluginType
    name: str = Field(min_length=1)
    version: str = Field(pattern=SEMVER_PATTERN)
    install_date: datetime = Field(alias="install-date")
    repo_path: str = Field(alias="repo-path", min_length=1)
    parent_framework: Optional[str] = Field(default=None, alias="parent-framework")
    extends_framework: Optional[str] = Field(default=None, alias="extends")
    projects: List[KebabId] = Field(default_factory=list)
    health: HealthStatus = HealthStatus.UNKNOWN
    health_checked_at: Optional[datetime] = Field(default=None, alias="health-checked")
    linked_frameworks: List[str] = Field(default_factory=list, alias="linked-frameworks")

    @property
    def dependency(self) -> Optional[str]:
        """The plugin id this record depends on, if any."""
        if self.type == PluginType.ADD_ON:
            return self.parent_framework
        if self.type == PluginType.EXTENSION:
            return self.extends_framework
        return None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PluginPatch(BaseModel):
    """
    Partial update for a PluginRecord.

    Only fields explicitly set are merged; setting an optional field to
    None clears it. The merged result is revalidated as a full record.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None
    install_date: Optional[datetime] = Field(default=None, alias="install-date")
    repo_path: Optional[str] = Field(default=None, alias="repo-path")
    parent_framework: Optional[str] = Field(default=None, alias="parent-framework")
    extends_framework: Optional[str] = Field(default=None, alias="extends")
    projects: Optional[List[str]] = None
    health: Optional[str] = None
    health_checked_at: Optional[datetime] = Field(default=None, alias="health-checked")
    linked_frameworks: Optional[List[str]] = Field(default=None, alias="linked-frameworks")

    def apply_to(self, record: PluginRecord) -> Dict[str, Any]:
        """Merge this patch over a record, returning raw document data."""
        merged = record.to_document()
        for key, value in self.model_dump(mode="json", by_alias=True, exclude_unset=True).items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return merged


_RELATIONSHIP_FIELDS = {
    PluginType.ADD_ON.value: ("parent-framework", "parent_framework"),
    PluginType.EXTENSION.value: ("extends", "extends_framework"),
}


def _loc_to_field(loc) -> str:
    return ".".join(str(part) for part in loc) or "record"


def validate_plugin_data(data: Mapping[str, Any]) -> PluginRecord:
    """
    Validate raw record data, reporting every failing field at once.

    Raises:
        ValidationError: listing each (field, message) problem
    """
    if not isinstance(data, Mapping):
        raise ValidationError([("record", "must be an object")])

    problems = []
    record = None
    try:
        record = PluginRecord.model_validate(dict(data))
    except PydanticValidationError as exc:
        for err in exc.errors():
            problems.append((_loc_to_field(err["loc"]), err["msg"]))

    required = _RELATIONSHIP_FIELDS.get(str(data.get("type")))
    if required:
        alias, name = required
        if not (data.get(alias) or data.get(name)):
            problems.append((alias, f"required for type '{data.get('type')}'"))

    if problems:
        raise ValidationError(problems, subject=f"plugin '{data.get('id', '?')}'")
    return record


class RegistryFile(BaseModel):
    version: str = SCHEMA_VERSION
    plugins: List[PluginRecord] = Field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "plugins": [p.to_document() for p in self.plugins],
        }


class PluginManifest(BaseModel):
    """Minimal per-plugin manifest.json, as regenerated by repair."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    type: str
    name: str
    version: str
    description: Optional[str] = None


# =============================================================================
# Migration
# =============================================================================


class BackupManifest(BaseModel):
    """Bookkeeping for one workspace backup snapshot."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timestamp: datetime
    source_path: str
    backup_path: str
    checksum: str
    file_count: int
    total_size: int


# =============================================================================
# Context
# =============================================================================


class ContextFile(BaseModel):
    path: str
    absolute_path: Path
    size: int
    type: str


class FrameworkContext(BaseModel):
    framework_id: str
    project_id: str
    context_paths: List[Path]
    excluded_paths: List[Path]
    lazy: bool = True
    files: Optional[List[ContextFile]] = None
    file_count: Optional[int] = None
    total_size: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# Health
# =============================================================================


class HealthIssue(BaseModel):
    check: str
    severity: Severity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthCheckResult(BaseModel):
    plugin_id: str
    status: HealthStatus
    issues: List[HealthIssue] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def errors(self) -> List[HealthIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[HealthIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]


def worst_status(issues: List[HealthIssue]) -> HealthStatus:
    if any(i.severity == Severity.ERROR for i in issues):
        return HealthStatus.ERROR
    if any(i.severity == Severity.WARNING for i in issues):
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY
