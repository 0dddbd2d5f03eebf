# src/aiwg_workspace/errors.py
"""
Workspace error taxonomy.

Every error raised by the workspace core derives from WorkspaceError and
carries a `kind` tag, so callers can branch on `err.kind` instead of
matching message text.
"""
from enum import StrEnum
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    NOT_FOUND = "not-found"
    DUPLICATE = "duplicate"
    LOCK = "lock"
    SCHEMA = "schema"
    ISOLATION_VIOLATION = "isolation-violation"
    CONTEXT_LOAD = "context-load"
    PATH_SECURITY = "path-security"
    PATH_RESOLUTION = "path-resolution"
    MISSING_PLACEHOLDER = "missing-placeholder"
    MIGRATION_VALIDATION = "migration-validation"
    MIGRATION = "migration"
    ROLLBACK = "rollback"
    HEALTH_CHECK = "health-check"


class WorkspaceError(Exception):
    """Base class for all workspace errors."""

    kind: ClassVar[ErrorKind]

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(WorkspaceError):
    """Raised when a record or document has the wrong shape. Lists every failing field."""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: Sequence[Tuple[str, str]], subject: str = "record"):
        self.errors: List[Tuple[str, str]] = list(errors)
        lines = "; ".join(f"{field}: {msg}" for field, msg in self.errors)
        super().__init__(
            f"Invalid {subject}: {lines}",
            {"fields": self.fields},
        )

    @property
    def fields(self) -> List[str]:
        seen: List[str] = []
        for field, _ in self.errors:
            if field not in seen:
                seen.append(field)
        return seen


class NotFoundError(WorkspaceError):
    """Raised when an id is not registered."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, available: Sequence[str] = ()):
        self.available = list(available)
        if self.available:
            message = f"{message} (available: {', '.join(self.available)})"
        super().__init__(message, {"available": self.available})


class DuplicateError(WorkspaceError):
    """Raised when an id is already registered."""

    kind = ErrorKind.DUPLICATE


class LockError(WorkspaceError):
    """Raised when a lock marker could not be acquired after all retries."""

    kind = ErrorKind.LOCK


class SchemaError(WorkspaceError):
    """Raised when an on-disk document is malformed or fails validation."""

    kind = ErrorKind.SCHEMA


class IsolationViolationError(WorkspaceError):
    """Raised when loaded context contains files owned by another framework."""

    kind = ErrorKind.ISOLATION_VIOLATION

    def __init__(self, framework_id: str, violations: Sequence[Dict[str, str]]):
        self.framework_id = framework_id
        self.violations = list(violations)
        owners = sorted({v["owner"] for v in self.violations})
        super().__init__(
            f"Isolation violation for '{framework_id}': {len(self.violations)} file(s) "
            f"from {', '.join(owners)}",
            {"violations": self.violations},
        )


class ContextLoadError(WorkspaceError):
    """Raised when a context directory cannot be read."""

    kind = ErrorKind.CONTEXT_LOAD


class PathResolutionError(WorkspaceError):
    kind = ErrorKind.PATH_RESOLUTION


class MissingPlaceholderError(PathResolutionError):
    """Raised when a template placeholder has no value."""

    kind = ErrorKind.MISSING_PLACEHOLDER

    def __init__(self, placeholder: str, available: Sequence[str]):
        self.placeholder = placeholder
        self.available = list(available)
        super().__init__(
            f"Unresolved placeholder '{{{placeholder}}}'. "
            f"Supported placeholders: {', '.join(self.available)}",
            {"placeholder": placeholder, "available": self.available},
        )


class PathSecurityError(PathResolutionError):
    """Raised when a path fails security validation. Never sanitized."""

    kind = ErrorKind.PATH_SECURITY

    def __init__(self, message: str, path: str):
        self.path = path
        super().__init__(message, {"path": path})


class PathTraversalError(PathSecurityError):
    pass


class ForbiddenPathError(PathSecurityError):
    pass


class UnsafeCharacterError(PathSecurityError):
    pass


class MigrationValidationError(WorkspaceError):
    """Raised when one or more migration pre-flight checks fail."""

    kind = ErrorKind.MIGRATION_VALIDATION

    def __init__(self, failures: Sequence[Dict[str, Any]]):
        self.failures = list(failures)
        names = ", ".join(f["check"] for f in self.failures)
        super().__init__(
            f"Migration pre-flight failed: {names}",
            {"failures": self.failures},
        )


class MigrationError(WorkspaceError):
    """Raised when a migration step fails."""

    kind = ErrorKind.MIGRATION

    def __init__(self, message: str, no_safety_net: bool = False, details=None):
        self.no_safety_net = no_safety_net
        if no_safety_net:
            message = f"{message} (WARNING: backup was skipped, no safety net; manual recovery required)"
        super().__init__(message, details)


class RollbackError(WorkspaceError):
    """Raised when a backup cannot be restored. Requires manual intervention."""

    kind = ErrorKind.ROLLBACK


class HealthCheckError(WorkspaceError):
    """Raised when a health check cannot run at all."""

    kind = ErrorKind.HEALTH_CHECK
