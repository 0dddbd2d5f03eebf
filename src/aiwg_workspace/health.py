# src/aiwg_workspace/health.py
"""
Plugin Health Checker.

Five independent checks per plugin, each yielding zero or more issues:
- manifest-integrity: manifest.json exists, parses, carries id/version/type
- directory-structure: repo/ (and projects/ for frameworks) are directories
- version-compatibility: add-on vs parent framework semver coupling
- dependencies: parent/extended plugin resolves; no cycles in the chain
- disk-usage: oversized plugins are flagged (warning only)

Overall status is the worst severity seen.

Side effect: `check_plugin` writes the resulting status back onto the
registry record (best effort). Pass `write_back=False` for a pure query.
"""
import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from aiwg_workspace.errors import (
    HealthCheckError,
    NotFoundError,
    PathResolutionError,
    WorkspaceError,
)
from aiwg_workspace.models import (
    HealthCheckResult,
    HealthIssue,
    HealthStatus,
    PluginManifest,
    PluginPatch,
    PluginRecord,
    PluginType,
    Severity,
    utcnow,
    worst_status,
)
from aiwg_workspace.registry import MANIFEST_FILENAME, PluginRegistry
from aiwg_workspace.security.paths import PathResolver
from aiwg_workspace.services.fs_engine import atomic_write_json, dir_size

logger = logging.getLogger(__name__)

CHECK_MANIFEST = "manifest-integrity"
CHECK_DIRECTORIES = "directory-structure"
CHECK_VERSION = "version-compatibility"
CHECK_DEPENDENCIES = "dependencies"
CHECK_DISK_USAGE = "disk-usage"
CHECK_FAILED = "health-check-failed"

REQUIRED_MANIFEST_FIELDS = ("id", "version", "type")
SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)")

RECOMMENDATIONS = {
    CHECK_MANIFEST: "Reinstall the plugin or run repair to regenerate a minimal manifest.json",
    CHECK_DIRECTORIES: "Run repair to recreate missing directories",
    CHECK_VERSION: "Install an add-on version built for the installed framework",
    CHECK_DEPENDENCIES: "Install the missing parent framework or fix the dependency chain",
    CHECK_DISK_USAGE: "Archive old project artifacts to reduce disk usage",
    CHECK_FAILED: "Inspect the plugin record; the health check could not run",
}


def _issue(check: str, severity: Severity, message: str, **details) -> HealthIssue:
    return HealthIssue(check=check, severity=severity, message=message, details=details)


def parse_semver(version: str) -> Optional[Tuple[int, int, int]]:
    match = SEMVER_RE.match(version or "")
    if not match:
        return None
    return tuple(int(part) for part in match.groups())


@dataclass
class HealthSummary:
    total: int
    healthy: int
    warnings: int
    errors: int
    results: Dict[str, HealthCheckResult] = field(default_factory=dict)
    issues_by_check: Dict[str, int] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def all_healthy(self) -> bool:
        return self.total == self.healthy


@dataclass
class HealthReport:
    result: HealthCheckResult
    recommendations: List[str] = field(default_factory=list)


@dataclass
class RepairResult:
    plugin_id: str
    actions: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return bool(self.actions) and not self.failures


class HealthChecker:
    """
    Audits plugin integrity and performs mechanically safe repairs.

    Results are cached per plugin for `cache_ttl` seconds.
    """

    def __init__(
        self,
        base_path: Union[str, Path] = ".aiwg",
        registry: Optional[PluginRegistry] = None,
        cache_ttl: float = 300.0,
        disk_usage_warning_bytes: int = 500 * 1024 * 1024,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_path = Path(base_path)
        self.registry = registry or PluginRegistry(self.base_path)
        self.resolver = PathResolver(self.base_path)
        self.cache_ttl = cache_ttl
        self.disk_usage_warning_bytes = disk_usage_warning_bytes
        self.max_workers = max_workers
        self._clock = clock
        self._cache: Dict[str, Tuple[float, HealthCheckResult]] = {}

    @classmethod
    def from_settings(cls, settings, registry: Optional[PluginRegistry] = None) -> "HealthChecker":
        return cls(
            base_path=settings.workspace.root,
            registry=registry,
            cache_ttl=settings.cache.ttl_seconds,
            disk_usage_warning_bytes=settings.health.disk_usage_warning_mb * 1024 * 1024,
            max_workers=settings.health.max_workers,
        )

    # -------------------------------------------------------------------------
    # Plugin locations
    # -------------------------------------------------------------------------

    def _repo_dir(self, plugin: PluginRecord) -> Path:
        """Absolute repo directory; raises PathSecurityError for unsafe paths."""
        return self.resolver.to_absolute(plugin.repo_path)

    def _manifest_path(self, plugin: PluginRecord) -> Path:
        # Layout `frameworks/{id}/repo/` keeps the manifest beside repo/
        repo_dir = self._repo_dir(plugin)
        if self.resolver.normalize(plugin.repo_path).endswith("/repo"):
            return repo_dir.parent / MANIFEST_FILENAME
        return repo_dir / MANIFEST_FILENAME

    def _lookup(self, plugin_id: str) -> Tuple[PluginRecord, Dict[str, PluginRecord]]:
        plugins = {p.id: p for p in self.registry.list_plugins()}
        if plugin_id not in plugins:
            raise NotFoundError(f"Plugin '{plugin_id}' is not registered", available=list(plugins))
        return plugins[plugin_id], plugins

    # -------------------------------------------------------------------------
    # Individual checks
    # -------------------------------------------------------------------------

    def validate_manifest(self, plugin_id: str) -> List[HealthIssue]:
        plugin, _ = self._lookup(plugin_id)
        return self._check_manifest(plugin)

    def _check_manifest(self, plugin: PluginRecord) -> List[HealthIssue]:
        try:
            path = self._manifest_path(plugin)
        except PathResolutionError as e:
            return [_issue(CHECK_MANIFEST, Severity.ERROR, f"Unsafe repo path: {e.message}")]

        if not path.is_file():
            return [
                _issue(CHECK_MANIFEST, Severity.ERROR, "Manifest file not found",
                       path=str(path), reason="missing")
            ]
        try:
            manifest = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            return [_issue(CHECK_MANIFEST, Severity.ERROR, f"Manifest is not valid JSON: {e}", path=str(path))]
        if not isinstance(manifest, dict):
            return [_issue(CHECK_MANIFEST, Severity.ERROR, "Manifest is not a JSON object", path=str(path))]

        issues = []
        missing = [f for f in REQUIRED_MANIFEST_FIELDS if not manifest.get(f)]
        if missing:
            issues.append(
                _issue(CHECK_MANIFEST, Severity.ERROR,
                       f"Manifest missing required fields: {', '.join(missing)}", missing=missing)
            )
        declared = manifest.get("id")
        if declared and declared != plugin.id:
            issues.append(
                _issue(CHECK_MANIFEST, Severity.WARNING,
                       f"Manifest id '{declared}' does not match registry id '{plugin.id}'",
                       manifest_id=declared, registry_id=plugin.id)
            )
        return issues

    def validate_directories(self, plugin_id: str) -> List[HealthIssue]:
        plugin, _ = self._lookup(plugin_id)
        return self._check_directories(plugin)

    def _required_dirs(self, plugin: PluginRecord) -> List[Tuple[str, Path]]:
        repo_dir = self._repo_dir(plugin)
        required = [("repo", repo_dir)]
        if plugin.type == PluginType.FRAMEWORK:
            required.append(("projects", repo_dir.parent / "projects"))
        return required

    def _check_directories(self, plugin: PluginRecord) -> List[HealthIssue]:
        try:
            required = self._required_dirs(plugin)
        except PathResolutionError as e:
            return [_issue(CHECK_DIRECTORIES, Severity.ERROR, f"Unsafe repo path: {e.message}")]

        issues = []
        for label, path in required:
            if not path.exists():
                issues.append(
                    _issue(CHECK_DIRECTORIES, Severity.ERROR, f"Required directory missing: {label}/",
                           path=str(path), reason="missing")
                )
            elif not path.is_dir():
                issues.append(
                    _issue(CHECK_DIRECTORIES, Severity.ERROR, f"Expected a directory: {label}/",
                           path=str(path), reason="not-a-directory")
                )
        return issues

    def validate_version_compatibility(self, plugin_id: str) -> List[HealthIssue]:
        plugin, plugins = self._lookup(plugin_id)
        return self._check_version(plugin, plugins)

    def _check_version(self, plugin: PluginRecord, plugins: Dict[str, PluginRecord]) -> List[HealthIssue]:
        if plugin.type != PluginType.ADD_ON:
            return []
        parent = plugins.get(plugin.parent_framework or "")
        if parent is None:
            # Reported by the dependency check
            return []

        ours, theirs = parse_semver(plugin.version), parse_semver(parent.version)
        if ours is None or theirs is None:
            return [
                _issue(CHECK_VERSION, Severity.WARNING, "Cannot parse versions for compatibility check",
                       version=plugin.version, parent_version=parent.version)
            ]
        if ours[0] != theirs[0]:
            return [
                _issue(CHECK_VERSION, Severity.ERROR,
                       f"Major version mismatch: add-on {plugin.version} requires framework "
                       f"{ours[0]}.x, found {parent.id} {parent.version}",
                       version=plugin.version, parent_version=parent.version)
            ]
        if ours[1] > theirs[1]:
            return [
                _issue(CHECK_VERSION, Severity.WARNING,
                       f"Add-on {plugin.version} may need features from a newer framework "
                       f"than {parent.id} {parent.version}",
                       version=plugin.version, parent_version=parent.version)
            ]
        return []

    def validate_dependencies(self, plugin_id: str) -> List[HealthIssue]:
        plugin, plugins = self._lookup(plugin_id)
        return self._check_dependencies(plugin, plugins)

    def _check_dependencies(self, plugin: PluginRecord, plugins: Dict[str, PluginRecord]) -> List[HealthIssue]:
        issues = []
        dep_id = plugin.dependency
        if dep_id:
            relation = "parent framework" if plugin.type == PluginType.ADD_ON else "extended framework"
            target = plugins.get(dep_id)
            if target is None:
                issues.append(
                    _issue(CHECK_DEPENDENCIES, Severity.ERROR, f"Missing {relation}: {dep_id}",
                           dependency=dep_id)
                )
            else:
                if target.type != PluginType.FRAMEWORK:
                    issues.append(
                        _issue(CHECK_DEPENDENCIES, Severity.WARNING,
                               f"{relation.capitalize()} '{dep_id}' is a {target.type}, not a framework",
                               dependency=dep_id)
                    )
                if target.health == HealthStatus.ERROR:
                    issues.append(
                        _issue(CHECK_DEPENDENCIES, Severity.WARNING,
                               f"{relation.capitalize()} '{dep_id}' has health errors",
                               dependency=dep_id)
                    )

        cycle = self._find_cycle(plugin.id, plugins)
        if cycle:
            issues.append(
                _issue(CHECK_DEPENDENCIES, Severity.ERROR,
                       f"Circular dependency detected: {'->'.join(cycle)}", cycle=cycle)
            )
        return issues

    @staticmethod
    def _find_cycle(start: str, plugins: Dict[str, PluginRecord]) -> Optional[List[str]]:
        """Follow the parent/extends chain from `start`; return the cycle if one closes."""
        chain = [start]
        position = {start: 0}
        current = plugins.get(start)
        while current is not None:
            next_id = current.dependency
            if not next_id:
                return None
            if next_id in position:
                return chain[position[next_id]:] + [next_id]
            position[next_id] = len(chain)
            chain.append(next_id)
            current = plugins.get(next_id)
        return None

    def check_disk_usage(self, plugin_id: str) -> List[HealthIssue]:
        plugin, _ = self._lookup(plugin_id)
        return self._check_disk_usage(plugin)

    def _check_disk_usage(self, plugin: PluginRecord) -> List[HealthIssue]:
        try:
            repo_dir = self._repo_dir(plugin)
        except PathResolutionError:
            return []
        size = dir_size(repo_dir)
        if size > self.disk_usage_warning_bytes:
            return [
                _issue(CHECK_DISK_USAGE, Severity.WARNING,
                       f"Plugin uses {size / (1024 * 1024):.1f} MB "
                       f"(threshold {self.disk_usage_warning_bytes / (1024 * 1024):.0f} MB)",
                       size_bytes=size)
            ]
        return []

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def _run_checks(self, plugin: PluginRecord, plugins: Dict[str, PluginRecord]) -> HealthCheckResult:
        issues: List[HealthIssue] = []
        issues += self._check_manifest(plugin)
        issues += self._check_directories(plugin)
        issues += self._check_version(plugin, plugins)
        issues += self._check_dependencies(plugin, plugins)
        issues += self._check_disk_usage(plugin)
        return HealthCheckResult(plugin_id=plugin.id, status=worst_status(issues), issues=issues)

    def _write_back(self, result: HealthCheckResult) -> None:
        try:
            self.registry.update_plugin(
                result.plugin_id,
                PluginPatch(health=result.status.value, health_checked_at=result.timestamp),
            )
        except WorkspaceError as e:
            logger.warning(f"Could not persist health for '{result.plugin_id}': {e.message}")
        except OSError as e:
            logger.warning(f"Could not persist health for '{result.plugin_id}': {e}")

    def check_plugin(self, plugin_id: str, use_cache: bool = True, write_back: bool = True) -> HealthCheckResult:
        """
        Run every check for one plugin.

        Writes the status back onto the registry record unless
        `write_back` is False; a failed write-back only logs a warning.

        Raises:
            NotFoundError: the plugin is not registered
        """
        if use_cache:
            cached = self.get_cached(plugin_id)
            if cached is not None:
                return cached

        plugin, plugins = self._lookup(plugin_id)
        result = self._run_checks(plugin, plugins)
        self._cache[plugin_id] = (self._clock(), result)
        if write_back:
            self._write_back(result)
        return result

    def _safe_check(self, plugin: PluginRecord, plugins: Dict[str, PluginRecord]) -> HealthCheckResult:
        try:
            return self._run_checks(plugin, plugins)
        except Exception as e:
            logger.warning(f"Health check failed for '{plugin.id}': {e}")
            err = e if isinstance(e, HealthCheckError) else HealthCheckError(str(e))
            return HealthCheckResult(
                plugin_id=plugin.id,
                status=HealthStatus.ERROR,
                issues=[_issue(CHECK_FAILED, Severity.ERROR, err.message, error=type(e).__name__)],
            )

    def check_all(self, write_back: bool = True) -> Dict[str, HealthCheckResult]:
        """
        Check every registered plugin.

        Checks run on a thread pool; one failing plugin becomes a
        `health-check-failed` issue instead of aborting the sweep.
        Write-backs happen afterwards, one at a time.
        """
        plugins = {p.id: p for p in self.registry.list_plugins()}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                pid: executor.submit(self._safe_check, plugin, plugins)
                for pid, plugin in plugins.items()
            }
            results = {pid: future.result() for pid, future in futures.items()}

        now = self._clock()
        for pid, result in results.items():
            self._cache[pid] = (now, result)
            if write_back:
                self._write_back(result)
        return results

    def generate_summary(self, write_back: bool = True) -> HealthSummary:
        results = self.check_all(write_back=write_back)
        by_check: Dict[str, int] = {}
        for result in results.values():
            for issue in result.issues:
                by_check[issue.check] = by_check.get(issue.check, 0) + 1
        statuses = [r.status for r in results.values()]
        return HealthSummary(
            total=len(results),
            healthy=statuses.count(HealthStatus.HEALTHY),
            warnings=statuses.count(HealthStatus.WARNING),
            errors=statuses.count(HealthStatus.ERROR),
            results=results,
            issues_by_check=by_check,
        )

    def get_health_report(self, plugin_id: str) -> HealthReport:
        result = self.check_plugin(plugin_id)
        recommendations = []
        for issue in result.issues:
            advice = RECOMMENDATIONS.get(issue.check)
            if advice and advice not in recommendations:
                recommendations.append(advice)
        return HealthReport(result=result, recommendations=recommendations)

    # -------------------------------------------------------------------------
    # Repair
    # -------------------------------------------------------------------------

    def repair_plugin(self, plugin_id: str) -> RepairResult:
        """
        Apply mechanically safe fixes only.

        Creates directories reported missing and writes a minimal
        manifest if none exists. Version, dependency and cycle problems
        are left alone.
        """
        plugin, _ = self._lookup(plugin_id)
        outcome = RepairResult(plugin_id=plugin_id)

        for issue in self._check_directories(plugin):
            if issue.details.get("reason") != "missing":
                continue
            path = Path(issue.details["path"])
            try:
                path.mkdir(parents=True, exist_ok=True)
                outcome.actions.append(f"Created directory {path}")
            except OSError as e:
                outcome.failures.append(f"Cannot create {path}: {e}")

        for issue in self._check_manifest(plugin):
            if issue.details.get("reason") != "missing":
                continue
            path = Path(issue.details["path"])
            manifest = PluginManifest(
                id=plugin.id,
                type=plugin.type.value,
                name=plugin.name,
                version=plugin.version,
                description=f"Regenerated manifest for {plugin.name}",
            )
            try:
                atomic_write_json(path, manifest.model_dump(exclude_none=True))
                outcome.actions.append(f"Regenerated manifest {path}")
            except OSError as e:
                outcome.failures.append(f"Cannot write {path}: {e}")

        self.invalidate_cache(plugin_id)
        logger.info(f"Repair of '{plugin_id}': {len(outcome.actions)} action(s), {len(outcome.failures)} failure(s)")
        return outcome

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def get_cached(self, plugin_id: str) -> Optional[HealthCheckResult]:
        entry = self._cache.get(plugin_id)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at >= self.cache_ttl:
            del self._cache[plugin_id]
            return None
        return result

    def invalidate_cache(self, plugin_id: str) -> None:
        self._cache.pop(plugin_id, None)

    def clear_cache(self) -> None:
        self._cache.clear()
