# tests/test_migration.py
"""
Tests for MigrationTool.

Tests:
- Pre-flight validation (aggregated failures)
- Full migration with backup, reference rewriting and verification
- Automatic and manual rollback, checksum protection
- Dry run, incremental mode, retention and status reporting
"""
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import plugin_data, snapshot, write_files
from aiwg_workspace.errors import (
    ErrorKind,
    MigrationError,
    MigrationValidationError,
    RollbackError,
    ValidationError,
)
from aiwg_workspace.migration import (
    BACKUP_MANIFEST_NAME,
    MigrationState,
    MigrationStatus,
    MigrationTool,
)
from aiwg_workspace.models import BackupManifest
from aiwg_workspace.registry import PluginRegistry
from aiwg_workspace.services.fs_engine import tree_checksum

LEGACY_FILES = {
    "requirements/uc-1.md": "Use case one",
    "requirements/uc-2.md": "Use case two",
    "requirements/nfr.md": "See .aiwg/working/draft.md",
    "working/draft.md": "Draft referencing .aiwg/requirements/uc-1.md",
    "working/scratch.txt": "scratch",
}


class TickingClock:
    def __init__(self, start=datetime(2025, 10, 19, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def legacy(workspace: Path) -> Path:
    write_files(workspace, LEGACY_FILES)
    return workspace


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def tool(workspace, clock) -> MigrationTool:
    return MigrationTool(workspace, clock=clock)


class TestValidation:
    def test_all_checks_pass(self, legacy, tool):
        checks = tool.validate("p", "f")
        assert [c.check for c in checks] == ["disk-space", "permissions", "conflicts", "lock"]
        assert all(c.passed for c in checks)

    def test_failures_are_aggregated(self, legacy, clock):
        tool = MigrationTool(legacy, clock=clock, disk_usage=lambda _: (100, 100, 0))
        write_files(legacy, {"frameworks/f/projects/p/existing.md": "x"})
        (legacy / ".migration-lock").write_text("{}")

        with pytest.raises(MigrationValidationError) as exc_info:
            tool.validate("p", "f")

        err = exc_info.value
        assert err.kind == ErrorKind.MIGRATION_VALIDATION
        assert [f["check"] for f in err.failures] == ["disk-space", "conflicts", "lock"]

    def test_missing_root_fails_permissions(self, tmp_path, clock):
        tool = MigrationTool(tmp_path / "absent", clock=clock)
        with pytest.raises(MigrationValidationError) as exc_info:
            tool.validate("p", "f")
        assert "permissions" in [f["check"] for f in exc_info.value.failures]

    def test_failed_validation_changes_nothing(self, legacy, clock):
        before = snapshot(legacy)
        tool = MigrationTool(legacy, clock=clock, disk_usage=lambda _: (0, 0, 0))
        with pytest.raises(MigrationValidationError):
            tool.migrate("p", "f")
        assert snapshot(legacy) == before
        assert tool.state == MigrationState.FAILED
        assert tool.list_backups() == []


class TestMigrate:
    def test_moves_directories_and_backs_up(self, legacy, tool):
        result = tool.migrate(project_id="p", framework_id="f")

        assert not (legacy / "requirements").exists()
        assert not (legacy / "working").exists()
        requirements = legacy / "frameworks" / "f" / "projects" / "p" / "requirements"
        working = legacy / "frameworks" / "f" / "working"
        assert sorted(p.name for p in requirements.iterdir()) == ["nfr.md", "uc-1.md", "uc-2.md"]
        assert sorted(p.name for p in working.iterdir()) == ["draft.md", "scratch.txt"]
        assert result.migrated_files == 5

        manifest = BackupManifest.model_validate_json(
            (result.backup_path / BACKUP_MANIFEST_NAME).read_text()
        )
        checksum, count, _ = tree_checksum(result.backup_path, exclude={BACKUP_MANIFEST_NAME})
        assert checksum == manifest.checksum
        assert count == manifest.file_count == 5

    def test_manifest_uses_camel_case_keys(self, legacy, tool):
        result = tool.migrate("p", "f")
        raw = json.loads((result.backup_path / BACKUP_MANIFEST_NAME).read_text())
        assert set(raw) == {"timestamp", "sourcePath", "backupPath", "checksum", "fileCount", "totalSize"}

    def test_backup_is_sibling_with_timestamp(self, legacy, tool):
        result = tool.migrate("p", "f")
        assert result.backup_path.parent == legacy.resolve().parent
        assert result.backup_path.name.startswith(".aiwg.backup.")

    def test_references_rewritten(self, legacy, tool):
        result = tool.migrate("p", "f")
        base = legacy / "frameworks" / "f"
        assert (base / "working" / "draft.md").read_text() == (
            "Draft referencing .aiwg/frameworks/f/projects/p/requirements/uc-1.md"
        )
        assert (base / "projects" / "p" / "requirements" / "nfr.md").read_text() == (
            "See .aiwg/frameworks/f/working/draft.md"
        )
        assert result.references_updated == 2

    def test_state_history(self, legacy, tool):
        tool.migrate("p", "f")
        states = [state for state, _ in tool.history]
        assert states == [
            MigrationState.VALIDATING,
            MigrationState.BACKING_UP,
            MigrationState.MIGRATING,
            MigrationState.UPDATING_REFERENCES,
            MigrationState.VERIFYING,
            MigrationState.COMPLETED,
        ]

    def test_incremental_mode_same_end_state(self, legacy, clock):
        tool = MigrationTool(legacy, clock=clock, incremental_threshold_bytes=1, batch_size=1)
        result = tool.migrate("p", "f")
        assert result.incremental
        assert MigrationState.MIGRATING_INCREMENTALLY in [s for s, _ in tool.history]
        assert (legacy / "frameworks" / "f" / "working" / "scratch.txt").exists()

    def test_lock_removed_after_success(self, legacy, tool):
        tool.migrate("p", "f")
        assert not (legacy / ".migration-lock").exists()

    def test_registers_project_with_framework(self, legacy, clock):
        registry = PluginRegistry(legacy)
        registry.add_plugin(plugin_data("f"))
        tool = MigrationTool(legacy, registry=registry, clock=clock)
        tool.migrate("p", "f")
        assert registry.get_projects("f") == ["p"]

    def test_invalid_ids_rejected(self, legacy, tool):
        with pytest.raises(ValidationError) as exc_info:
            tool.migrate("Bad Project", "f")
        assert exc_info.value.fields == ["project-id"]
        assert tool.history == []


class TestRollback:
    def test_rollback_restores_byte_identical(self, legacy, tool):
        before = snapshot(legacy)
        tool.migrate("p", "f")

        tool.rollback()

        after = snapshot(legacy)
        assert after == before
        assert (legacy / "requirements").is_dir()
        assert (legacy / "working").is_dir()

    def test_rollback_consumes_backup(self, legacy, tool):
        tool.migrate("p", "f")
        tool.rollback()
        assert tool.list_backups() == []
        with pytest.raises(RollbackError):
            tool.rollback()

    def test_checksum_mismatch_refuses(self, legacy, tool):
        result = tool.migrate("p", "f")
        migrated = snapshot(legacy)
        (result.backup_path / "requirements" / "uc-1.md").write_text("tampered")

        with pytest.raises(RollbackError, match="Checksum mismatch"):
            tool.rollback()

        assert snapshot(legacy) == migrated
        assert (result.backup_path / BACKUP_MANIFEST_NAME).exists()

    def test_no_backup(self, workspace, tool):
        with pytest.raises(RollbackError) as exc_info:
            tool.rollback()
        assert exc_info.value.kind == ErrorKind.ROLLBACK

    def test_failure_triggers_automatic_rollback(self, legacy, tool):
        before = snapshot(legacy)
        with patch.object(tool, "update_internal_references", side_effect=RuntimeError("boom")):
            with pytest.raises(MigrationError) as exc_info:
                tool.migrate("p", "f")

        assert "rolled back" in str(exc_info.value)
        assert tool.state == MigrationState.ROLLED_BACK
        assert snapshot(legacy) == before
        assert not (legacy / ".migration-lock").exists()

    def test_failed_verification_rolls_back(self, legacy, tool):
        before = snapshot(legacy)
        with patch.object(tool, "_execute_moves", return_value=0):
            with pytest.raises(MigrationError, match="verification failed"):
                tool.migrate("p", "f")
        assert tool.state == MigrationState.ROLLED_BACK
        assert snapshot(legacy) == before

    def test_skip_backup_failure_has_no_safety_net(self, legacy, tool):
        with patch.object(tool, "update_internal_references", side_effect=RuntimeError("boom")):
            with pytest.raises(MigrationError) as exc_info:
                tool.migrate("p", "f", skip_backup=True)
        assert exc_info.value.no_safety_net
        assert "no safety net" in str(exc_info.value)
        assert tool.state == MigrationState.FAILED


class TestPlanningAndStatus:
    def test_dry_run_does_not_mutate(self, legacy, tool):
        before = snapshot(legacy)
        plan = tool.dry_run("p", "f")

        assert snapshot(legacy) == before
        assert not (legacy / "frameworks").exists()
        assert {a.source: a.target for a in plan.actions} == {
            "requirements": "frameworks/f/projects/p/requirements",
            "working": "frameworks/f/working",
        }
        assert plan.total_files == 5
        assert plan.reference_files == 2
        assert not plan.incremental

    def test_analyze_existing_structure(self, legacy, tool):
        analysis = tool.analyze_existing_structure()
        assert set(analysis.directories) == {"requirements", "working"}
        assert analysis.directories["requirements"].file_count == 3
        assert analysis.total_files == 5

    def test_verify_only_checks_present_directories(self, legacy, tool):
        analysis = tool.analyze_existing_structure()
        tool.migrate("p", "f")
        verification = tool.verify_migration("p", "f", analysis)
        assert verification.success
        assert set(verification.checks) == {"requirements", "working"}

    def test_status_transitions(self, legacy, tool):
        assert tool.get_migration_status() == MigrationStatus.PENDING
        tool.migrate("p", "f")
        assert tool.get_migration_status() == MigrationStatus.COMPLETED
        (legacy / ".migration-lock").write_text("{}")
        assert tool.get_migration_status() == MigrationStatus.IN_PROGRESS

    def test_status_unknown_for_empty_workspace(self, workspace, tool):
        assert tool.get_migration_status() == MigrationStatus.UNKNOWN

    def test_report(self, legacy, tool):
        tool.migrate("p", "f")
        report = tool.get_migration_report()
        assert report.status == MigrationStatus.COMPLETED
        assert report.frameworks_installed == ["f"]
        assert report.latest_backup == report.backups[0]

    def test_find_references(self, legacy, tool):
        found = tool.find_references()
        assert found == {
            "requirements/nfr.md": [".aiwg/working/"],
            "working/draft.md": [".aiwg/requirements/"],
        }

    def test_unchanged_files_not_rewritten(self, legacy, tool):
        untouched = legacy / "requirements" / "uc-2.md"
        mtime = untouched.stat().st_mtime_ns
        tool.update_internal_references("p", "f")
        assert untouched.stat().st_mtime_ns == mtime

    def test_compare_dir_structures(self, legacy, tool, tmp_path):
        write_files(tmp_path / "copy", {k: v for k, v in LEGACY_FILES.items() if k.startswith("requirements/")})
        comparison = tool.compare_dir_structures(legacy / "requirements", tmp_path / "copy" / "requirements")
        assert comparison.file_count_match
        assert comparison.size_match

    def test_derive_project_id(self, legacy, tool):
        (legacy.parent / "pyproject.toml").write_text('[project]\nname = "My_Cool App"\n')
        assert tool.derive_project_id() == "my-cool-app"

    def test_derive_project_id_default(self, legacy, tool):
        assert tool.derive_project_id() == "default-project"


class TestRetention:
    def test_clean_backups_by_age(self, legacy, clock):
        tool = MigrationTool(legacy, clock=clock)
        old = tool.create_backup()
        clock.now += timedelta(days=10)
        recent = tool.create_backup()

        assert tool.clean_backups(older_than_days=7) == 1
        assert tool.list_backups() == [recent]
        assert not old.exists()
