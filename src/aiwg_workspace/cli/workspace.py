# src/aiwg_workspace/cli/workspace.py
"""
Workspace command-line interface.

Thin layer over the workspace core: parses arguments, builds components
from settings, prints results.

Usage:
    aiwg-workspace init
    aiwg-workspace list [--type framework]
    aiwg-workspace health [PLUGIN_ID] [--repair]
    aiwg-workspace migrate --project my-app [--framework sdlc-complete] [--dry-run]
    aiwg-workspace rollback
    aiwg-workspace backups [--clean-older-than DAYS]
    aiwg-workspace context FRAMEWORK_ID PROJECT_ID [--eager]
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from aiwg_workspace.config import AppSettings, load_settings
from aiwg_workspace.context import ContextCurator
from aiwg_workspace.errors import WorkspaceError
from aiwg_workspace.health import HealthChecker
from aiwg_workspace.logging_setup import setup_logging
from aiwg_workspace.migration import MigrationTool
from aiwg_workspace.registry import PluginRegistry

logger = logging.getLogger(__name__)


def cmd_init(settings: AppSettings, args) -> int:
    registry = PluginRegistry.from_settings(settings)
    document = registry.initialize()
    print(f"Registry ready at {registry.registry_path} ({len(document.plugins)} plugin(s))")
    return 0


def cmd_list(settings: AppSettings, args) -> int:
    registry = PluginRegistry.from_settings(settings)
    plugins = registry.get_by_type(args.type) if args.type else registry.list_plugins()
    if not plugins:
        print("No plugins installed")
        return 0
    for plugin in plugins:
        print(f"{plugin.id:<30} {plugin.type:<10} {plugin.version:<10} {plugin.health}")
    return 0


def cmd_health(settings: AppSettings, args) -> int:
    checker = HealthChecker.from_settings(settings, PluginRegistry.from_settings(settings))

    if args.plugin_id:
        if args.repair:
            outcome = checker.repair_plugin(args.plugin_id)
            for action in outcome.actions:
                print(f"  fixed: {action}")
            for failure in outcome.failures:
                print(f"  failed: {failure}")
        report = checker.get_health_report(args.plugin_id)
        print(f"{report.result.plugin_id}: {report.result.status}")
        for issue in report.result.issues:
            print(f"  [{issue.severity}] {issue.check}: {issue.message}")
        for advice in report.recommendations:
            print(f"  -> {advice}")
        return 0 if report.result.status != "error" else 2

    summary = checker.generate_summary()
    print(
        f"{summary.total} plugin(s): {summary.healthy} healthy, "
        f"{summary.warnings} warning, {summary.errors} error"
    )
    for plugin_id, result in summary.results.items():
        print(f"  {plugin_id:<30} {result.status}")
    return 0 if summary.errors == 0 else 2


def cmd_migrate(settings: AppSettings, args) -> int:
    tool = MigrationTool.from_settings(settings)
    if args.progress:
        tool.show_progress = True

    if args.dry_run:
        plan = tool.dry_run(args.project, args.framework)
        print(f"Dry run: {plan.framework_id}/{plan.project_id}")
        for action in plan.actions:
            print(f"  {action.source}/ -> {action.target}/ ({action.file_count} files)")
        print(f"  {plan.reference_files} file(s) with references to update")
        print(f"  Estimated time: {plan.estimated_time}")
        return 0

    result = tool.migrate(args.project, args.framework, skip_backup=args.skip_backup)
    print(
        f"Migrated {result.migrated_files} file(s) to frameworks/{result.framework_id} "
        f"in {result.duration_seconds:.1f}s"
    )
    if result.backup_path:
        print(f"Backup: {result.backup_path}")
    return 0


def cmd_rollback(settings: AppSettings, args) -> int:
    tool = MigrationTool.from_settings(settings)
    restored = tool.rollback(Path(args.backup) if args.backup else None)
    print(f"Restored {restored}")
    return 0


def cmd_backups(settings: AppSettings, args) -> int:
    tool = MigrationTool.from_settings(settings)
    if args.clean_older_than is not None:
        removed = tool.clean_backups(args.clean_older_than)
        print(f"Removed {removed} backup(s)")
        return 0
    for backup in tool.list_backups():
        print(backup)
    return 0


def cmd_context(settings: AppSettings, args) -> int:
    curator = ContextCurator.from_settings(settings, PluginRegistry.from_settings(settings))
    context = curator.load_context(args.framework_id, args.project_id, lazy=not args.eager)
    for path in context.context_paths:
        print(f"  include: {path}")
    for path in context.excluded_paths:
        print(f"  exclude: {path}")
    if context.files is not None:
        print(f"{context.file_count} file(s), {context.total_size} bytes")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aiwg-workspace",
        description="Manage the plugin workspace",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Workspace root (default: from config, .aiwg)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create the plugin registry")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("list", help="List installed plugins")
    p.add_argument("--type", choices=["framework", "add-on", "extension"], default=None)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("health", help="Check plugin health")
    p.add_argument("plugin_id", nargs="?", default=None)
    p.add_argument("--repair", action="store_true", help="Apply safe repairs first")
    p.set_defaults(func=cmd_health)

    p = sub.add_parser("migrate", help="Migrate a legacy workspace layout")
    p.add_argument("--project", default=None, help="Project id (default: derived)")
    p.add_argument("--framework", default=None, help="Framework id (default: from config)")
    p.add_argument("--dry-run", action="store_true", help="Show the plan without changing anything")
    p.add_argument("--skip-backup", action="store_true", help="Do not back up first (no rollback!)")
    p.add_argument("--progress", action="store_true", help="Show a progress bar")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("rollback", help="Restore the workspace from a backup")
    p.add_argument("--backup", default=None, help="Backup directory (default: newest)")
    p.set_defaults(func=cmd_rollback)

    p = sub.add_parser("backups", help="List or clean migration backups")
    p.add_argument("--clean-older-than", type=float, default=None, metavar="DAYS")
    p.set_defaults(func=cmd_backups)

    p = sub.add_parser("context", help="Show a framework's context")
    p.add_argument("framework_id")
    p.add_argument("project_id")
    p.add_argument("--eager", action="store_true", help="Walk and list files")
    p.set_defaults(func=cmd_context)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for aiwg-workspace."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings()
    if args.root is not None:
        settings.workspace.root = args.root
    setup_logging(settings, verbose=args.verbose)

    try:
        return args.func(settings, args)
    except WorkspaceError as e:
        logger.error(f"{e.kind}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
