"""
AIWG Workspace: plugin registry and workspace management.

Components:
- PluginRegistry: file-persisted, lock-guarded plugin metadata store
- PathResolver: path templates and path safety validation
- MigrationTool: legacy layout migration with backup and rollback
- ContextCurator: isolated per-framework context loading
- HealthChecker: plugin integrity auditing and safe repair
"""

__version__ = "1.0.0"
