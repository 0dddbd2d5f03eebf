"""
Path security for the workspace.
"""

from aiwg_workspace.security.paths import PathResolver, TIERS, FORBIDDEN_LOCATIONS

__all__ = [
    "PathResolver",
    "TIERS",
    "FORBIDDEN_LOCATIONS",
]
