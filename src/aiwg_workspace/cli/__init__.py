"""
Command-line interface for the workspace.
"""
