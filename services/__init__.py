"""
Service layer for the tabular exchange system.

This package contains framework-agnostic import/export logic that can be
used by the CLI, the API, or background workers.
"""

__version__ = "1.0.0"
