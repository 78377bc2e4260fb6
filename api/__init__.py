"""
FastAPI application for the tabular exchange system.

This package contains the REST API and WebSocket server for CSV/XLSX
imports, exports and background job tracking.
"""

__version__ = "1.0.0"
