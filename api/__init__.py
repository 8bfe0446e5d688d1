"""
FastAPI application for bulk product imports.

This package contains the REST API and WebSocket server for validating
uploads, running import jobs in the background and rolling them back.
"""

__version__ = "1.0.0"
