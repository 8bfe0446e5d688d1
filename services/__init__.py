"""
Service layer for the catalog import engine.

This package contains framework-agnostic business logic that can be used
by CLI, API, or Celery workers.
"""

__version__ = "1.0.0"
