"""Models package for the catalog import system."""
from backend.models.schema import Base, Product
from backend.models.job import ImportJob, ImportJobStatus, DuplicateAction, RowStatus

__all__ = ['Base', 'Product', 'ImportJob', 'ImportJobStatus', 'DuplicateAction', 'RowStatus']
