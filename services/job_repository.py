"""
Job Repository - persistence for ImportJob records.

Every write is a short transaction on a fresh session. ``update`` locks
the row (``SELECT ... FOR UPDATE`` on PostgreSQL) so the engine, the
worker and the API never interleave writes to the same job.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from backend.models.job import ImportJob
from services.errors import JobNotFoundError

logger = logging.getLogger(__name__)


class JobRepository:
    """Load and store ImportJob rows."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def create(self, **fields) -> ImportJob:
        with self._session_factory() as session:
            job = ImportJob(**fields)
            session.add(job)
            session.commit()
            session.refresh(job)
            session.expunge(job)
        logger.info(f"Created import job {job.id} for business {job.business_id}")
        return job

    def get(self, job_id: str, business_id: Optional[str] = None) -> ImportJob:
        """
        Raises:
            JobNotFoundError: no such job, or it belongs to another business.
        """
        with self._session_factory() as session:
            query = session.query(ImportJob).filter(ImportJob.id == job_id)
            if business_id is not None:
                query = query.filter(ImportJob.business_id == business_id)
            job = query.first()
            if job is None:
                raise JobNotFoundError(job_id)
            session.expunge(job)
            return job

    def update(self, job_id: str, fn: Callable[[ImportJob], None]) -> ImportJob:
        """
        Apply ``fn`` to the locked job row and commit.

        ``fn`` may raise; nothing is written in that case.
        """
        with self._session_factory() as session:
            job = (
                session.query(ImportJob)
                .filter(ImportJob.id == job_id)
                .with_for_update()
                .first()
            )
            if job is None:
                raise JobNotFoundError(job_id)
            fn(job)
            job.updated_at = datetime.utcnow()
            session.commit()
            session.refresh(job)
            session.expunge(job)
            return job

    def list_for_business(self, business_id: str, page: int = 1, limit: int = 20) -> Tuple[List[ImportJob], int]:
        """Newest first."""
        page = max(1, page)
        limit = max(1, limit)
        with self._session_factory() as session:
            query = session.query(ImportJob).filter(ImportJob.business_id == business_id)
            total = query.count()
            jobs = (
                query.order_by(ImportJob.created_at.desc(), ImportJob.id)
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            for job in jobs:
                session.expunge(job)
            return jobs, total

    def delete_finished_before(self, cutoff: datetime, statuses) -> int:
        """Delete terminal jobs that finished before ``cutoff``."""
        with self._session_factory() as session:
            deleted = (
                session.query(ImportJob)
                .filter(
                    ImportJob.completed_at < cutoff,
                    ImportJob.status.in_([getattr(s, 'value', s) for s in statuses]),
                )
                .delete(synchronize_session=False)
            )
            session.commit()
        logger.info(f"Deleted {deleted} import jobs finished before {cutoff.isoformat()}")
        return deleted
