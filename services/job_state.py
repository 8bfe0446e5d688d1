"""
Import job state machine.

The only place where an ImportJob's status changes. Every other component
returns an outcome; the engine turns outcomes into transitions through
``transition``.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from backend.models.job import ImportJob, ImportJobStatus
from services.errors import InvalidTransition

logger = logging.getLogger(__name__)

S = ImportJobStatus

TRANSITIONS: Dict[ImportJobStatus, FrozenSet[ImportJobStatus]] = {
    S.PENDING: frozenset({S.VALIDATING}),
    S.VALIDATING: frozenset({S.VALIDATED, S.FAILED}),
    S.VALIDATED: frozenset({S.PROCESSING}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.COMPLETED: frozenset({S.ROLLED_BACK}),
    S.FAILED: frozenset({S.ROLLED_BACK}),
    S.CANCELLED: frozenset({S.ROLLED_BACK}),
    S.ROLLED_BACK: frozenset(),
}

# Statuses that stamp completed_at when entered
FINISHING_STATUSES = frozenset({S.COMPLETED, S.FAILED, S.CANCELLED})


def _label(status) -> str:
    return str(getattr(status, 'value', status))


def can_transition(current, target) -> bool:
    """Check whether ``current -> target`` is a legal edge."""
    try:
        return S(target) in TRANSITIONS[S(current)]
    except ValueError:
        return False


def transition(job: ImportJob, target, now: Optional[datetime] = None) -> ImportJob:
    """
    Move ``job`` to ``target``.

    Raises:
        InvalidTransition: if the edge is not part of the lifecycle. The job
            is left untouched in that case.
    """
    current = job.status
    if not can_transition(current, target):
        raise InvalidTransition(_label(current), _label(target))

    target = S(target)
    now = now or datetime.utcnow()

    job.status = target.value
    job.updated_at = now
    if target == S.PROCESSING:
        job.started_at = now
    elif target in FINISHING_STATUSES:
        job.completed_at = now
    elif target == S.ROLLED_BACK:
        job.rollback_at = now

    logger.info(f"Import job {job.id}: {current} -> {target.value}")
    return job
