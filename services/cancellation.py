"""
Cooperative cancellation for running import jobs.

A registry hands the executor a token per job; the executor polls the
token between rows (or batches) and stops starting new work once it is
set. Nothing is interrupted mid-row.

LocalCancellationRegistry works inside one process (API + in-process
execution, CLI, tests). RedisCancellationRegistry lets the API signal a
Celery worker running in another process.
"""

import logging
import threading
from typing import Dict

logger = logging.getLogger(__name__)

DEFAULT_SIGNAL_TTL = 86400  # seconds
CANCEL_KEY_PREFIX = 'import_cancel'


class CancellationToken:
    """Read side of a cancellation signal."""

    def is_cancelled(self) -> bool:
        raise NotImplementedError


class _EventToken(CancellationToken):
    def __init__(self, event: threading.Event):
        self._event = event

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class _RedisToken(CancellationToken):
    def __init__(self, redis_client, key: str):
        self._redis = redis_client
        self._key = key

    def is_cancelled(self) -> bool:
        return bool(self._redis.exists(self._key))


class NeverCancelled(CancellationToken):
    def is_cancelled(self) -> bool:
        return False


class LocalCancellationRegistry:
    """threading.Event per job id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, threading.Event] = {}

    def _event(self, job_id: str) -> threading.Event:
        with self._lock:
            event = self._events.get(job_id)
            if event is None:
                event = threading.Event()
                self._events[job_id] = event
            return event

    def request(self, job_id: str) -> None:
        logger.info(f"Cancellation requested for job {job_id}")
        self._event(job_id).set()

    def token_for(self, job_id: str) -> CancellationToken:
        return _EventToken(self._event(job_id))

    def clear(self, job_id: str) -> None:
        with self._lock:
            self._events.pop(job_id, None)


class RedisCancellationRegistry:
    """Cancellation flag stored as ``import_cancel:{job_id}`` with a TTL."""

    def __init__(self, redis_client, ttl: int = DEFAULT_SIGNAL_TTL):
        self._redis = redis_client
        self._ttl = ttl

    @staticmethod
    def key_for(job_id: str) -> str:
        return f"{CANCEL_KEY_PREFIX}:{job_id}"

    def request(self, job_id: str) -> None:
        logger.info(f"Cancellation requested for job {job_id} (redis)")
        self._redis.setex(self.key_for(job_id), self._ttl, '1')

    def token_for(self, job_id: str) -> CancellationToken:
        return _RedisToken(self._redis, self.key_for(job_id))

    def clear(self, job_id: str) -> None:
        self._redis.delete(self.key_for(job_id))
