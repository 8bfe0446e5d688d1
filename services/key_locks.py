"""
Per-key locks that serialize catalog writes touching the same SKU,
barcode or product name.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Tuple

from services.import_types import ImportRow
from services.row_validator import cell_text

LockKey = Tuple[str, str]


def row_lock_keys(row: ImportRow) -> List[LockKey]:
    """The catalog keys a row may read or write."""
    keys: List[LockKey] = []
    sku = cell_text(row.get('sku'))
    if sku:
        keys.append(('sku', sku))
    barcode = cell_text(row.get('barcode'))
    if barcode:
        keys.append(('barcode', barcode))
    name = cell_text(row.get('name'))
    if name:
        keys.append(('name', name.lower()))
    return keys


class KeyedLocks:
    """
    A lazily populated table of locks, one per key.

    ``hold`` acquires keys in sorted order so two rows sharing several keys
    cannot deadlock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[LockKey, threading.Lock] = {}

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[LockKey]) -> Iterator[None]:
        acquired: List[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
