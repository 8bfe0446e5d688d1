"""
Rollback Manager - revert the catalog changes an import made.

Results are walked newest first: created products are deleted, updated
products get their pre-image written back, skipped and failed rows are
left alone. Each row is reverted independently, so one failure is
reported without stopping the rest.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from backend.models.job import RowStatus
from services.catalog_store import CatalogStore
from services.import_types import ImportRowResult

logger = logging.getLogger(__name__)


@dataclass
class RollbackReport:
    reverted: int = 0
    failures: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures

    def failure_message(self) -> str:
        rows = ', '.join(str(row) for row, _ in self.failures)
        return f"Rollback incomplete: rows {rows} could not be reverted"


class RollbackManager:

    def __init__(self, store: CatalogStore):
        self.store = store

    def rollback(self, results: Sequence[ImportRowResult],
                 pre_images: Mapping[int, Dict[str, Any]]) -> RollbackReport:
        report = RollbackReport()

        for result in reversed(list(results)):
            if result.status not in (RowStatus.CREATED.value, RowStatus.UPDATED.value):
                continue
            try:
                if not result.product_id:
                    raise ValueError("result has no product id")
                if result.status == RowStatus.CREATED.value:
                    self.store.delete_product(result.product_id)
                else:
                    snapshot = pre_images.get(result.row)
                    if snapshot is None:
                        raise ValueError("no pre-image recorded")
                    self.store.restore_product(result.product_id, snapshot)
                report.reverted += 1
            except Exception as exc:
                logger.warning(f"Could not revert row {result.row} ({result.status}): {exc}")
                report.failures.append((result.row, str(exc)))

        logger.info(f"Rollback reverted {report.reverted} rows, {len(report.failures)} failures")
        return report
