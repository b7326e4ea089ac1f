"""Compensation ledger used to roll back a failed provisioning run."""
import logging
from typing import Iterable, List

from .models import Compensation

logger = logging.getLogger(__name__)


class CompensationLedger:
    """
    Ordered record of reversal actions for resources created in this run.

    Compensations are only ever registered for resources the run created
    itself; reused resources are never rolled back.
    """

    def __init__(self):
        self._entries: List[Compensation] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[Compensation]:
        return list(self._entries)

    def append(self, compensation: Compensation) -> None:
        self._entries.append(compensation)

    def extend(self, compensations: Iterable[Compensation]) -> None:
        for compensation in compensations:
            self.append(compensation)

    async def replay(self) -> List[Compensation]:
        """
        Run every compensation in reverse registration order.

        A compensation that raises is logged and skipped; the rest still run.

        Returns:
            The compensations that failed. The ledger is empty afterwards.
        """
        if not self._entries:
            return []

        logger.warning(f"Rolling back {len(self._entries)} change(s)...")
        failed: List[Compensation] = []
        for compensation in reversed(self._entries):
            try:
                logger.info(f"  Rolling back [{compensation.provider}] {compensation.description}")
                await compensation.execute()
            except Exception as e:
                logger.error(f"  Rollback failed [{compensation.provider}] {compensation.description}: {e}")
                failed.append(compensation)

        self._entries.clear()
        if failed:
            logger.warning("Some resources could not be rolled back and need manual cleanup:")
            for compensation in failed:
                logger.warning(f"  - [{compensation.provider}] {compensation.description}")
        else:
            logger.info("Rollback complete")
        return failed

    def discard(self) -> None:
        """Forget every compensation after a successful run."""
        self._entries.clear()
