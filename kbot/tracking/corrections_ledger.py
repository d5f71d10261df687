"""
Applied-Correction Ledger

Records which corrections have been written to a document. An approver
claims the correction before writing; a second approver finds the claim
and is told the update is already done.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from ..common.schemas.records import AppliedCorrection, CorrectionState, utc_now
from .repository import JsonRecordRepository, RecordRepository

logger = logging.getLogger("kbot.tracking.corrections_ledger")


class CorrectionLedger:
    """Durable at-most-once guard for correction writes."""

    def __init__(
        self,
        repository: Optional[RecordRepository[AppliedCorrection]] = None,
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if repository is None:
            if path is None:
                raise ValueError("CorrectionLedger needs a repository or a path")
            repository = JsonRecordRepository(path, AppliedCorrection, key_field="correction_id")
        self._repo = repository
        self._clock = clock

        # The write may have landed before the process died, so the claim stays
        for claim in self.unfinished():
            logger.warning(
                "Correction %s was claimed by %s but never confirmed; check the document by hand",
                claim.correction_id, claim.claimed_by,
            )

    def is_applied(self, correction_id: str) -> bool:
        """True once a correction is claimed or written."""
        return self._repo.get(correction_id) is not None

    def claim(self, correction_id: str, user_id: str) -> bool:
        """
        Claim the right to write a correction.

        Returns:
            True for exactly one caller per correction id
        """
        claimed = self._repo.insert_if_absent(
            AppliedCorrection(
                correction_id=correction_id,
                state=CorrectionState.APPLYING,
                claimed_by=user_id,
                claimed_at=self._clock(),
            )
        )
        if claimed:
            logger.info("Correction %s claimed by %s", correction_id, user_id)
        return claimed

    def mark_applied(self, correction_id: str, url: Optional[str] = None) -> bool:
        now = self._clock()

        def mutate(c: AppliedCorrection) -> None:
            c.state = CorrectionState.APPLIED
            c.applied_at = now
            c.url = url

        done = self._repo.compare_and_set(
            correction_id, lambda c: c.state == CorrectionState.APPLYING, mutate
        )
        return done is not None

    def release(self, correction_id: str) -> bool:
        """Drop an unfinished claim so the correction can be retried."""
        current = self._repo.get(correction_id)
        if current is None or current.state != CorrectionState.APPLYING:
            return False
        self._repo.delete(correction_id)
        logger.info("Correction %s claim released", correction_id)
        return True

    def get(self, correction_id: str) -> Optional[AppliedCorrection]:
        return self._repo.get(correction_id)

    def unfinished(self) -> List[AppliedCorrection]:
        """Claims whose write was never confirmed."""
        return self._repo.find(lambda c: c.state == CorrectionState.APPLYING)
