"""
Escalation Store

Tracks questions the bot escalated to knowledge-area owners.

Lifecycle:
    awaiting_response -> ready_to_synthesize -> completed | skipped

The first owner reply starts the synthesis timer; the periodic job picks
the escalation up once ``synthesize_after`` has passed.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from ..common.schemas.records import Escalation, EscalationStatus, utc_now
from .repository import JsonRecordRepository, RecordRepository

logger = logging.getLogger("kbot.tracking.escalations")

DEFAULT_SYNTHESIS_DELAY = timedelta(minutes=30)

Delay = Union[timedelta, int, float]


def as_timedelta(delay: Delay) -> timedelta:
    """Accept a timedelta or a number of seconds"""
    if isinstance(delay, timedelta):
        return delay
    return timedelta(seconds=float(delay))


class EscalationStore:
    """Durable collection of escalations with guarded transitions."""

    def __init__(
        self,
        repository: Optional[RecordRepository[Escalation]] = None,
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the store.

        Args:
            repository: Backing repository (takes precedence over ``path``)
            path: JSON file for the default repository
            clock: Source of "now", injectable for tests
        """
        if repository is None:
            if path is None:
                raise ValueError("EscalationStore needs a repository or a path")
            repository = JsonRecordRepository(path, Escalation)
        self._repo = repository
        self._clock = clock

    def create(
        self,
        channel: str,
        thread_id: str,
        origin_message_id: str,
        domain_id: str,
        question: str,
        owners: Iterable[str],
    ) -> Escalation:
        """Open an escalation, or return the active one already tracking this thread."""
        existing = self.active_for_thread(channel, thread_id)
        if existing:
            logger.debug("Thread %s/%s already escalated as %s", channel, thread_id, existing.id)
            return existing

        escalation = Escalation(
            channel=channel,
            thread_id=thread_id,
            origin_message_id=origin_message_id,
            domain_id=domain_id,
            original_question=question,
            owner_user_ids=set(owners or []),
            escalated_at=self._clock(),
        )
        self._repo.insert(escalation)

        logger.info(
            "Tracked escalation %s (domain=%s, channel=%s, owners=%d)",
            escalation.id, domain_id, channel, len(escalation.owner_user_ids),
        )
        return escalation

    def record_response(self, escalation_id: str, delay: Delay = DEFAULT_SYNTHESIS_DELAY) -> bool:
        """
        Start the synthesis timer on the first owner reply.

        Returns:
            True if this call moved the escalation to ready_to_synthesize
        """
        now = self._clock()
        wait = as_timedelta(delay)

        def mutate(e: Escalation) -> None:
            e.status = EscalationStatus.READY_TO_SYNTHESIZE
            e.first_response_at = now
            e.synthesize_after = now + wait

        updated = self._repo.compare_and_set(
            escalation_id,
            lambda e: e.status == EscalationStatus.AWAITING_RESPONSE,
            mutate,
        )
        if updated is None:
            if self._repo.get(escalation_id) is None:
                logger.warning("Response for unknown escalation %s", escalation_id)
            else:
                logger.debug("Escalation %s not awaiting response, ignoring", escalation_id)
            return False

        logger.info("Owner responded to %s, synthesis after %s", escalation_id, updated.synthesize_after.isoformat())
        return True

    def ready_to_synthesize(self) -> List[Escalation]:
        now = self._clock()
        return self._repo.find(
            lambda e: e.status == EscalationStatus.READY_TO_SYNTHESIZE
            and e.synthesize_after is not None
            and e.synthesize_after <= now
        )

    def complete(self, escalation_id: str, document_url: Optional[str] = None) -> bool:
        now = self._clock()

        def mutate(e: Escalation) -> None:
            e.status = EscalationStatus.COMPLETED
            e.completed_at = now
            if document_url:
                e.document_url = document_url

        done = self._repo.compare_and_set(escalation_id, lambda e: not e.is_terminal, mutate)
        if done:
            logger.info("Escalation %s completed%s", escalation_id, f" ({document_url})" if document_url else "")
        return done is not None

    def skip(self, escalation_id: str, reason: str) -> bool:
        now = self._clock()

        def mutate(e: Escalation) -> None:
            e.status = EscalationStatus.SKIPPED
            e.skipped_at = now
            e.skip_reason = reason

        done = self._repo.compare_and_set(escalation_id, lambda e: not e.is_terminal, mutate)
        if done:
            logger.info("Escalation %s skipped: %s", escalation_id, reason)
        return done is not None

    def prune_older_than(self, days: int = 30) -> int:
        """Remove terminal escalations whose terminal timestamp is older than ``days``."""
        cutoff = self._clock() - timedelta(days=days)
        removed = self._repo.delete_where(lambda e: e.is_terminal and e.terminal_at < cutoff)
        if removed:
            logger.info("Pruned %d old escalations", len(removed))
        return len(removed)

    def expire_stale(self, days: int = 14) -> int:
        """Skip non-terminal escalations opened more than ``days`` ago."""
        cutoff = self._clock() - timedelta(days=days)
        stale = [e for e in self.active() if e.escalated_at < cutoff]
        expired = sum(1 for e in stale if self.skip(e.id, "expired"))
        if expired:
            logger.info("Expired %d stale escalations", expired)
        return expired

    def get(self, escalation_id: str) -> Optional[Escalation]:
        return self._repo.get(escalation_id)

    def active(self) -> List[Escalation]:
        return self._repo.find(lambda e: not e.is_terminal)

    def active_for_thread(self, channel: str, thread_id: str) -> Optional[Escalation]:
        matches = self._repo.find(
            lambda e: e.channel == channel and e.thread_id == thread_id and not e.is_terminal
        )
        return matches[0] if matches else None

    def get_stats(self) -> dict:
        stats = {status.value: 0 for status in EscalationStatus}
        for e in self._repo.values():
            stats[e.status.value] += 1
        stats["total"] = sum(stats.values())
        return stats
