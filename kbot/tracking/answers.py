"""
Tracked-Answer Store

Tracks answers the bot gave from the FAQ so owner corrections in the
thread can be turned into document edits.

Lifecycle:
    active -> pending_correction -> corrected | processed

Every owner reply joins ``responding_owner_ids``; only the first one
schedules processing.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..common.schemas.records import AnswerStatus, TrackedAnswer, utc_now
from .escalations import Delay, as_timedelta
from .repository import JsonRecordRepository, RecordRepository

logger = logging.getLogger("kbot.tracking.answers")

DEFAULT_CORRECTION_DELAY = timedelta(seconds=10)


class TrackedAnswerStore:
    """Durable collection of tracked answers with guarded transitions."""

    def __init__(
        self,
        repository: Optional[RecordRepository[TrackedAnswer]] = None,
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if repository is None:
            if path is None:
                raise ValueError("TrackedAnswerStore needs a repository or a path")
            repository = JsonRecordRepository(path, TrackedAnswer)
        self._repo = repository
        self._clock = clock

    def create(
        self,
        channel: str,
        thread_id: str,
        answer_message_id: str,
        domain_id: str,
        question: str,
        bot_answer: str,
        evidence: Iterable[str] = (),
        owners: Iterable[str] = (),
        document_source_ids: Iterable[str] = (),
    ) -> TrackedAnswer:
        """Start tracking an answer, or return the one already tracking this thread."""
        existing = self.active_for_thread(channel, thread_id)
        if existing:
            logger.debug("Thread %s/%s already tracked as %s", channel, thread_id, existing.id)
            return existing

        answer = TrackedAnswer(
            channel=channel,
            thread_id=thread_id,
            answer_message_id=answer_message_id,
            domain_id=domain_id,
            original_question=question,
            bot_answer=bot_answer,
            evidence=list(evidence or []),
            owner_user_ids=set(owners or []),
            document_source_ids=list(document_source_ids or []),
            created_at=self._clock(),
        )
        self._repo.insert(answer)
        logger.info("Tracking answer %s (domain=%s, channel=%s)", answer.id, domain_id, channel)
        return answer

    def record_response(
        self,
        answer_id: str,
        user_id: str,
        delay: Delay = DEFAULT_CORRECTION_DELAY,
    ) -> bool:
        """
        Record an owner reply on a tracked answer.

        The first reply moves the answer to pending_correction and sets
        ``process_after``; later replies only add to the responder set.

        Returns:
            False if the answer is unknown or already terminal
        """
        now = self._clock()
        wait = as_timedelta(delay)

        def mutate(a: TrackedAnswer) -> None:
            a.responding_owner_ids.add(user_id)
            if a.status == AnswerStatus.ACTIVE:
                a.status = AnswerStatus.PENDING_CORRECTION
                a.first_response_at = now
                a.process_after = now + wait

        updated = self._repo.compare_and_set(answer_id, lambda a: not a.is_terminal, mutate)
        if updated is None:
            logger.debug("Ignoring response on answer %s (unknown or terminal)", answer_id)
            return False

        logger.info(
            "Owner %s replied on answer %s (%d responder(s), process after %s)",
            user_id, answer_id, len(updated.responding_owner_ids),
            updated.process_after.isoformat() if updated.process_after else "-",
        )
        return True

    def ready_to_process(self) -> List[TrackedAnswer]:
        now = self._clock()
        return self._repo.find(
            lambda a: a.status == AnswerStatus.PENDING_CORRECTION
            and a.process_after is not None
            and a.process_after <= now
        )

    def mark_processed(self, answer_id: str, info: Optional[Dict[str, Any]] = None) -> bool:
        now = self._clock()

        def mutate(a: TrackedAnswer) -> None:
            a.status = AnswerStatus.PROCESSED
            a.processed_at = now
            a.outcome = dict(info or {})

        done = self._repo.compare_and_set(answer_id, lambda a: not a.is_terminal, mutate)
        if done:
            logger.info("Answer %s processed: %s", answer_id, (info or {}).get("reason", "-"))
        return done is not None

    def mark_corrected(self, answer_id: str, info: Optional[Dict[str, Any]] = None) -> bool:
        now = self._clock()

        def mutate(a: TrackedAnswer) -> None:
            a.status = AnswerStatus.CORRECTED
            a.corrected_at = now
            a.outcome = dict(info or {})

        done = self._repo.compare_and_set(answer_id, lambda a: not a.is_terminal, mutate)
        if done:
            logger.info("Answer %s marked corrected", answer_id)
        return done is not None

    def prune_older_than(self, days: int = 30) -> int:
        cutoff = self._clock() - timedelta(days=days)
        removed = self._repo.delete_where(lambda a: a.is_terminal and a.terminal_at < cutoff)
        if removed:
            logger.info("Pruned %d old tracked answers", len(removed))
        return len(removed)

    def expire_stale(self, days: int = 14) -> int:
        """Close non-terminal answers created more than ``days`` ago."""
        cutoff = self._clock() - timedelta(days=days)
        stale = [a for a in self.active() if a.created_at < cutoff]
        expired = sum(1 for a in stale if self.mark_processed(a.id, {"reason": "expired"}))
        if expired:
            logger.info("Expired %d stale tracked answers", expired)
        return expired

    def get(self, answer_id: str) -> Optional[TrackedAnswer]:
        return self._repo.get(answer_id)

    def active(self) -> List[TrackedAnswer]:
        return self._repo.find(lambda a: not a.is_terminal)

    def active_for_thread(self, channel: str, thread_id: str) -> Optional[TrackedAnswer]:
        matches = self._repo.find(
            lambda a: a.channel == channel and a.thread_id == thread_id and not a.is_terminal
        )
        return matches[0] if matches else None

    def get_stats(self) -> dict:
        stats = {status.value: 0 for status in AnswerStatus}
        for a in self._repo.values():
            stats[a.status.value] += 1
        stats["total"] = sum(stats.values())
        return stats
