"""
Pending-Action Store

One in-flight conversation per user (adding a knowledge area, approving a
correction). Entries expire lazily: a read past ``expires_at`` discards the
entry and reports it absent.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..common.schemas.records import PendingAction, PendingIntent, utc_now
from .escalations import Delay, as_timedelta
from .repository import JsonRecordRepository, RecordRepository

logger = logging.getLogger("kbot.tracking.pending_actions")

DEFAULT_TTL = timedelta(minutes=10)


class PendingActionStore:
    """Durable per-user conversation state with a sliding TTL."""

    def __init__(
        self,
        repository: Optional[RecordRepository[PendingAction]] = None,
        path: Optional[Path] = None,
        ttl: Delay = DEFAULT_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        if repository is None:
            if path is None:
                raise ValueError("PendingActionStore needs a repository or a path")
            repository = JsonRecordRepository(path, PendingAction, key_field="user_id")
        self._repo = repository
        self._ttl = as_timedelta(ttl)
        self._clock = clock

        dropped = self._repo.delete_where(lambda p: p.is_expired(self._clock()))
        if dropped:
            logger.info("Dropped %d expired pending actions on load", len(dropped))

    def get(self, user_id: str) -> Optional[PendingAction]:
        action = self._repo.get(user_id)
        if action is None:
            return None
        if action.is_expired(self._clock()):
            self._repo.delete(user_id)
            logger.debug("Pending %s for %s expired", action.intent.value, user_id)
            return None
        return action

    def put(self, user_id: str, intent: PendingIntent, payload: Dict[str, Any]) -> PendingAction:
        """Store (or overwrite) the user's pending action with a fresh expiry."""
        now = self._clock()
        action = PendingAction(
            user_id=user_id,
            intent=intent,
            payload=dict(payload),
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._repo.insert(action)
        logger.debug("Pending %s stored for %s", intent.value, user_id)
        return action

    def clear(self, user_id: str) -> bool:
        return self._repo.delete(user_id) is not None

    def clear_for_correction(self, correction_id: str) -> List[str]:
        """Remove every approval request for ``correction_id``; return the affected users."""
        removed = self._repo.delete_where(lambda p: p.correction_id == correction_id)
        users = [p.user_id for p in removed]
        if users:
            logger.info("Cleared %d pending approval(s) for %s", len(users), correction_id)
        return users

    def count(self) -> int:
        return self._repo.count()
