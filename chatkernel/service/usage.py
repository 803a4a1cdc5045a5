from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from chatkernel.logging import get_logger
from chatkernel.service.conversations import Store
from chatkernel.service.errors import ValidationError

logger = get_logger(__name__)


class UsageAccountant:
    """Per-user lifetime token counter.

    Increments are delegated to a single atomic store operation; the counter
    is never read and rewritten here.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    def increment(self, user_id: str, tokens: int) -> int:
        if tokens < 0:
            raise ValidationError("token increments must be non-negative")
        total = self.store.increment_usage(user_id, tokens)
        logger.info("usage_incremented", user_id=user_id, tokens=tokens, total_tokens=total)
        return total

    def total(self, user_id: str) -> int:
        record = self.store.get_usage(user_id)
        return record.total_tokens if record else 0

    def stats(self, user_id: str) -> Dict[str, Any]:
        record = self.store.get_usage(user_id)
        return {
            "total_tokens": record.total_tokens if record else 0,
            "conversations_count": self.store.count_conversations(user_id),
            "messages_count": self.store.count_user_messages(user_id),
            "last_used": (record.updated_at if record and record.updated_at else datetime.utcnow()),
        }
