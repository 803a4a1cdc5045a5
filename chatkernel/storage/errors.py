from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConversationMissing(ConstraintViolation):
    """A message was written against a conversation that no longer exists."""

    def __init__(self, conversation_id: str):
        super().__init__(
            "conversation not found", {"conversation_id": conversation_id}
        )
        self.conversation_id = conversation_id


class InvalidJobTransition(ConstraintViolation):
    """Jobs only move forward: queued -> active -> completed | failed."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            "invalid job state transition",
            {"job_id": job_id, "current": current, "requested": requested},
        )


__all__ = ["ConstraintViolation", "ConversationMissing", "InvalidJobTransition"]
