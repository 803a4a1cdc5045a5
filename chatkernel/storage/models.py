from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class MessageRole(str, Enum):
    """Closed set of conversation roles."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class JobKind(str, Enum):
    COMPLETION = "completion"
    EMBEDDING = "embedding"


class JobState(str, Enum):
    """Forward-only job lifecycle: queued -> active -> completed | failed."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)

    def can_transition_to(self, target: "JobState") -> bool:
        if target == self:
            return not self.is_terminal
        return target in _JOB_TRANSITIONS.get(self, frozenset())


_JOB_TRANSITIONS = {
    JobState.QUEUED: frozenset({JobState.ACTIVE, JobState.FAILED}),
    JobState.ACTIVE: frozenset({JobState.COMPLETED, JobState.FAILED}),
}


DEFAULT_CONVERSATION_TITLE = "New Conversation"


@dataclass
class Conversation:
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    title: str = DEFAULT_CONVERSATION_TITLE
    meta: Dict | None = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    seq: int
    created_at: datetime
    token_count: Optional[int] = None
    model_name: Optional[str] = None
    idempotency_key: Optional[str] = None
    meta: Dict | None = None


@dataclass
class Job:
    id: str
    user_id: str
    kind: JobKind
    payload: Dict
    state: JobState = JobState.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    progress: int = 0
    result: Optional[Dict] = None
    failed_reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        kind: JobKind,
        payload: Dict,
        *,
        max_attempts: int = 3,
    ) -> "Job":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind,
            payload=dict(payload),
            max_attempts=max_attempts,
        )


@dataclass
class UsageRecord:
    user_id: str
    total_tokens: int = 0
    updated_at: Optional[datetime] = None
