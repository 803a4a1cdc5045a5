from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from chatkernel.logging import get_logger
from chatkernel.storage.errors import (
    ConstraintViolation,
    ConversationMissing,
    InvalidJobTransition,
)
from chatkernel.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Job,
    JobKind,
    JobState,
    Message,
    MessageRole,
    UsageRecord,
)


class MemoryStore:
    """In-process backing store used for tests and single-node deployments.

    Appends within one conversation are serialized by a per-conversation lock so
    sequence numbers are gap-free and strictly increasing. Map mutations and
    usage increments happen under a store-wide RLock. When ``snapshot_path`` is
    set, every mutation rewrites a JSON snapshot that is reloaded on start.
    """

    def __init__(self, snapshot_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.usage: Dict[str, UsageRecord] = {}
        self.jobs: Dict[str, Job] = {}
        self._data_lock = threading.RLock()
        self._conversation_locks: Dict[str, threading.Lock] = {}
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        if self.snapshot_path:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _conversation_lock(self, conversation_id: str) -> threading.Lock:
        with self._data_lock:
            lock = self._conversation_locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._conversation_locks[conversation_id] = lock
            return lock

    # conversations
    def create_conversation(
        self, user_id: str, title: Optional[str] = None
    ) -> Conversation:
        if not user_id:
            raise ConstraintViolation("conversation owner required", {"user_id": user_id})
        now = datetime.utcnow()
        conv = Conversation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            updated_at=now,
            title=title or DEFAULT_CONVERSATION_TITLE,
        )
        with self._data_lock:
            self.conversations[conv.id] = conv
            self.messages[conv.id] = []
            self._persist_state()
        return conv

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
        if not conv:
            return None
        if user_id and conv.user_id != user_id:
            return None
        return conv

    def list_conversations(
        self, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> List[Conversation]:
        with self._data_lock:
            convs = [c for c in self.conversations.values() if c.user_id == user_id]
        convs.sort(key=lambda c: c.updated_at, reverse=True)
        return convs[offset : offset + limit]

    def count_conversations(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.conversations.values() if c.user_id == user_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._conversation_lock(conversation_id):
            with self._data_lock:
                if conversation_id not in self.conversations:
                    return False
                del self.conversations[conversation_id]
                self.messages.pop(conversation_id, None)
                self._persist_state()
        with self._data_lock:
            self._conversation_locks.pop(conversation_id, None)
        return True

    # messages
    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        token_count: Optional[int] = None,
        model_name: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Message:
        msg, _ = self._append(
            conversation_id,
            role,
            content,
            token_count=token_count,
            model_name=model_name,
            idempotency_key=None,
            meta=meta,
        )
        return msg

    def append_message_once(
        self,
        conversation_id: str,
        idempotency_key: str,
        role: MessageRole,
        content: str,
        *,
        token_count: Optional[int] = None,
        model_name: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Tuple[Message, bool]:
        """Append unless a message with ``idempotency_key`` already exists.

        Returns the stored message and whether it was created by this call.
        """
        return self._append(
            conversation_id,
            role,
            content,
            token_count=token_count,
            model_name=model_name,
            idempotency_key=idempotency_key,
            meta=meta,
        )

    def _append(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        token_count: Optional[int],
        model_name: Optional[str],
        idempotency_key: Optional[str],
        meta: Optional[Dict],
    ) -> Tuple[Message, bool]:
        with self._conversation_lock(conversation_id):
            with self._data_lock:
                conv = self.conversations.get(conversation_id)
                if conv is None:
                    raise ConversationMissing(conversation_id)
                msgs = self.messages.setdefault(conversation_id, [])
                if idempotency_key:
                    for existing in msgs:
                        if existing.idempotency_key == idempotency_key:
                            return existing, False
                seq = msgs[-1].seq + 1 if msgs else 0
                now = datetime.utcnow()
                # created_at must never go backwards within a conversation
                if msgs and now < msgs[-1].created_at:
                    now = msgs[-1].created_at
                msg = Message(
                    id=str(uuid.uuid4()),
                    conversation_id=conversation_id,
                    role=MessageRole(role),
                    content=content,
                    seq=seq,
                    created_at=now,
                    token_count=token_count,
                    model_name=model_name,
                    idempotency_key=idempotency_key,
                    meta=meta,
                )
                msgs.append(msg)
                conv.updated_at = now
                self._persist_state()
                return msg, True

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._data_lock:
            for msgs in self.messages.values():
                for msg in msgs:
                    if msg.id == message_id:
                        return msg
        return None

    def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        up_to_seq: Optional[int] = None,
    ) -> List[Message]:
        with self._data_lock:
            msgs = list(self.messages.get(conversation_id, []))
        if up_to_seq is not None:
            msgs = [m for m in msgs if m.seq <= up_to_seq]
        if limit is None:
            return msgs
        return msgs[-limit:] if limit > 0 else []

    def count_messages(self, conversation_id: str) -> int:
        with self._data_lock:
            return len(self.messages.get(conversation_id, []))

    def count_user_messages(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                len(self.messages.get(c.id, []))
                for c in self.conversations.values()
                if c.user_id == user_id
            )

    # usage
    def increment_usage(self, user_id: str, tokens: int) -> int:
        if tokens < 0:
            raise ConstraintViolation("usage increments must be non-negative", {"tokens": tokens})
        with self._data_lock:
            record = self.usage.get(user_id)
            if record is None:
                record = UsageRecord(user_id=user_id)
                self.usage[user_id] = record
            record.total_tokens += tokens
            record.updated_at = datetime.utcnow()
            self._persist_state()
            return record.total_tokens

    def get_usage(self, user_id: str) -> Optional[UsageRecord]:
        with self._data_lock:
            return self.usage.get(user_id)

    # jobs
    def create_job(self, job: Job) -> Job:
        with self._data_lock:
            if job.id in self.jobs:
                raise ConstraintViolation("job already exists", {"job_id": job.id})
            self.jobs[job.id] = job
            self._persist_state()
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._data_lock:
            return self.jobs.get(job_id)

    def claim_next_job(self) -> Optional[Job]:
        """Atomically move the oldest queued job to ``active`` and return it."""
        with self._data_lock:
            queued = [j for j in self.jobs.values() if j.state == JobState.QUEUED]
            if not queued:
                return None
            job = min(queued, key=lambda j: j.created_at)
            job.state = JobState.ACTIVE
            job.updated_at = datetime.utcnow()
            self._persist_state()
            return job

    def reclaim_stalled_job(self, stalled_before: datetime) -> Optional[Job]:
        """Take over the oldest ``active`` job untouched since ``stalled_before``.

        The job's lease is renewed by bumping ``updated_at``; its state stays
        ``active``.
        """
        with self._data_lock:
            stalled = [
                j
                for j in self.jobs.values()
                if j.state == JobState.ACTIVE and j.updated_at < stalled_before
            ]
            if not stalled:
                return None
            job = min(stalled, key=lambda j: j.updated_at)
            job.updated_at = datetime.utcnow()
            self._persist_state()
            return job

    def update_job(
        self,
        job_id: str,
        *,
        state: Optional[JobState] = None,
        attempts: Optional[int] = None,
        progress: Optional[int] = None,
        failed_reason: Optional[str] = None,
    ) -> Optional[Job]:
        with self._data_lock:
            job = self.jobs.get(job_id)
            if not job:
                return None
            if state is not None and state != job.state:
                if not job.state.can_transition_to(state):
                    raise InvalidJobTransition(job_id, job.state.value, state.value)
                job.state = state
            if attempts is not None:
                job.attempts = attempts
            if progress is not None:
                job.progress = max(job.progress, min(100, progress))
            if failed_reason is not None:
                job.failed_reason = failed_reason
            job.updated_at = datetime.utcnow()
            self._persist_state()
            return job

    def set_job_result_if_absent(self, job_id: str, result: Dict) -> bool:
        """Record the job's result marker; False when one was already stored."""
        with self._data_lock:
            job = self.jobs.get(job_id)
            if not job or job.result is not None:
                return False
            job.result = result
            job.updated_at = datetime.utcnow()
            self._persist_state()
            return True

    # snapshot
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.snapshot_path:
            return
        state = {
            "conversations": [
                self._serialize_conversation(c) for c in self.conversations.values()
            ],
            "messages": [
                self._serialize_message(m)
                for msgs in self.messages.values()
                for m in msgs
            ],
            "usage": [
                {
                    "user_id": rec.user_id,
                    "total_tokens": rec.total_tokens,
                    "updated_at": self._serialize_datetime(rec.updated_at),
                }
                for rec in self.usage.values()
            ],
            "jobs": [self._serialize_job(j) for j in self.jobs.values()],
        }
        try:
            self.snapshot_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.snapshot_path.read_text())
        except FileNotFoundError:
            return False
        self.conversations = {
            c["id"]: self._deserialize_conversation(c)
            for c in data.get("conversations", [])
        }
        self.messages = {conv_id: [] for conv_id in self.conversations}
        for raw in data.get("messages", []):
            msg = self._deserialize_message(raw)
            self.messages.setdefault(msg.conversation_id, []).append(msg)
        for msgs in self.messages.values():
            msgs.sort(key=lambda m: m.seq)
        self.usage = {
            rec["user_id"]: UsageRecord(
                user_id=rec["user_id"],
                total_tokens=int(rec.get("total_tokens", 0)),
                updated_at=self._deserialize_datetime(rec.get("updated_at")),
            )
            for rec in data.get("usage", [])
        }
        self.jobs = {j["id"]: self._deserialize_job(j) for j in data.get("jobs", [])}
        self.logger.info(
            "memory_store_loaded",
            conversations=len(self.conversations),
            jobs=len(self.jobs),
        )
        return True

    def _serialize_conversation(self, conversation: Conversation) -> dict:
        return {
            "id": conversation.id,
            "user_id": conversation.user_id,
            "created_at": self._serialize_datetime(conversation.created_at),
            "updated_at": self._serialize_datetime(conversation.updated_at),
            "title": conversation.title,
            "meta": conversation.meta,
        }

    def _deserialize_conversation(self, data: dict) -> Conversation:
        return Conversation(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            title=data.get("title") or DEFAULT_CONVERSATION_TITLE,
            meta=data.get("meta"),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "role": message.role.value,
            "content": message.content,
            "seq": message.seq,
            "created_at": self._serialize_datetime(message.created_at),
            "token_count": message.token_count,
            "model_name": message.model_name,
            "idempotency_key": message.idempotency_key,
            "meta": message.meta,
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=MessageRole(data["role"]),
            content=data["content"],
            seq=data["seq"],
            created_at=self._deserialize_datetime(data["created_at"]),
            token_count=data.get("token_count"),
            model_name=data.get("model_name"),
            idempotency_key=data.get("idempotency_key"),
            meta=data.get("meta"),
        )

    def _serialize_job(self, job: Job) -> dict:
        return {
            "id": job.id,
            "user_id": job.user_id,
            "kind": job.kind.value,
            "payload": job.payload,
            "state": job.state.value,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "progress": job.progress,
            "result": job.result,
            "failed_reason": job.failed_reason,
            "created_at": self._serialize_datetime(job.created_at),
            "updated_at": self._serialize_datetime(job.updated_at),
        }

    def _deserialize_job(self, data: dict) -> Job:
        return Job(
            id=data["id"],
            user_id=data["user_id"],
            kind=JobKind(data["kind"]),
            payload=data.get("payload") or {},
            state=JobState(data.get("state", JobState.QUEUED.value)),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            progress=int(data.get("progress", 0)),
            result=data.get("result"),
            failed_reason=data.get("failed_reason"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )
