from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS conversation (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        meta JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS conversation_user_idx ON conversation (user_id, updated_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS message (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversation(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
        content TEXT NOT NULL,
        seq INTEGER NOT NULL,
        created_at TIMESTAMP NOT NULL,
        token_count INTEGER CHECK (token_count IS NULL OR token_count >= 0),
        model_name TEXT,
        idempotency_key TEXT,
        meta JSONB,
        UNIQUE (conversation_id, seq)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS message_idempotency_idx
        ON message (conversation_id, idempotency_key)
        WHERE idempotency_key IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS user_usage (
        user_id TEXT PRIMARY KEY,
        total_tokens BIGINT NOT NULL DEFAULT 0 CHECK (total_tokens >= 0),
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS completion_job (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload JSONB NOT NULL,
        state TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        result JSONB,
        failed_reason TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS completion_job_queue_idx ON completion_job (state, created_at)",
]


def _load_json(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


class PostgresStore:
    """Postgres-backed store for conversations, messages, usage and jobs."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.transaction():
                for statement in _SCHEMA:
                    conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _conversation_from_row(row: dict) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            title=row.get("title") or DEFAULT_CONVERSATION_TITLE,
            meta=_load_json(row.get("meta")),
        )

    @staticmethod
    def _message_from_row(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=MessageRole(row["role"]),
            content=row["content"],
            seq=int(row["seq"]),
            created_at=row["created_at"],
            token_count=row.get("token_count"),
            model_name=row.get("model_name"),
            idempotency_key=row.get("idempotency_key"),
            meta=_load_json(row.get("meta")),
        )

    @staticmethod
    def _job_from_row(row: dict) -> Job:
        return Job(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=JobKind(row["kind"]),
            payload=_load_json(row.get("payload")) or {},
            state=JobState(row["state"]),
            attempts=int(row.get("attempts") or 0),
            max_attempts=int(row.get("max_attempts") or 3),
            progress=int(row.get("progress") or 0),
            result=_load_json(row.get("result")),
            failed_reason=row.get("failed_reason"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # conversations
    def create_conversation(
        self, user_id: str, title: Optional[str] = None
    ) -> Conversation:
        if not user_id:
            raise ConstraintViolation("conversation owner required", {"user_id": user_id})
        conv_id = str(uuid.uuid4())
        now = datetime.utcnow()
        resolved_title = title or DEFAULT_CONVERSATION_TITLE
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO conversation (id, user_id, title, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                (conv_id, user_id, resolved_title, now, now),
            )
        return Conversation(
            id=conv_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
            title=resolved_title,
        )

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._connect() as conn:
            params: tuple[Any, ...] = (conversation_id,)
            query = "SELECT * FROM conversation WHERE id = %s"
            if user_id:
                query += " AND user_id = %s"
                params = (conversation_id, user_id)
            row = conn.execute(query, params).fetchone()
        return self._conversation_from_row(row) if row else None

    def list_conversations(
        self, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM conversation WHERE user_id = %s ORDER BY updated_at DESC OFFSET %s LIMIT %s",
                (user_id, offset, limit),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def count_conversations(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM conversation WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["c"]) if row else 0

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM conversation WHERE id = %s", (conversation_id,))
            return cur.rowcount > 0

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
        role = MessageRole(role)
        with self._connect() as conn:
            with conn.transaction():
                # Row lock serializes concurrent writers of the same conversation.
                locked = conn.execute(
                    "SELECT id FROM conversation WHERE id = %s FOR UPDATE",
                    (conversation_id,),
                ).fetchone()
                if not locked:
                    raise ConversationMissing(conversation_id)
                if idempotency_key:
                    existing = conn.execute(
                        "SELECT * FROM message WHERE conversation_id = %s AND idempotency_key = %s",
                        (conversation_id, idempotency_key),
                    ).fetchone()
                    if existing:
                        return self._message_from_row(existing), False
                last = conn.execute(
                    "SELECT seq, created_at FROM message WHERE conversation_id = %s ORDER BY seq DESC LIMIT 1",
                    (conversation_id,),
                ).fetchone()
                seq = int(last["seq"]) + 1 if last else 0
                now = datetime.utcnow()
                if last and now < last["created_at"]:
                    now = last["created_at"]
                msg_id = str(uuid.uuid4())
                try:
                    conn.execute(
                        "INSERT INTO message (id, conversation_id, role, content, seq, created_at, token_count, model_name, idempotency_key, meta) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                        (
                            msg_id,
                            conversation_id,
                            role.value,
                            content,
                            seq,
                            now,
                            token_count,
                            model_name,
                            idempotency_key,
                            json.dumps(meta) if meta else None,
                        ),
                    )
                except errors.ForeignKeyViolation:
                    raise ConversationMissing(conversation_id)
                conn.execute(
                    "UPDATE conversation SET updated_at = %s WHERE id = %s",
                    (now, conversation_id),
                )
        return (
            Message(
                id=msg_id,
                conversation_id=conversation_id,
                role=role,
                content=content,
                seq=seq,
                created_at=now,
                token_count=token_count,
                model_name=model_name,
                idempotency_key=idempotency_key,
                meta=meta,
            ),
            True,
        )

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM message WHERE id = %s", (message_id,)
            ).fetchone()
        return self._message_from_row(row) if row else None

    def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        up_to_seq: Optional[int] = None,
    ) -> List[Message]:
        params: list[Any] = [conversation_id]
        query = "SELECT * FROM message WHERE conversation_id = %s"
        if up_to_seq is not None:
            query += " AND seq <= %s"
            params.append(up_to_seq)
        query += " ORDER BY seq DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(max(0, limit))
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._message_from_row(row) for row in reversed(rows)]

    def count_messages(self, conversation_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM message WHERE conversation_id = %s",
                (conversation_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def count_user_messages(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM message m JOIN conversation c ON c.id = m.conversation_id WHERE c.user_id = %s",
                (user_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    # usage
    def increment_usage(self, user_id: str, tokens: int) -> int:
        if tokens < 0:
            raise ConstraintViolation("usage increments must be non-negative", {"tokens": tokens})
        now = datetime.utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_usage (user_id, total_tokens, updated_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                    SET total_tokens = user_usage.total_tokens + EXCLUDED.total_tokens,
                        updated_at = EXCLUDED.updated_at
                RETURNING total_tokens
                """,
                (user_id, tokens, now),
            ).fetchone()
        return int(row["total_tokens"])

    def get_usage(self, user_id: str) -> Optional[UsageRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_usage WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return UsageRecord(
            user_id=str(row["user_id"]),
            total_tokens=int(row["total_tokens"]),
            updated_at=row.get("updated_at"),
        )

    # jobs
    def create_job(self, job: Job) -> Job:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO completion_job (id, user_id, kind, payload, state, attempts, max_attempts, progress, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        job.id,
                        job.user_id,
                        job.kind.value,
                        json.dumps(job.payload),
                        job.state.value,
                        job.attempts,
                        job.max_attempts,
                        job.progress,
                        job.created_at,
                        job.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("job already exists", {"job_id": job.id})
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM completion_job WHERE id = %s", (job_id,)
            ).fetchone()
        return self._job_from_row(row) if row else None

    def claim_next_job(self) -> Optional[Job]:
        """Atomically move the oldest queued job to ``active`` and return it."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE completion_job SET state = %s, updated_at = %s
                    WHERE id = (
                        SELECT id FROM completion_job
                        WHERE state = %s
                        ORDER BY created_at
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING *
                    """,
                    (JobState.ACTIVE.value, datetime.utcnow(), JobState.QUEUED.value),
                ).fetchone()
        return self._job_from_row(row) if row else None

    def reclaim_stalled_job(self, stalled_before: datetime) -> Optional[Job]:
        """Take over the oldest ``active`` job untouched since ``stalled_before``."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE completion_job SET updated_at = %s
                    WHERE id = (
                        SELECT id FROM completion_job
                        WHERE state = %s AND updated_at < %s
                        ORDER BY updated_at
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING *
                    """,
                    (datetime.utcnow(), JobState.ACTIVE.value, stalled_before),
                ).fetchone()
        return self._job_from_row(row) if row else None

    def update_job(
        self,
        job_id: str,
        *,
        state: Optional[JobState] = None,
        attempts: Optional[int] = None,
        progress: Optional[int] = None,
        failed_reason: Optional[str] = None,
    ) -> Optional[Job]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM completion_job WHERE id = %s FOR UPDATE", (job_id,)
                ).fetchone()
                if not row:
                    return None
                job = self._job_from_row(row)
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
                conn.execute(
                    """
                    UPDATE completion_job
                    SET state = %s, attempts = %s, progress = %s, failed_reason = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (
                        job.state.value,
                        job.attempts,
                        job.progress,
                        job.failed_reason,
                        job.updated_at,
                        job_id,
                    ),
                )
        return job

    def set_job_result_if_absent(self, job_id: str, result: Dict) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE completion_job SET result = %s, updated_at = %s WHERE id = %s AND result IS NULL",
                (json.dumps(result), datetime.utcnow(), job_id),
            )
            return cur.rowcount > 0
