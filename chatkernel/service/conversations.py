from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple, Union

from chatkernel.logging import get_logger
from chatkernel.service.errors import NotFoundError, ValidationError
from chatkernel.storage.errors import ConversationMissing
from chatkernel.storage.memory import MemoryStore
from chatkernel.storage.models import Conversation, Message, MessageRole
from chatkernel.storage.postgres import PostgresStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]

MAX_PAGE_SIZE = 100


def parse_role(role: Union[str, MessageRole]) -> MessageRole:
    """Coerce a wire role into the closed role set."""
    if isinstance(role, MessageRole):
        return role
    try:
        return MessageRole(str(role).strip().lower())
    except ValueError:
        raise ValidationError(
            f"unknown message role: {role!r}",
            detail={"allowed": [r.value for r in MessageRole]},
        )


class ConversationService:
    """Owned conversations and their ordered messages.

    A conversation that exists but belongs to another user is reported
    exactly like one that does not exist.
    """

    def __init__(self, store: Store, *, history_limit: int = 10) -> None:
        self.store = store
        self.history_limit = history_limit

    def _not_found(self, conversation_id: str) -> NotFoundError:
        return NotFoundError(
            "conversation not found", detail={"conversation_id": conversation_id}
        )

    def create(self, owner_id: str, title: Optional[str] = None) -> Conversation:
        if not owner_id:
            raise ValidationError("owner is required")
        if title is not None and not title.strip():
            title = None
        conversation = self.store.create_conversation(owner_id, title=title)
        logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            user_id=owner_id,
        )
        return conversation

    def require_owned(self, conversation_id: str, requester_id: str) -> Conversation:
        if not conversation_id:
            raise self._not_found(conversation_id)
        conversation = self.store.get_conversation(conversation_id, user_id=requester_id)
        if conversation is None:
            raise self._not_found(conversation_id)
        return conversation

    def append_message(
        self,
        conversation_id: str,
        role: Union[str, MessageRole],
        content: str,
        *,
        token_count: Optional[int] = None,
        model_name: Optional[str] = None,
        meta: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Message, bool]:
        """Append after the current latest message.

        With ``idempotency_key`` an earlier message carrying the same key is
        returned instead, and the second element of the result is False.
        """
        resolved_role = parse_role(role)
        if token_count is not None and token_count < 0:
            raise ValidationError("token_count must be non-negative")
        try:
            if idempotency_key:
                message, created = self.store.append_message_once(
                    conversation_id,
                    idempotency_key,
                    resolved_role,
                    content,
                    token_count=token_count,
                    model_name=model_name,
                    meta=meta,
                )
            else:
                message = self.store.append_message(
                    conversation_id,
                    resolved_role,
                    content,
                    token_count=token_count,
                    model_name=model_name,
                    meta=meta,
                )
                created = True
        except ConversationMissing:
            raise self._not_found(conversation_id)
        if created:
            logger.info(
                "message_appended",
                conversation_id=conversation_id,
                message_id=message.id,
                role=resolved_role.value,
                seq=message.seq,
            )
        return message, created

    def history(
        self,
        conversation_id: str,
        requester_id: str,
        limit: Optional[int] = None,
        *,
        up_to_seq: Optional[int] = None,
    ) -> List[dict]:
        """Most recent ``limit`` messages, oldest first, as provider turns."""
        self.require_owned(conversation_id, requester_id)
        window = self.history_limit if limit is None else limit
        messages = self.store.list_messages(
            conversation_id, limit=max(0, window), up_to_seq=up_to_seq
        )
        return [{"role": m.role.value, "content": m.content} for m in messages]

    def get(
        self, conversation_id: str, requester_id: str
    ) -> Tuple[Conversation, List[Message]]:
        conversation = self.require_owned(conversation_id, requester_id)
        return conversation, self.store.list_messages(conversation_id)

    def list(self, owner_id: str, *, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        total = self.store.count_conversations(owner_id)
        conversations = self.store.list_conversations(
            owner_id, offset=(page - 1) * limit, limit=limit
        )
        items = [
            {
                "id": c.id,
                "title": c.title,
                "user_id": c.user_id,
                "message_count": self.store.count_messages(c.id),
                "created_at": c.created_at,
                "updated_at": c.updated_at,
            }
            for c in conversations
        ]
        return {
            "data": items,
            "meta": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    def delete(self, conversation_id: str, requester_id: str) -> None:
        self.require_owned(conversation_id, requester_id)
        if not self.store.delete_conversation(conversation_id):
            raise self._not_found(conversation_id)
        logger.info(
            "conversation_deleted",
            conversation_id=conversation_id,
            user_id=requester_id,
        )
