from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from chatkernel.logging import get_logger
from chatkernel.service.conversations import ConversationService, Store
from chatkernel.service.errors import NotFoundError, ValidationError
from chatkernel.service.provider import CompletionOptions
from chatkernel.storage.models import Job, JobKind, JobState

logger = get_logger(__name__)


def options_to_payload(options: CompletionOptions) -> Dict[str, Any]:
    return {
        "model": options.model,
        "max_tokens": options.max_tokens,
        "temperature": options.temperature,
    }


def options_from_payload(payload: Dict[str, Any]) -> CompletionOptions:
    return CompletionOptions(
        model=payload["model"],
        max_tokens=int(payload["max_tokens"]),
        temperature=float(payload["temperature"]),
    )


class JobService:
    """Enqueue background completions/embeddings and report their status."""

    def __init__(
        self,
        store: Store,
        conversations: ConversationService,
        *,
        max_attempts: int = 3,
        on_enqueue: Optional[Callable[[], None]] = None,
    ) -> None:
        self.store = store
        self.conversations = conversations
        self.max_attempts = max_attempts
        self.on_enqueue = on_enqueue

    def _submit(self, job: Job) -> Dict[str, Any]:
        self.store.create_job(job)
        logger.info(
            "job_enqueued",
            job_id=job.id,
            kind=job.kind.value,
            user_id=job.user_id,
            max_attempts=job.max_attempts,
        )
        if self.on_enqueue:
            self.on_enqueue()
        return {"job_id": job.id, "status": job.state.value}

    def enqueue_completion(
        self,
        user_id: str,
        conversation_id: str,
        message_id: str,
        options: CompletionOptions,
    ) -> Dict[str, Any]:
        """Queue a completion for a user message that is already persisted.

        The payload carries the message id, never raw text, so the user
        message is not appended again on redelivery.
        """
        self.conversations.require_owned(conversation_id, user_id)
        message = self.store.get_message(message_id)
        if message is None or message.conversation_id != conversation_id:
            raise NotFoundError("message not found", detail={"message_id": message_id})
        payload = {
            "conversation_id": conversation_id,
            "message_id": message_id,
            **options_to_payload(options),
        }
        return self._submit(
            Job.new(user_id, JobKind.COMPLETION, payload, max_attempts=self.max_attempts)
        )

    def enqueue_embedding(
        self, user_id: str, text: str, *, model: Optional[str] = None
    ) -> Dict[str, Any]:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("text must not be empty")
        payload = {"text": text, "model": model}
        return self._submit(
            Job.new(user_id, JobKind.EMBEDDING, payload, max_attempts=self.max_attempts)
        )

    def get(self, job_id: str, requester_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None or job.user_id != requester_id:
            raise NotFoundError("job not found", detail={"job_id": job_id})
        return job

    def status(self, job_id: str, requester_id: str) -> Dict[str, Any]:
        job = self.get(job_id, requester_id)
        return {
            "job_id": job.id,
            "kind": job.kind.value,
            "state": job.state.value,
            "progress": job.progress,
            "attempts": job.attempts,
            "result": job.result,
            # retried attempts leave their error behind; only report it once final
            "failed_reason": job.failed_reason if job.state == JobState.FAILED else None,
        }
