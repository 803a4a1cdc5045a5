"""Background worker pool for queued completion and embedding jobs.

Each pool member claims one queued job at a time and runs it end to end:
- completions rebuild the turn around the stored user message, call the
  provider and append the assistant message keyed by the job id
- embeddings call the provider and charge usage once, guarded by the job's
  result marker
Provider failures are retried with exponential backoff; any other error fails
the job immediately.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatkernel.logging import get_logger, sanitize_error_message
from chatkernel.service.conversations import Store
from chatkernel.service.errors import JobExhaustedError, ProviderError, ServiceError
from chatkernel.service.gateway import CompletionGateway
from chatkernel.service.jobs import options_from_payload
from chatkernel.storage.models import Job, JobKind, JobState

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_SHUTDOWN_GRACE_SECONDS = 5.0
DEFAULT_LEASE_SECONDS = 900.0
PROGRESS_CONTEXT_READY = 50
PROGRESS_DONE = 100


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and exponential backoff for provider failures."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 300.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""
        raw = self.backoff_base * (self.backoff_multiplier ** max(0, attempt - 1))
        return max(0.0, min(self.max_backoff, raw))


class AsyncCompletionWorker:
    """Pool of asyncio tasks draining the job queue.

    Different jobs run in parallel; a single job's attempts are sequential.
    """

    def __init__(
        self,
        store: Store,
        gateway: CompletionGateway,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.shutdown_grace = shutdown_grace
        self.lease_seconds = lease_seconds
        self._sleep = sleep
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._wakeup: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    def notify(self) -> None:
        """Wake idle pool members after an enqueue."""
        if self._wakeup is not None:
            self._wakeup.set()

    async def start(self) -> None:
        if self._running:
            logger.warning("worker_already_running")
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._run_loop(index)) for index in range(self.concurrency)
        ]
        logger.info(
            "worker_started",
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
            max_attempts=self.retry_policy.max_attempts,
        )

    async def stop(self) -> None:
        self._running = False
        self.notify()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_grace)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._tasks = []
        self._wakeup = None
        logger.info("worker_stopped")

    async def _run_loop(self, index: int) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                processed = await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "worker_loop_error",
                    worker=index,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(300, self.poll_interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "worker_backoff",
                        worker=index,
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
                processed = False
            if not processed:
                await self._wait_for_work()

    async def _wait_for_work(self) -> None:
        wakeup = self._wakeup
        if wakeup is None:
            await asyncio.sleep(self.poll_interval)
            return
        try:
            await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        finally:
            wakeup.clear()

    async def run_once(self) -> bool:
        """Claim and process one job. False when there is nothing to do.

        Active jobs whose lease ran out (their worker died mid-run) are taken
        over before new queued work.
        """
        job = self.store.reclaim_stalled_job(
            datetime.utcnow() - timedelta(seconds=self.lease_seconds)
        )
        if job is not None:
            logger.warning(
                "job_reclaimed",
                job_id=job.id,
                attempts=job.attempts,
                lease_seconds=self.lease_seconds,
            )
        else:
            job = self.store.claim_next_job()
        if job is None:
            return False
        await self.process(job)
        return True

    async def drain(self) -> int:
        processed = 0
        while await self.run_once():
            processed += 1
        return processed

    async def process(self, job: Job) -> None:
        current = self.store.get_job(job.id) or job
        if current.state.is_terminal:
            logger.info(
                "job_duplicate_skipped",
                job_id=job.id,
                state=current.state.value,
            )
            return
        if current.state == JobState.QUEUED:
            self.store.update_job(job.id, state=JobState.ACTIVE)
        if current.result is not None:
            # result recorded by an earlier delivery; only the final state is missing
            self.store.update_job(job.id, state=JobState.COMPLETED, progress=PROGRESS_DONE)
            logger.info("job_duplicate_skipped", job_id=job.id, stage="finalize")
            return

        attempt = current.attempts
        max_attempts = current.max_attempts or self.retry_policy.max_attempts
        last_error: Optional[str] = current.failed_reason

        while attempt < max_attempts:
            attempt += 1
            self.store.update_job(job.id, attempts=attempt)
            try:
                result = await self._execute(current)
            except ProviderError as exc:
                last_error = exc.message
                # also renews the lease before the backoff sleep
                self.store.update_job(job.id, failed_reason=last_error)
                logger.warning(
                    "job_attempt_failed",
                    job_id=job.id,
                    kind=current.kind.value,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_code=exc.error_code,
                    error=last_error,
                )
                if attempt < max_attempts:
                    await self._sleep(self.retry_policy.delay(attempt))
                continue
            except ServiceError as exc:
                self._fail(current, exc.message, attempt, error_code=exc.error_code)
                return
            except Exception as exc:
                logger.exception("job_unexpected_error", job_id=job.id, attempt=attempt)
                self._fail(
                    current,
                    sanitize_error_message(str(exc)),
                    attempt,
                    error_code="server_error",
                )
                return

            self.store.update_job(job.id, state=JobState.COMPLETED, progress=PROGRESS_DONE)
            logger.info(
                "job_completed",
                job_id=job.id,
                kind=current.kind.value,
                attempts=attempt,
                tokens=result.get("tokens"),
            )
            return

        exhausted = JobExhaustedError(
            job.id, attempt, last_error or "worker stopped during the final attempt"
        )
        self._fail(current, exhausted.message, attempt, error_code=exhausted.error_code)

    def _fail(self, job: Job, reason: str, attempts: int, *, error_code: str) -> None:
        self.store.update_job(job.id, state=JobState.FAILED, failed_reason=reason)
        logger.error(
            "job_failed",
            job_id=job.id,
            kind=job.kind.value,
            attempts=attempts,
            error_code=error_code,
            error=reason,
        )

    async def _execute(self, job: Job) -> Dict[str, Any]:
        if job.kind == JobKind.COMPLETION:
            return await self._execute_completion(job)
        return await self._execute_embedding(job)

    async def _execute_completion(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        turn = self.gateway.prepare_existing(
            job.user_id,
            payload["conversation_id"],
            payload["message_id"],
            options_from_payload(payload),
        )
        self.store.update_job(job.id, progress=PROGRESS_CONTEXT_READY)
        outcome = await self.gateway.complete_turn(turn, idempotency_key=job.id)
        result = {
            "message_id": outcome.message_id,
            "conversation_id": outcome.conversation_id,
            "content": outcome.content,
            "model": outcome.model,
            "tokens": outcome.tokens,
            "finish_reason": outcome.finish_reason,
        }
        if not self.store.set_job_result_if_absent(job.id, result):
            logger.info("job_duplicate_skipped", job_id=job.id, stage="result")
        return result

    async def _execute_embedding(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        self.store.update_job(job.id, progress=PROGRESS_CONTEXT_READY)
        embedding = await self.gateway.compute_embedding(
            payload.get("text") or "", model=payload.get("model")
        )
        result = {
            "embedding": embedding.vector,
            "model": embedding.model,
            "tokens": embedding.tokens,
        }
        if self.store.set_job_result_if_absent(job.id, result):
            self.gateway.charge_embedding(job.user_id, embedding)
        else:
            logger.info("job_duplicate_skipped", job_id=job.id, stage="result")
        return result
