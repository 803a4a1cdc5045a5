from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from chatkernel.logging import get_logger, sanitize_error_message
from chatkernel.service.errors import ServiceError
from chatkernel.service.gateway import (
    EVENT_CHUNK,
    EVENT_END,
    EVENT_ERROR,
    EVENT_STOPPED,
    CompletionGateway,
    PreparedTurn,
    TurnEvent,
)

logger = get_logger(__name__)

EventSink = Callable[[TurnEvent], Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING = "awaiting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    STOPPED = "stopped"


_FINISHED = frozenset({SessionState.COMPLETED, SessionState.ERRORED, SessionState.STOPPED})

_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.IDLE: frozenset({SessionState.AWAITING}),
    SessionState.AWAITING: frozenset(
        {
            SessionState.STREAMING,
            SessionState.COMPLETED,
            SessionState.ERRORED,
            SessionState.STOPPED,
        }
    ),
    SessionState.STREAMING: frozenset(
        {SessionState.COMPLETED, SessionState.ERRORED, SessionState.STOPPED}
    ),
    SessionState.COMPLETED: frozenset({SessionState.IDLE}),
    SessionState.ERRORED: frozenset({SessionState.IDLE}),
    SessionState.STOPPED: frozenset({SessionState.IDLE}),
}


class StreamingSession:
    """Per-connection streaming state machine.

    ``idle -> awaiting -> streaming -> completed | errored | stopped -> idle``

    The session owns at most one in-flight stream. A second start stops the
    running stream first (emitting ``stopped``) and then begins the new one.
    Stopped and errored turns persist no assistant message and charge no
    usage; the user message written at start stays.
    """

    def __init__(self, gateway: CompletionGateway, send: EventSink) -> None:
        self.gateway = gateway
        self._send = send
        self.state = SessionState.IDLE
        self.state_log: List[SessionState] = [SessionState.IDLE]
        self._task: Optional[asyncio.Task] = None
        self._turn: Optional[PreparedTurn] = None

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"invalid session transition {self.state.value} -> {target.value}"
            )
        self.state = target
        self.state_log.append(target)

    def _settle(self) -> None:
        if self.state in _FINISHED:
            self._transition(SessionState.IDLE)
        self._turn = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def handle_start(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> None:
        if self.active or self.state != SessionState.IDLE:
            await self._stop_current(notify=True)

        self._transition(SessionState.AWAITING)
        try:
            options = self.gateway.resolve_options(
                model=model, max_tokens=max_tokens, temperature=temperature
            )
            # The user message is durable before any provider call or stop.
            turn = self.gateway.prepare(user_id, message, conversation_id, options)
        except ServiceError as exc:
            await self._fail(exc.message, error_code=exc.error_code, user_id=user_id)
            return
        except Exception as exc:
            logger.exception(
                "stream_prepare_failed",
                user_id=user_id,
                conversation_id=conversation_id,
                error_type=type(exc).__name__,
            )
            await self._fail(
                sanitize_error_message(str(exc)),
                error_code="server_error",
                user_id=user_id,
            )
            return

        self._turn = turn
        logger.info(
            "stream_started",
            user_id=user_id,
            conversation_id=turn.conversation.id,
            conversation_created=turn.conversation_created,
            model=turn.options.model,
        )
        for event in self.gateway.opening_events(turn):
            await self._send(event)
        self._task = asyncio.create_task(self._pump(turn))

    async def handle_stop(self) -> None:
        stopped = await self._stop_current(notify=True)
        if not stopped:
            await self._send(TurnEvent(EVENT_STOPPED, {}))

    async def close(self) -> None:
        """Tear down on disconnect; cancels any in-flight stream silently."""
        await self._stop_current(notify=False)

    async def wait(self) -> None:
        """Wait for the in-flight stream, if any, to finish."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _pump(self, turn: PreparedTurn) -> None:
        try:
            async for event in self.gateway.stream_turn(turn):
                if event.name == EVENT_CHUNK and self.state == SessionState.AWAITING:
                    self._transition(SessionState.STREAMING)
                elif event.name == EVENT_END:
                    self._transition(SessionState.COMPLETED)
                    logger.info(
                        "stream_completed",
                        conversation_id=turn.conversation.id,
                        message_id=event.data.get("messageId"),
                        total_tokens=event.data.get("totalTokens"),
                        finish_reason=event.data.get("finishReason"),
                    )
                await self._send(event)
        except asyncio.CancelledError:
            raise
        except ServiceError as exc:
            await self._fail(
                exc.message,
                error_code=exc.error_code,
                user_id=turn.user_id,
                conversation_id=turn.conversation.id,
            )
        except Exception as exc:
            logger.exception(
                "stream_unexpected_error",
                conversation_id=turn.conversation.id,
                error_type=type(exc).__name__,
            )
            await self._fail(
                sanitize_error_message(str(exc)),
                error_code="server_error",
                user_id=turn.user_id,
                conversation_id=turn.conversation.id,
            )
        finally:
            if self._turn is turn:
                self._settle()

    async def _fail(self, reason: str, *, error_code: str, **context) -> None:
        if self.state not in _FINISHED:
            self._transition(SessionState.ERRORED)
        logger.warning("stream_errored", error_code=error_code, error=reason, **context)
        try:
            await self._send(TurnEvent(EVENT_ERROR, {"message": reason}))
        except Exception as exc:
            logger.warning("stream_error_undeliverable", error=str(exc))
        finally:
            self._settle()

    async def _stop_current(self, *, notify: bool) -> bool:
        task = self._task
        turn = self._turn
        self._task = None
        if task is None or task.done():
            if self.state in _FINISHED:
                self._settle()
            return False

        if self.state == SessionState.COMPLETED:
            # Already persisted; let the end event go out.
            await asyncio.shield(task)
            return False

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if self.state in (SessionState.AWAITING, SessionState.STREAMING):
            self._transition(SessionState.STOPPED)
        logger.info(
            "stream_stopped",
            conversation_id=turn.conversation.id if turn else None,
            notify=notify,
        )
        try:
            if notify:
                await self._send(TurnEvent(EVENT_STOPPED, {}))
        finally:
            self._settle()
        return True
