"""Orchestration of one streamed chat turn with a durable conversation history.

A request flows through ``Idle -> HistoryLoaded -> Streaming -> Committing ->
Done``. History is read once, the new turn only lives in memory while the reply
streams, and the single durable write happens after the upstream's terminal
event. Cancellation ends in ``Aborted`` and any error in ``Failed``; neither
touches the store.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, List, Optional

from fastapi.concurrency import run_in_threadpool

from .cancellation import CancellationToken
from .config import RelayConfig
from .exceptions import ClientAborted, UpstreamRejected
from .llm_client import NotStreaming, RawTokenStream, StreamOpened, UpstreamCompletionClient
from .models import Message, OutwardEvent, PendingTurn, Role
from .store import ConversationStore
from .transcoder import EventTranscoder

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    HISTORY_LOADED = "history_loaded"
    STREAMING = "streaming"
    COMMITTING = "committing"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


class CompletionRun:
    """State of a single request, from history load to commit."""

    def __init__(
        self,
        orchestrator: "CompletionOrchestrator",
        session_id: str,
        user_message: Message,
        token: CancellationToken,
    ) -> None:
        self._orchestrator = orchestrator
        self.session_id = session_id
        self.token = token
        self.pending = PendingTurn(user_message=user_message)
        self.history: List[Message] = []
        self.state = RunState.IDLE
        self.error: Optional[Exception] = None
        self._stream: Optional[RawTokenStream] = None
        self._committed = False

    @property
    def finished(self) -> bool:
        return self.state in (RunState.DONE, RunState.ABORTED, RunState.FAILED)

    async def _load_history(self) -> None:
        self.token.raise_if_cancelled()
        history = await run_in_threadpool(self._orchestrator.store.load, self.session_id)
        self.token.raise_if_cancelled()
        if not history:
            # Seeded in memory only; persisted with the first committed turn.
            history = [Message.system(self._orchestrator.config.system_prompt)]
        self.history = history
        self.state = RunState.HISTORY_LOADED

    async def _open_stream(self) -> None:
        prompt = [*self.history, self.pending.user_message]
        result = await self._orchestrator.client.open(prompt, self.token)
        if isinstance(result, NotStreaming):
            raise UpstreamRejected(
                f"upstream did not return a stream (status={result.status_code}, content-type={result.content_type or '-'})",
                status_code=result.status_code,
                detail=result.detail,
            )
        if not isinstance(result, StreamOpened):
            raise TypeError(f"unexpected upstream open result: {result!r}")
        self._stream = result.stream
        self.state = RunState.STREAMING

    async def prepare(self) -> "CompletionRun":
        """Load history and open the upstream stream."""
        try:
            await self._load_history()
            await self._open_stream()
        except ClientAborted as exc:
            self._abort(exc.message)
            raise
        except asyncio.CancelledError:
            self.token.cancel("client disconnected")
            self._abort("client disconnected")
            raise
        except Exception as exc:
            self._fail(exc)
            raise
        return self

    async def events(self) -> AsyncIterator[OutwardEvent]:
        """Forward the reply as outward events and commit after the last one.

        Closing this generator before it finishes, cancelling the task that
        drives it, or cancelling :attr:`token` aborts the run without a commit.
        """
        if self.state is not RunState.STREAMING or self._stream is None:
            raise RuntimeError(f"completion run is not streaming (state={self.state.value})")

        transcoder = EventTranscoder(self._stream, self.token)
        try:
            async for event in transcoder:
                yield OutwardEvent.from_relay_event(event)
                self.pending.append(event.text_delta)
                if event.terminal:
                    await self._commit()
        except ClientAborted as exc:
            self._abort(exc.message)
        except (GeneratorExit, asyncio.CancelledError):
            self.token.cancel("client disconnected")
            self._abort("client disconnected")
            raise
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            self._release("stream closed before completion")

    async def _commit(self) -> None:
        self.state = RunState.COMMITTING
        self.token.raise_if_cancelled()
        if self._committed:
            raise RuntimeError("turn already committed")
        user_message, assistant_message = self.pending.to_messages()
        history = self._orchestrator.bounded([*self.history, user_message, assistant_message])
        await run_in_threadpool(self._orchestrator.store.save, self.session_id, history)
        self._committed = True
        self.history = history
        self.state = RunState.DONE
        logger.info(
            "Committed turn for session %s (%d message(s), %d reply chars)",
            self.session_id,
            len(history),
            len(assistant_message.content),
        )

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()

    def _release(self, reason: str) -> None:
        if not self.finished:
            self._abort(reason)
        self._close_stream()

    def _abort(self, reason: str) -> None:
        if self.finished:
            return
        self.state = RunState.ABORTED
        self._close_stream()
        logger.info("Aborted completion for session %s: %s", self.session_id, reason)

    def _fail(self, exc: Exception) -> None:
        self.error = exc
        self.state = RunState.FAILED
        self._close_stream()
        code = getattr(exc, "code", type(exc).__name__)
        logger.warning("Completion failed for session %s: [%s] %s", self.session_id, code, exc)

    async def aclose(self) -> None:
        """Release a run whose events were never (fully) consumed."""
        self._release("run closed by transport")


class CompletionOrchestrator:
    """Compose the store, the upstream client and the transcoder."""

    def __init__(
        self,
        store: ConversationStore,
        client: UpstreamCompletionClient,
        config: Optional[RelayConfig] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.config = config or RelayConfig()

    async def start(
        self,
        session_id: str,
        message: str,
        *,
        token: Optional[CancellationToken] = None,
    ) -> CompletionRun:
        """Load history and open the upstream stream for a new turn.

        Raises ``ValueError`` for an empty session id or message, and the relay
        errors of the failed step otherwise; the store is untouched in every
        failure case.
        """
        if not session_id:
            raise ValueError("session_id is required")
        if not message or not message.strip():
            raise ValueError("message is required")

        logger.info("Starting completion for session %s", session_id)
        run = CompletionRun(self, session_id, Message.user(message), token or CancellationToken())
        return await run.prepare()

    async def stream_completion(
        self,
        session_id: str,
        message: str,
        *,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[OutwardEvent]:
        run = await self.start(session_id, message, token=token)
        async for event in run.events():
            yield event

    async def get_history(self, session_id: str) -> List[Message]:
        return await run_in_threadpool(self.store.load, session_id)

    async def clear_history(self, session_id: str) -> None:
        logger.info("Clearing history for session %s", session_id)
        await run_in_threadpool(self.store.clear, session_id)

    def bounded(self, history: List[Message]) -> List[Message]:
        """Keep at most ``max_history_messages``, system message first.

        Whole turns are dropped from the front, so the kept tail always starts
        with a user message.
        """
        limit = self.config.max_history_messages
        if limit <= 0 or len(history) <= limit:
            return history
        head: List[Message] = []
        if history and history[0].role is Role.SYSTEM:
            head, history, limit = history[:1], history[1:], limit - 1
        tail = history[-limit:] if limit > 0 else []
        while tail and tail[0].role is not Role.USER:
            tail = tail[1:]
        return [*head, *tail]
