"""Client for the streaming text generation backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Sequence, Union

import requests
from fastapi.concurrency import run_in_threadpool

from .cancellation import CancellationToken
from .config import UpstreamConfig
from .exceptions import UpstreamRejected
from .models import Message, history_to_payload

logger = logging.getLogger(__name__)

EVENT_STREAM_MEDIA_TYPE = "text/event-stream"


class RawTokenStream:
    """Single-pass sequence of raw byte chunks from an open upstream response.

    Each :meth:`read` pulls one chunk on a worker thread so the event loop is
    never blocked on the socket. ``None`` marks the end of the stream.
    """

    def __init__(self, chunks: Iterator[bytes], close: Optional[Callable[[], None]] = None) -> None:
        self._chunks = chunks
        self._close = close
        self._closed = False

    @classmethod
    def from_response(cls, response: requests.Response) -> "RawTokenStream":
        return cls(response.iter_content(chunk_size=None), response.close)

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, token: CancellationToken) -> Optional[bytes]:
        token.raise_if_cancelled()
        if self._closed:
            return None
        try:
            chunk = await run_in_threadpool(next, self._chunks, None)
        except requests.RequestException as exc:
            raise UpstreamRejected(f"upstream stream interrupted: {exc}") from exc
        token.raise_if_cancelled()
        return chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            try:
                self._close()
            except Exception:
                logger.debug("Error while closing upstream stream", exc_info=True)


@dataclass(frozen=True)
class StreamOpened:
    stream: RawTokenStream


@dataclass(frozen=True)
class NotStreaming:
    """The backend answered, but not with an event stream."""

    status_code: int
    content_type: str
    detail: str = ""


OpenResult = Union[StreamOpened, NotStreaming]


class UpstreamCompletionClient:
    """Opens token streams against the generation backend."""

    def __init__(self, config: Optional[UpstreamConfig] = None) -> None:
        self.config = config or UpstreamConfig()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": EVENT_STREAM_MEDIA_TYPE}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        return headers

    def _post(self, payload: Dict[str, object]) -> requests.Response:
        return requests.post(
            self.config.url,
            json=payload,
            headers=self._headers(),
            stream=True,
            timeout=self.config.request_timeout,
        )

    async def open(self, messages: Sequence[Message], token: CancellationToken) -> OpenResult:
        """Request a streamed completion for ``messages``.

        Returns :class:`StreamOpened` when the backend replied with an event
        stream and :class:`NotStreaming` for any other reply. Transport failures
        raise :class:`UpstreamRejected`.
        """
        token.raise_if_cancelled()
        payload: Dict[str, object] = {"messages": history_to_payload(messages), "stream": True}

        logger.info("Opening completion stream to %s (%d message(s))", self.config.url, len(messages))
        try:
            response = await run_in_threadpool(self._post, payload)
        except requests.RequestException as exc:
            raise UpstreamRejected(f"upstream request failed: {exc}") from exc

        if token.cancelled:
            response.close()
            token.raise_if_cancelled()

        content_type = response.headers.get("Content-Type", "")
        if response.status_code >= 400 or EVENT_STREAM_MEDIA_TYPE not in content_type.lower():
            detail = self._read_detail(response)
            logger.warning(
                "Upstream did not stream (status=%d, content-type=%s)", response.status_code, content_type or "-"
            )
            return NotStreaming(status_code=response.status_code, content_type=content_type, detail=detail)

        return StreamOpened(RawTokenStream.from_response(response))

    @staticmethod
    def _read_detail(response: requests.Response, limit: int = 500) -> str:
        try:
            return response.text[:limit]
        except Exception:
            logger.debug("Could not read upstream error body", exc_info=True)
            return ""
        finally:
            response.close()
