"""Incremental decoding of the upstream event stream into relay events.

The upstream speaks ``text/event-stream``: frames are groups of ``field: value``
lines terminated by a blank line. Each frame's ``data`` is either a JSON object
``{"response": "<fragment>"}`` or the literal ``[DONE]``. Decoding is strictly
pull-based: a chunk is only read from the upstream once the frames already
decoded have been handed to the consumer, so memory stays bounded by one chunk
plus one partial frame regardless of the length of the reply.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Iterator, List, Optional

from .cancellation import CancellationToken
from .exceptions import TranscodeError
from .llm_client import RawTokenStream
from .models import RelayEvent

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
BOM = "\ufeff"


@dataclass(frozen=True)
class SSEFrame:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None


class SSEFrameDecoder:
    """Byte-level ``text/event-stream`` parser.

    Feed raw chunks with :meth:`feed`; complete frames are yielded lazily as
    soon as their terminating blank line has been seen. Each generator returned
    by :meth:`feed` must be exhausted before the next chunk is fed.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._line = ""
        self._pending_cr = False
        self._seen_text = False
        self._reset_frame()

    def _reset_frame(self) -> None:
        self._data: List[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None

    def feed(self, chunk: bytes) -> Iterator[SSEFrame]:
        try:
            text = self._decoder.decode(chunk)
        except UnicodeDecodeError as exc:
            raise TranscodeError(f"upstream sent invalid UTF-8: {exc}") from exc
        yield from self._consume(text)

    def flush(self) -> Iterator[SSEFrame]:
        """Drain the decoder at end of input.

        A trailing line without a newline is still processed, but a frame that
        never received its blank-line terminator is discarded.
        """
        try:
            text = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise TranscodeError(f"upstream stream ended inside a UTF-8 sequence: {exc}") from exc
        yield from self._consume(text)
        if self._line:
            line, self._line = self._line, ""
            frame = self._process_line(line)
            if frame is not None:
                yield frame
        self._reset_frame()

    def _consume(self, text: str) -> Iterator[SSEFrame]:
        if not text:
            return
        if not self._seen_text:
            self._seen_text = True
            if text.startswith(BOM):
                text = text[1:]
        index = 0
        if self._pending_cr:
            # CRLF split across two chunks ends a single line.
            self._pending_cr = False
            if text.startswith("\n"):
                index = 1
        start = index
        while index < len(text):
            char = text[index]
            if char in "\r\n":
                line = self._line + text[start:index]
                self._line = ""
                if char == "\r":
                    if index + 1 == len(text):
                        self._pending_cr = True
                    elif text[index + 1] == "\n":
                        index += 1
                start = index + 1
                frame = self._process_line(line)
                if frame is not None:
                    yield frame
            index += 1
        self._line += text[start:]

    def _process_line(self, line: str) -> Optional[SSEFrame]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            if "\x00" not in value:
                self._id = value
        return None

    def _dispatch(self) -> Optional[SSEFrame]:
        if not self._data:
            self._reset_frame()
            return None
        frame = SSEFrame(data="\n".join(self._data), event=self._event, id=self._id)
        self._reset_frame()
        return frame


class EventTranscoder:
    """Turn an upstream :class:`RawTokenStream` into :class:`RelayEvent` objects.

    Iterating the transcoder yields one event per upstream frame, in order. The
    terminal ``[DONE]`` frame produces ``RelayEvent("", terminal=True)`` and ends
    iteration without reading further. A frame whose payload is not a JSON
    object with a string ``response`` raises :class:`TranscodeError`, as does an
    upstream that ends without the terminal marker. The transcoder is not
    restartable.
    """

    def __init__(self, stream: RawTokenStream, token: CancellationToken) -> None:
        self._stream = stream
        self._token = token
        self._started = False

    def __aiter__(self) -> AsyncIterator[RelayEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[RelayEvent]:
        if self._started:
            raise RuntimeError("EventTranscoder can only be iterated once")
        self._started = True

        decoder = SSEFrameDecoder()
        frames_seen = 0
        while True:
            chunk = await self._stream.read(self._token)
            if chunk is None:
                break
            for frame in decoder.feed(chunk):
                frames_seen += 1
                event = self.transcode_frame(frame)
                yield event
                if event.terminal:
                    logger.debug("Upstream stream finished after %d frame(s)", frames_seen)
                    return

        for frame in decoder.flush():
            frames_seen += 1
            event = self.transcode_frame(frame)
            yield event
            if event.terminal:
                return
        raise TranscodeError(
            f"upstream stream ended without {DONE_SENTINEL} after {frames_seen} frame(s)",
            frames=frames_seen,
        )

    @staticmethod
    def transcode_frame(frame: SSEFrame) -> RelayEvent:
        if frame.data == DONE_SENTINEL:
            return RelayEvent.end()
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError as exc:
            raise TranscodeError(f"malformed upstream frame: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise TranscodeError(f"upstream frame is a JSON {type(payload).__name__}, expected an object")
        fragment = payload.get("response")
        if not isinstance(fragment, str):
            raise TranscodeError("upstream frame has no string 'response' field")
        return RelayEvent(fragment)
