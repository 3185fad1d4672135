"""Tests for event-stream decoding and relay event transcoding."""

import pytest

from chat_relay.cancellation import CancellationToken
from chat_relay.exceptions import ClientAborted, TranscodeError
from chat_relay.llm_client import RawTokenStream
from chat_relay.models import RelayEvent
from chat_relay.transcoder import EventTranscoder, SSEFrame, SSEFrameDecoder

from .fakes import sse_chunks


def decode_all(*chunks: bytes):
    decoder = SSEFrameDecoder()
    frames = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    frames.extend(decoder.flush())
    return frames


async def collect(transcoder):
    return [event async for event in transcoder]


# -- SSEFrameDecoder --


def test_decoder_splits_frames_on_blank_lines():
    frames = decode_all(b'data: {"response":"a"}\n\ndata: [DONE]\n\n')
    assert frames == [SSEFrame('{"response":"a"}'), SSEFrame("[DONE]")]


def test_decoder_handles_frames_split_byte_by_byte():
    payload = b'data: {"response":"Hel"}\r\n\r\ndata: [DONE]\r\n\r\n'
    frames = decode_all(*(payload[i : i + 1] for i in range(len(payload))))
    assert [f.data for f in frames] == ['{"response":"Hel"}', "[DONE]"]


def test_decoder_handles_crlf_split_across_chunks():
    frames = decode_all(b"data: one\r", b"\n\r", b"\ndata: two\r\r")
    assert [f.data for f in frames] == ["one", "two"]


def test_decoder_joins_multiline_data_and_records_fields():
    frames = decode_all(b"event: token\nid: 7\ndata: first\ndata:second\n\n")
    assert frames == [SSEFrame("first\nsecond", event="token", id="7")]


def test_decoder_ignores_comments_and_empty_frames():
    frames = decode_all(b": keep-alive\n\nretry: 100\n\ndata: x\n\n")
    assert [f.data for f in frames] == ["x"]


def test_decoder_reassembles_multibyte_characters():
    payload = 'data: {"response":"héllo ✓"}\n\n'.encode("utf-8")
    split = payload.index("✓".encode("utf-8")) + 1
    frames = decode_all(payload[:split], payload[split:])
    assert frames[0].data == '{"response":"héllo ✓"}'


def test_decoder_drops_leading_bom():
    frames = decode_all("\ufeffdata: x\n\n".encode("utf-8"))
    assert frames[0].data == "x"


def test_decoder_discards_unterminated_frame():
    assert decode_all(b"data: partial") == []


def test_decoder_rejects_invalid_utf8():
    decoder = SSEFrameDecoder()
    with pytest.raises(TranscodeError):
        list(decoder.feed(b"data: \xff\xfe\n\n"))


# -- EventTranscoder --


@pytest.mark.asyncio
async def test_transcoder_emits_one_event_per_frame():
    stream = RawTokenStream(iter(sse_chunks({"response": "Hel"}, {"response": "lo"}, "[DONE]")))
    events = await collect(EventTranscoder(stream, CancellationToken()))
    assert events == [RelayEvent("Hel"), RelayEvent("lo"), RelayEvent("", terminal=True)]
    assert "".join(e.text_delta for e in events if not e.terminal) == "Hello"


@pytest.mark.asyncio
async def test_transcoder_handles_several_frames_in_one_chunk():
    chunk = b"".join(sse_chunks({"response": "a"}, {"response": ""}, {"response": "b"}, "[DONE]"))
    events = await collect(EventTranscoder(RawTokenStream(iter([chunk])), CancellationToken()))
    assert [e.text_delta for e in events] == ["a", "", "b", ""]
    assert [e.terminal for e in events] == [False, False, False, True]


@pytest.mark.asyncio
async def test_transcoder_stops_reading_after_terminal_marker():
    read = []

    def chunks():
        for chunk in sse_chunks({"response": "a"}, "[DONE]", {"response": "late"}):
            read.append(chunk)
            yield chunk

    events = await collect(EventTranscoder(RawTokenStream(chunks()), CancellationToken()))
    assert events[-1].terminal
    assert len(read) == 2


@pytest.mark.asyncio
async def test_transcoder_ignores_extra_fields_in_payload():
    chunks = sse_chunks({"response": "x", "p": "abc", "usage": {"prompt_tokens": 1}}, "[DONE]")
    events = await collect(EventTranscoder(RawTokenStream(iter(chunks)), CancellationToken()))
    assert events[0] == RelayEvent("x")


@pytest.mark.asyncio
async def test_malformed_json_aborts_after_delivered_events():
    chunks = sse_chunks({"response": "ok"}) + [b"data: {not json\n\n"] + sse_chunks("[DONE]")
    delivered = []
    with pytest.raises(TranscodeError):
        async for event in EventTranscoder(RawTokenStream(iter(chunks)), CancellationToken()):
            delivered.append(event)
    assert delivered == [RelayEvent("ok")]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [b"data: [1, 2]\n\n", b'data: {"text": "x"}\n\n', b'data: {"response": 3}\n\n'])
async def test_payload_without_string_response_is_rejected(payload):
    with pytest.raises(TranscodeError):
        await collect(EventTranscoder(RawTokenStream(iter([payload])), CancellationToken()))


@pytest.mark.asyncio
async def test_stream_ending_without_terminal_marker_is_an_error():
    chunks = sse_chunks({"response": "a"})
    with pytest.raises(TranscodeError):
        await collect(EventTranscoder(RawTokenStream(iter(chunks)), CancellationToken()))


@pytest.mark.asyncio
async def test_transcoder_observes_cancellation_between_reads():
    token = CancellationToken()
    transcoder = EventTranscoder(RawTokenStream(iter(sse_chunks({"response": "a"}, "[DONE]"))), token)
    events = transcoder.events()
    assert await events.__anext__() == RelayEvent("a")
    token.cancel()
    with pytest.raises(ClientAborted):
        await events.__anext__()


@pytest.mark.asyncio
async def test_transcoder_is_not_restartable():
    transcoder = EventTranscoder(RawTokenStream(iter(sse_chunks("[DONE]"))), CancellationToken())
    await collect(transcoder)
    with pytest.raises(RuntimeError):
        await collect(transcoder)
