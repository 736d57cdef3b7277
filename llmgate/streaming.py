"""
Streaming event normalizer.

Turns a vendor byte stream (Server-Sent Events, newline-delimited JSON, or a
single buffered JSON body) into decoded frames, and carries the small amount
of state adapters need to turn those frames into unified stream events.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional,
)

import httpx

from .arguments import decode_arguments, encode_arguments
from .cancellation import CancellationToken
from .errors import APIError, TRUNCATION_MARKER, truncate_text
from .types import (
    Done, FinishReason, ProviderResponse, StreamEvent, TextDelta, ToolCall,
    ToolCallArgument, ToolCallEnd, ToolCallStart, Usage,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DEFAULT_ERROR_BODY_LIMIT = 1000
DEFAULT_CHANNEL_SIZE = 64

Emit = Callable[[StreamEvent], Awaitable[None]]


class WireFormat(Enum):
    SSE = "sse"
    NDJSON = "ndjson"
    BUFFERED = "buffered"


class MalformedFramePolicy(Enum):
    """What to do with a frame whose payload is not valid JSON."""
    SKIP = "skip"
    FAIL = "fail"


def detect_wire_format(response: httpx.Response, expected: WireFormat) -> WireFormat:
    """
    Pick the wire format actually used by a streaming response.

    Some servers ignore the stream flag and answer with one JSON document; a
    plain ``application/json`` content type is read as a buffered body.
    """
    content_type = response.headers.get("content-type", "")
    media_type = content_type.split(";")[0].strip().lower()
    if expected is not WireFormat.BUFFERED and media_type == "application/json":
        return WireFormat.BUFFERED
    return expected


# =============================================================================
# Line Handling
# =============================================================================

class LineDecoder:
    """Splits incoming text chunks into complete lines, buffering the remainder."""

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> List[str]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        if not self._buffer:
            return []
        line, self._buffer = self._buffer.rstrip("\r"), ""
        return [line]


def parse_sse_line(line: str) -> Optional[str]:
    """
    Extract the payload of one SSE line.

    Returns None for blank lines, comments (keep-alives) and non-data fields.
    Lines holding bare JSON without a ``data:`` prefix are passed through.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if line[0] in "{[":
        return line
    name, _, value = line.partition(":")
    if name != "data":
        return None
    return value.strip() or None


def _line_payload(line: str, wire: WireFormat) -> Optional[str]:
    if wire is WireFormat.SSE:
        return parse_sse_line(line)
    return line.strip() or None


def _decode_frame(payload: str, vendor: str, malformed: MalformedFramePolicy) -> Any:
    try:
        return json.loads(payload)
    except ValueError as e:
        if malformed is MalformedFramePolicy.FAIL:
            raise APIError(
                f"{vendor} sent a malformed stream frame: {truncate_text(payload, 200)}",
                vendor=vendor,
            ) from e
        logger.debug("Skipping malformed %s stream frame: %.200s", vendor, payload)
        return None


async def iter_frames(
    response: httpx.Response,
    wire: WireFormat,
    *,
    vendor: str,
    malformed: MalformedFramePolicy = MalformedFramePolicy.SKIP,
    cancellation: Optional[CancellationToken] = None,
) -> AsyncIterator[Any]:
    """
    Yield decoded JSON frames from a streaming response.

    Frames are yielded in arrival order. The ``[DONE]`` sentinel ends the
    iteration early; otherwise it ends when the body closes. The cancellation
    token is checked at every chunk boundary.

    Args:
        response (httpx.Response): An open streaming response.
        wire (WireFormat): Framing used by the body.
        vendor (str): Vendor label for log and error messages.
        malformed (MalformedFramePolicy): Skip or fail on undecodable frames.
        cancellation (CancellationToken, optional): Request cancellation token.

    Yields:
        Any: One decoded JSON value per frame.

    Raises:
        APIError: On a malformed frame under ``MalformedFramePolicy.FAIL``.
        RequestCancelledError: If the token fires mid-stream.
    """
    if wire is WireFormat.BUFFERED:
        body = await response.aread()
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        text = body.decode(response.encoding or "utf-8", errors="replace").strip()
        if text:
            frame = _decode_frame(text, vendor, malformed)
            if frame is not None:
                yield frame
        return

    decoder = LineDecoder()
    async for chunk in response.aiter_text():
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        for line in decoder.feed(chunk):
            payload = _line_payload(line, wire)
            if payload is None:
                continue
            if payload == DONE_SENTINEL:
                return
            frame = _decode_frame(payload, vendor, malformed)
            if frame is not None:
                yield frame

    # Body closed without a trailing newline
    for line in decoder.flush():
        payload = _line_payload(line, wire)
        if payload is None or payload == DONE_SENTINEL:
            continue
        frame = _decode_frame(payload, vendor, malformed)
        if frame is not None:
            yield frame


async def read_error_body(response: httpx.Response, limit: int = DEFAULT_ERROR_BODY_LIMIT) -> str:
    """
    Capture at most ``limit`` characters of a streaming error body.

    Reading stops as soon as the ceiling is reached; the returned text then
    ends with the truncation marker.
    """
    captured: List[str] = []
    size = 0
    async for chunk in response.aiter_text():
        remaining = limit - size
        if len(chunk) > remaining:
            captured.append(chunk[:remaining])
            return "".join(captured) + TRUNCATION_MARKER
        captured.append(chunk)
        size += len(chunk)
    return "".join(captured)


# =============================================================================
# Stream State
# =============================================================================

class _PendingToolCall:
    def __init__(self, call_id: str, name: str):
        self.id = call_id
        self.name = name
        self.fragments: List[str] = []


class StreamState:
    """
    Per-stream parser state: text so far, tool calls being assembled, the last
    finish reason and usage counters seen.

    Methods return the unified event to emit (or None when there is nothing to
    emit) so adapters stay in control of emission order.
    """

    def __init__(self):
        self.text_parts: List[str] = []
        self.finish_reason: Optional[FinishReason] = None
        self.tool_calls: List[ToolCall] = []
        self._pending: Dict[Any, _PendingToolCall] = {}
        self._prompt_tokens: Optional[int] = None
        self._completion_tokens: Optional[int] = None
        self._total_tokens: Optional[int] = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def text_delta(self, text: Optional[str]) -> Optional[TextDelta]:
        if not text:
            return None
        self.text_parts.append(text)
        return TextDelta(text)

    # -- tool calls ----------------------------------------------------------

    def has_tool_call(self, key: Any) -> bool:
        return key in self._pending

    def start_tool_call(self, key: Any, call_id: str, name: str) -> ToolCallStart:
        self._pending[key] = _PendingToolCall(call_id, name)
        return ToolCallStart(call_id, name)

    def append_tool_arguments(self, key: Any, fragment: Optional[str]) -> Optional[ToolCallArgument]:
        pending = self._pending.get(key)
        if pending is None or not fragment:
            return None
        pending.fragments.append(fragment)
        return ToolCallArgument(pending.id, pending.name, fragment)

    def finish_tool_call(self, key: Any, arguments: Any = None) -> Optional[ToolCallEnd]:
        """
        Close a pending tool call.

        Args:
            key: Vendor-specific key the call was started under.
            arguments: Complete arguments when the vendor sends them whole;
                otherwise the accumulated fragments are decoded.
        """
        pending = self._pending.pop(key, None)
        if pending is None:
            return None
        if arguments is None:
            arguments = "".join(pending.fragments)
        decoded = decode_arguments(arguments)
        self.tool_calls.append(ToolCall(pending.id, pending.name, decoded))
        return ToolCallEnd(pending.id, pending.name, decoded)

    def finish_open_tool_calls(self) -> List[ToolCallEnd]:
        return [end for end in (self.finish_tool_call(key) for key in list(self._pending)) if end]

    # -- usage and finish ----------------------------------------------------

    def update_usage(
        self,
        prompt: Optional[int] = None,
        completion: Optional[int] = None,
        total: Optional[int] = None,
    ) -> None:
        """Record the latest counters; unreported counters keep earlier values."""
        if prompt is not None:
            self._prompt_tokens = prompt
        if completion is not None:
            self._completion_tokens = completion
        if total is not None:
            self._total_tokens = total

    @property
    def usage(self) -> Optional[Usage]:
        if self._prompt_tokens is None and self._completion_tokens is None and self._total_tokens is None:
            return None
        return Usage.reconcile(self._prompt_tokens, self._completion_tokens, self._total_tokens)

    def done(self) -> Done:
        return Done(self.usage, self.finish_reason)


def response_events(response: ProviderResponse) -> List[StreamEvent]:
    """Express a complete response as the stream events that would produce it."""
    events: List[StreamEvent] = []
    if response.text:
        events.append(TextDelta(response.text))
    for call in response.tool_calls:
        events.append(ToolCallStart(call.id, call.name))
        if call.arguments:
            events.append(ToolCallArgument(call.id, call.name, encode_arguments(call.arguments)))
        events.append(ToolCallEnd(call.id, call.name, dict(call.arguments)))
    return events


# =============================================================================
# Producer / Consumer Channel
# =============================================================================

class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class EventChannel:
    """
    Bounded single-producer, single-consumer queue of stream events.

    The producer sends events and then exactly one terminal item: a ``Done``
    through ``finish()`` or an exception through ``fail()``. The consumer
    iterates until that terminal item; nothing is delivered after it.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent) -> None:
        if self._closed:
            raise RuntimeError("Cannot send on a finished stream")
        if isinstance(event, Done):
            raise ValueError("Done is delivered through finish()")
        await self._queue.put(event)

    async def finish(self, done: Done) -> None:
        await self._terminate(done)

    async def fail(self, error: BaseException) -> None:
        await self._terminate(_Failure(error))

    async def _terminate(self, item: Any) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(item)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if isinstance(item, _Failure):
                raise item.error
            yield item
            if isinstance(item, Done):
                return


async def run_producer(
    producer: Callable[[Emit], Awaitable[Done]],
    maxsize: int = DEFAULT_CHANNEL_SIZE,
) -> AsyncIterator[StreamEvent]:
    """
    Run ``producer`` as its own task and yield what it emits.

    ``producer`` receives the channel's ``send`` and returns the ``Done``
    event that terminates the stream. Its exceptions surface to the consumer
    as a terminal failure. Closing the consumer (``aclose`` or abandoning the
    iteration) cancels the producer task and waits for it to unwind.
    """
    channel = EventChannel(maxsize)

    async def pump() -> None:
        try:
            done = await producer(channel.send)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await channel.fail(e)
        else:
            await channel.finish(done)

    task = asyncio.ensure_future(pump())
    try:
        async for event in channel:
            yield event
    finally:
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)


async def collect_stream(events: AsyncIterator[StreamEvent]) -> ProviderResponse:
    """
    Fold a stream into one response.

    Text deltas are concatenated in order, completed tool calls collected and
    the ``Done`` payload supplies usage and finish reason.
    """
    parts: List[str] = []
    tool_calls: List[ToolCall] = []
    done: Optional[Done] = None

    async for event in events:
        if isinstance(event, TextDelta):
            parts.append(event.text)
        elif isinstance(event, ToolCallEnd):
            tool_calls.append(ToolCall(event.id, event.name, dict(event.arguments)))
        elif isinstance(event, Done):
            done = event

    finish_reason = done.finish_reason if done is not None else None
    if finish_reason is None:
        finish_reason = FinishReason.TOOL_CALLS if tool_calls else FinishReason.STOP
    return ProviderResponse(
        text="".join(parts),
        usage=done.usage if done is not None else None,
        finish_reason=finish_reason,
        tool_calls=tool_calls,
    )


def emit_all(events: Iterable[Optional[StreamEvent]]) -> List[StreamEvent]:
    """Drop the ``None`` placeholders returned by ``StreamState`` helpers."""
    return [event for event in events if event is not None]
