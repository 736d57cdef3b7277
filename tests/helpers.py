import asyncio
import json
from typing import Any, Callable, List, Optional, Union

import httpx

Reply = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def json_response(payload: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def sse_response(*frames: Any, done: bool = True) -> httpx.Response:
    """Server-Sent Events body; dict frames are JSON-encoded, strings sent as-is."""
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content="".join(lines).encode(),
    )


def trickle_response(*frames: Any, delay: float = 0.01) -> httpx.Response:
    """SSE body delivered one frame per chunk with a pause between chunks."""

    async def chunks():
        for frame in frames:
            yield f"data: {json.dumps(frame)}\n\n".encode()
            await asyncio.sleep(delay)

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=chunks())


def ndjson_response(*lines: Any) -> httpx.Response:
    body = "".join(json.dumps(line) + "\n" for line in lines)
    return httpx.Response(200, headers={"content-type": "application/x-ndjson"}, content=body.encode())


class Recorder:
    """
    Replays canned responses through ``httpx.MockTransport`` and keeps every
    request it saw.
    """

    def __init__(self, *replies: Reply):
        self.replies: List[Reply] = list(replies)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        reply = self.replies.pop(0)
        if callable(reply) and not isinstance(reply, httpx.Response):
            return reply(request)
        return reply

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def body(self, index: int = -1) -> Optional[dict]:
        content = self.requests[index].content
        return json.loads(content) if content else None


async def collect(events) -> list:
    return [event async for event in events]
