"""
Shared chat-completions translation for OpenAI-compatible vendors.

OpenAI, Grok, Azure OpenAI, Replicate and any self-hosted compatible server
speak the same ``/chat/completions`` dialect. Their adapters hold an
``OpenAICompatibleHelper`` and delegate request/response translation to it.
"""
import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

import httpx

from ..arguments import decode_arguments, encode_arguments
from ..errors import APIError, InvalidInputError, UnsupportedOperationError
from ..streaming import (
    Emit, StreamState, WireFormat, detect_wire_format, emit_all, iter_frames, response_events,
)
from ..types import (
    Done, FinishReason, ImagePart, Message, ProviderRequest, ProviderResponse, StreamEvent,
    TextPart, ToolCall, ToolCallPart, ToolDefinition,
)

if TYPE_CHECKING:
    from .base import BaseLLMProvider

logger = logging.getLogger(__name__)

FINISH_REASONS: Dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def convert_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    """
    Convert unified messages to chat-completions format.

    Tool results become one ``role: tool`` message each. Images become
    ``image_url`` parts with a data URI (or the remote URL as-is).

    Args:
        messages (Sequence[Message]): Unified conversation.

    Returns:
        List[Dict[str, Any]]: Messages ready for the request body.
    """
    converted: List[Dict[str, Any]] = []
    for msg in messages:
        results = msg.tool_results
        for result in results:
            content = result.payload.to_text()
            if result.is_error and not content.startswith("Error"):
                content = f"Error: {content}"
            converted.append({"role": "tool", "tool_call_id": result.call_id, "content": content})
        if msg.role == "tool":
            continue

        if msg.role == "assistant":
            entry: Dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            calls = msg.tool_calls
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": encode_arguments(call.arguments)},
                    }
                    for call in calls
                ]
            elif entry["content"] is None:
                entry["content"] = ""
            converted.append(entry)
            continue

        parts = [p for p in msg.parts if isinstance(p, (TextPart, ImagePart))]
        if any(isinstance(p, ToolCallPart) for p in msg.parts):
            raise InvalidInputError(f"Tool calls are only valid in assistant messages, not {msg.role}")
        if not parts and results:
            continue

        # Plain text keeps the simple string form
        if all(isinstance(p, TextPart) for p in parts):
            converted.append({"role": msg.role, "content": msg.text})
            continue

        content_parts: List[Dict[str, Any]] = []
        for part in parts:
            if isinstance(part, TextPart):
                content_parts.append({"type": "text", "text": part.text})
            else:
                content_parts.append({"type": "image_url", "image_url": {"url": part.data_uri()}})
        converted.append({"role": msg.role, "content": content_parts})
    return converted


def convert_tools(tools: Sequence[ToolDefinition]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def _message_text(content: Any) -> str:
    # Some compatible servers return content as a list of typed parts
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") in ("text", "output_text")
        )
    return content or ""


class OpenAICompatibleHelper:
    """
    Chat-completions translation and transport shared by compatible adapters.

    Args:
        provider (BaseLLMProvider): Adapter that owns this helper; supplies the
            model, base URL, credentials and HTTP plumbing.
        path (str): Endpoint path under the base URL.
        query (Mapping, optional): Query items added to every call.
        auth_header (str): Header carrying the credential.
        auth_prefix (str): Prefix placed before the credential.
        stream_usage (bool): Ask for a trailing usage chunk when streaming.
        max_tokens_field (str): Body field for the output token limit.
        send_top_k (bool): Whether the server accepts ``top_k``.
        models_path (str, optional): Model listing path, None if unsupported.
    """

    def __init__(
        self,
        provider: "BaseLLMProvider",
        *,
        path: str = "/chat/completions",
        query: Optional[Mapping[str, str]] = None,
        auth_header: str = "Authorization",
        auth_prefix: str = "Bearer ",
        stream_usage: bool = True,
        max_tokens_field: str = "max_tokens",
        send_top_k: bool = False,
        models_path: Optional[str] = "/models",
    ):
        self.provider = provider
        self.path = path
        self.query = dict(query or {})
        self.auth_header = auth_header
        self.auth_prefix = auth_prefix
        self.stream_usage = stream_usage
        self.max_tokens_field = max_tokens_field
        self.send_top_k = send_top_k
        self.models_path = models_path

    @property
    def label(self) -> str:
        return self.provider.label

    def auth_headers(self, credential: Optional[str]) -> Dict[str, str]:
        if not credential:
            return {}
        return {self.auth_header: f"{self.auth_prefix}{credential}"}

    def endpoint(self) -> httpx.URL:
        return self.provider.build_url(self.path, self.query)

    # ==========================================================================
    # Request Translation
    # ==========================================================================

    def build_body(self, request: ProviderRequest, *, stream: bool) -> Dict[str, Any]:
        settings = request.settings
        body: Dict[str, Any] = {
            "model": self.provider.model.name,
            "messages": convert_messages(request.messages),
        }

        optional_params = {
            "temperature": settings.temperature,
            self.max_tokens_field: settings.max_tokens,
            "top_p": settings.top_p,
            "top_k": settings.top_k if self.send_top_k else None,
            "stop": list(settings.stop_sequences) or None,
        }
        body.update({k: v for k, v in optional_params.items() if v is not None})

        if request.tools:
            body["tools"] = convert_tools(request.tools)
        if stream:
            body["stream"] = True
            if self.stream_usage:
                body["stream_options"] = {"include_usage": True}
        return body

    # ==========================================================================
    # Response Translation
    # ==========================================================================

    def parse_response(self, payload: Any) -> ProviderResponse:
        """
        Convert a chat-completions response body.

        Raises:
            APIError: If the body has no choices.
        """
        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not choices:
            raise APIError(f"{self.label} response contained no choices", vendor=self.label)

        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls = []
        for index, call in enumerate(message.get("tool_calls") or []):
            function = call.get("function") or {}
            tool_calls.append(ToolCall(
                id=call.get("id") or f"call_{index}",
                name=function.get("name", ""),
                arguments=decode_arguments(function.get("arguments")),
            ))

        usage = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict):
            usage = self.provider.normalize_usage(
                input_tokens=raw_usage.get("prompt_tokens"),
                output_tokens=raw_usage.get("completion_tokens"),
                total_tokens=raw_usage.get("total_tokens"),
            )

        finish_reason = self.provider.map_finish_reason(FINISH_REASONS, choice.get("finish_reason"))
        if finish_reason is None:
            finish_reason = FinishReason.TOOL_CALLS if tool_calls else FinishReason.STOP
        return ProviderResponse(
            text=_message_text(message.get("content")),
            usage=usage,
            finish_reason=finish_reason,
            tool_calls=tool_calls,
        )

    def chunk_events(self, chunk: Any, state: StreamState) -> List[StreamEvent]:
        """
        Translate one ``chat.completion.chunk`` into unified events.

        Raises:
            APIError: If the server reports an error inside the stream.
        """
        if not isinstance(chunk, dict):
            return []
        error = chunk.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise APIError(f"{self.label} stream error: {message}", vendor=self.label)

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            state.update_usage(
                usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")
            )

        events = []
        for choice in chunk.get("choices") or []:
            if choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}
            events.append(state.text_delta(_message_text(delta.get("content"))))

            for call in delta.get("tool_calls") or []:
                key = call.get("index", 0)
                function = call.get("function") or {}
                if not state.has_tool_call(key):
                    events.append(state.start_tool_call(
                        key, call.get("id") or f"call_{key}", function.get("name", "")
                    ))
                events.append(state.append_tool_arguments(key, function.get("arguments")))

            reason = choice.get("finish_reason")
            if reason:
                state.finish_reason = self.provider.map_finish_reason(FINISH_REASONS, reason)
                events.extend(state.finish_open_tool_calls())
        return emit_all(events)

    # ==========================================================================
    # Calls
    # ==========================================================================

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        payload = await self.provider._post_json(
            self.endpoint(), self.build_body(request, stream=False), request
        )
        return self.parse_response(payload)

    async def stream(self, request: ProviderRequest, emit: Emit) -> Done:
        state = StreamState()
        body = self.build_body(request, stream=True)
        async with self.provider._open_stream(self.endpoint(), body, request) as response:
            wire = detect_wire_format(response, WireFormat.SSE)
            frames = iter_frames(
                response,
                wire,
                vendor=self.label,
                malformed=self.provider.malformed_frames,
                cancellation=request.cancellation,
            )
            async with aclosing(frames):
                async for frame in frames:
                    if wire is WireFormat.BUFFERED:
                        logger.debug("%s answered a streaming call with a single JSON body", self.label)
                        parsed = self.parse_response(frame)
                        for event in response_events(parsed):
                            await emit(event)
                        return Done(parsed.usage, parsed.finish_reason)
                    for event in self.chunk_events(frame, state):
                        await emit(event)

        for end in state.finish_open_tool_calls():
            await emit(end)
        return state.done()

    async def list_models(self) -> List[str]:
        if self.models_path is None:
            raise UnsupportedOperationError(f"{self.label} does not support listing models")
        url = self.provider.build_url(self.models_path, self.query)
        response = await self.provider._send("GET", url, headers=self.provider._headers())
        data = self.provider._decode_json(response)
        entries = data.get("data", []) if isinstance(data, dict) else []
        return [entry["id"] for entry in entries if isinstance(entry, dict) and "id" in entry]
