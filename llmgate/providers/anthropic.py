import logging
from contextlib import aclosing
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..arguments import arguments_from_native, arguments_to_native
from ..errors import APIError, InvalidInputError
from ..streaming import Emit, StreamState, emit_all, iter_frames
from ..types import (
    Done, FinishReason, ImagePart, Message, ProviderRequest, ProviderResponse, StreamEvent,
    TextPart, ToolCall, ToolCallPart, ToolDefinition, ToolResultPart, Vendor,
)
from .base import BaseLLMProvider

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

STOP_REASONS: Dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}


class AnthropicProvider(BaseLLMProvider):
    """
    Provider for the Anthropic Messages API.

    Malformed stream frames are skipped; an ``error`` event ends the stream
    with ``APIError``.
    """

    vendor = Vendor.ANTHROPIC
    label = "Anthropic"
    default_base_url = "https://api.anthropic.com"

    def _auth_headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key or ""}

    def _extra_headers(self) -> Dict[str, str]:
        return {"anthropic-version": ANTHROPIC_VERSION}

    # ==========================================================================
    # Request Translation
    # ==========================================================================

    @staticmethod
    def _convert_messages(messages: Sequence[Message]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        """
        Convert messages to Claude format.

        System messages are returned separately since the Messages API takes
        the system prompt as a top-level field. Tool results travel as
        ``tool_result`` blocks inside a user turn, and consecutive turns with
        the same role are merged.

        Args:
            messages (Sequence[Message]): Unified conversation.

        Returns:
            Tuple containing:
            - system_text: Joined system prompt (or None)
            - converted: List of message dicts suitable for the API
        """
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                if msg.text:
                    system_parts.append(msg.text)
                continue

            role = "assistant" if msg.role == "assistant" else "user"
            blocks = [AnthropicProvider._convert_part(part, role) for part in msg.parts]
            blocks = [block for block in blocks if block is not None]
            if not blocks:
                continue

            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        # Single text blocks keep the simple string form
        for entry in converted:
            content = entry["content"]
            if len(content) == 1 and content[0]["type"] == "text":
                entry["content"] = content[0]["text"]

        system_text = "\n\n".join(system_parts) if system_parts else None
        return system_text, converted

    @staticmethod
    def _convert_part(part: Any, role: str) -> Optional[Dict[str, Any]]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text} if part.text else None
        if isinstance(part, ImagePart):
            if part.url is not None:
                return {"type": "image", "source": {"type": "url", "url": part.url}}
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": part.mime_type, "data": part.base64()},
            }
        if isinstance(part, ToolCallPart):
            if role != "assistant":
                raise InvalidInputError("Tool calls are only valid in assistant messages")
            return {
                "type": "tool_use",
                "id": part.id,
                "name": part.name,
                "input": arguments_to_native(part.arguments),
            }
        if isinstance(part, ToolResultPart):
            block: Dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.call_id,
                "content": part.payload.to_text(),
            }
            if part.is_error:
                block["is_error"] = True
            return block
        raise InvalidInputError(f"Unsupported content part: {type(part).__name__}")

    @staticmethod
    def _convert_tools(tools: Sequence[ToolDefinition]) -> List[Dict[str, Any]]:
        """Claude uses 'input_schema' instead of 'parameters'."""
        return [
            {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}
            for tool in tools
        ]

    def _build_body(self, request: ProviderRequest, *, stream: bool) -> Dict[str, Any]:
        system_text, messages = self._convert_messages(request.messages)
        settings = request.settings
        body: Dict[str, Any] = {
            "model": self.model.name,
            "messages": messages,
            "max_tokens": settings.max_tokens or min(DEFAULT_MAX_TOKENS, self.model.capabilities.max_output_tokens),
        }

        optional_params = {
            "system": system_text,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "top_k": settings.top_k,
            "stop_sequences": list(settings.stop_sequences) or None,
        }
        body.update({k: v for k, v in optional_params.items() if v is not None})

        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
        if stream:
            body["stream"] = True
        return body

    # ==========================================================================
    # Response Translation
    # ==========================================================================

    def _parse_response(self, payload: Any) -> ProviderResponse:
        if not isinstance(payload, dict):
            raise APIError("Anthropic response is not an object", vendor=self.label)

        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in payload.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                texts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=arguments_from_native(block.get("input") or {}),
                ))

        raw_usage = payload.get("usage") or {}
        usage = self.normalize_usage(
            input_tokens=raw_usage.get("input_tokens"),
            output_tokens=raw_usage.get("output_tokens"),
        )
        finish_reason = self.map_finish_reason(STOP_REASONS, payload.get("stop_reason"))
        return ProviderResponse(
            text="".join(texts),
            usage=usage,
            finish_reason=finish_reason or FinishReason.STOP,
            tool_calls=tool_calls,
        )

    def _event_events(self, event: Any, state: StreamState) -> List[StreamEvent]:
        """
        Translate one Messages API stream event.

        Raises:
            APIError: On an ``error`` event.
        """
        if not isinstance(event, dict):
            return []
        event_type = event.get("type")
        index = event.get("index", 0)
        events: List[Optional[StreamEvent]] = []

        if event_type == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            state.update_usage(usage.get("input_tokens"), usage.get("output_tokens"))
        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                events.append(state.start_tool_call(index, block.get("id", ""), block.get("name", "")))
            elif block.get("type") == "text":
                events.append(state.text_delta(block.get("text")))
        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                events.append(state.text_delta(delta.get("text")))
            elif delta.get("type") == "input_json_delta":
                events.append(state.append_tool_arguments(index, delta.get("partial_json")))
        elif event_type == "content_block_stop":
            events.append(state.finish_tool_call(index))
        elif event_type == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                state.finish_reason = self.map_finish_reason(STOP_REASONS, delta["stop_reason"])
            usage = event.get("usage") or {}
            state.update_usage(usage.get("input_tokens"), usage.get("output_tokens"))
        elif event_type == "error":
            error = event.get("error") or {}
            # overloaded_error corresponds to HTTP 529
            status = 529 if error.get("type") == "overloaded_error" else None
            raise APIError(
                f"Anthropic stream error: {error.get('message', 'unknown error')}",
                status_code=status,
                vendor=self.label,
            )
        return emit_all(events)

    # ==========================================================================
    # Calls
    # ==========================================================================

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """
        Send a chat request to the Messages API.

        Args:
            request (ProviderRequest): Unified request.

        Returns:
            ProviderResponse: Text, usage, stop reason and tool calls.
        """
        payload = await self._post_json(
            self.build_url("/v1/messages"), self._build_body(request, stream=False), request
        )
        return self._parse_response(payload)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        state = StreamState()
        url = self.build_url("/v1/messages")
        async with self._open_stream(url, self._build_body(request, stream=True), request) as response:
            frames = iter_frames(
                response,
                self.wire_format,
                vendor=self.label,
                malformed=self.malformed_frames,
                cancellation=request.cancellation,
            )
            async with aclosing(frames):
                async for frame in frames:
                    for event in self._event_events(frame, state):
                        await emit(event)
                    if isinstance(frame, dict) and frame.get("type") == "message_stop":
                        break

        for end in state.finish_open_tool_calls():
            await emit(end)
        return state.done()

    async def list_models(self) -> List[str]:
        response = await self._send("GET", self.build_url("/v1/models"), headers=self._headers())
        data = self._decode_json(response)
        return [m["id"] for m in data.get("data", []) if isinstance(m, dict) and "id" in m]
