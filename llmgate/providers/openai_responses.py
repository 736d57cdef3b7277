"""
OpenAI Responses API adapter (``POST /responses``).

Used for models that are only served through the Responses API and whenever a
caller opts into it explicitly.
"""
import logging
from contextlib import aclosing
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..arguments import decode_arguments, encode_arguments
from ..errors import APIError
from ..streaming import Emit, StreamState, emit_all, iter_frames
from ..types import (
    Done, FinishReason, ImagePart, Message, ProviderRequest, ProviderResponse, StreamEvent,
    TextPart, ToolCall, ToolDefinition, Vendor,
)
from .base import BaseLLMProvider
from .openai_compatible import OpenAICompatibleHelper

logger = logging.getLogger(__name__)

INCOMPLETE_REASONS: Dict[str, FinishReason] = {
    "max_output_tokens": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def convert_input(messages: Sequence[Message]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """
    Convert unified messages to Responses ``input`` items.

    Tool calls and tool results are standalone ``function_call`` and
    ``function_call_output`` items rather than message content.

    Returns:
        Tuple containing:
        - instructions: Joined system prompt (or None)
        - items: Input items for the request body
    """
    instructions: List[str] = []
    items: List[Dict[str, Any]] = []

    for msg in messages:
        if msg.role == "system":
            if msg.text:
                instructions.append(msg.text)
            continue

        content: List[Dict[str, Any]] = []
        text_type = "output_text" if msg.role == "assistant" else "input_text"
        for part in msg.parts:
            if isinstance(part, TextPart) and part.text:
                content.append({"type": text_type, "text": part.text})
            elif isinstance(part, ImagePart):
                content.append({"type": "input_image", "image_url": part.data_uri()})
        if content and msg.role != "tool":
            items.append({"role": "assistant" if msg.role == "assistant" else "user", "content": content})

        for call in msg.tool_calls:
            items.append({
                "type": "function_call",
                "call_id": call.id,
                "name": call.name,
                "arguments": encode_arguments(call.arguments),
            })
        for result in msg.tool_results:
            items.append({
                "type": "function_call_output",
                "call_id": result.call_id,
                "output": result.payload.to_text(),
            })

    return ("\n\n".join(instructions) if instructions else None), items


def convert_tools(tools: Sequence[ToolDefinition]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        }
        for tool in tools
    ]


class OpenAIResponsesProvider(BaseLLMProvider):
    """Provider for the OpenAI Responses API. Malformed stream frames are skipped."""

    vendor = Vendor.OPENAI
    label = "OpenAI Responses"
    default_base_url = "https://api.openai.com/v1"

    def __init__(self, model, configuration=None, **kwargs):
        super().__init__(model, configuration, **kwargs)
        self.organization: Optional[str] = self.configuration.get_setting("OPENAI_ORG_ID")
        # Reused for auth headers and model listing only
        self._chat = OpenAICompatibleHelper(self)

    def _auth_headers(self) -> Dict[str, str]:
        return self._chat.auth_headers(self.api_key)

    def _extra_headers(self) -> Dict[str, str]:
        if self.organization:
            return {"OpenAI-Organization": self.organization}
        return {}

    def _build_body(self, request: ProviderRequest, *, stream: bool) -> Dict[str, Any]:
        instructions, items = convert_input(request.messages)
        settings = request.settings
        body: Dict[str, Any] = {"model": self.model.name, "input": items, "store": False}

        optional_params = {
            "instructions": instructions,
            "max_output_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
        }
        body.update({k: v for k, v in optional_params.items() if v is not None})
        if request.tools:
            body["tools"] = convert_tools(request.tools)
        if stream:
            body["stream"] = True
        return body

    # ==========================================================================
    # Response Translation
    # ==========================================================================

    def _finish_reason(self, payload: Dict[str, Any], has_tool_calls: bool) -> FinishReason:
        status = payload.get("status")
        if status == "incomplete":
            reason = (payload.get("incomplete_details") or {}).get("reason")
            return self.map_finish_reason(INCOMPLETE_REASONS, reason) or FinishReason.OTHER
        if status in (None, "completed"):
            return FinishReason.TOOL_CALLS if has_tool_calls else FinishReason.STOP
        return FinishReason.OTHER

    def _usage(self, payload: Dict[str, Any]):
        usage = payload.get("usage") or {}
        return self.normalize_usage(
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
            total_tokens=usage.get("total_tokens"),
        )

    def _check_failed(self, payload: Dict[str, Any]) -> None:
        if payload.get("status") == "failed" or payload.get("error"):
            error = payload.get("error") or {}
            raise APIError(
                f"OpenAI response failed: {error.get('message', 'unknown error')}",
                vendor=self.label,
            )

    def _parse_response(self, payload: Any) -> ProviderResponse:
        if not isinstance(payload, dict):
            raise APIError("OpenAI response is not an object", vendor=self.label)
        self._check_failed(payload)

        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for item in payload.get("output") or []:
            if item.get("type") == "message":
                for content in item.get("content") or []:
                    if content.get("type") == "output_text":
                        texts.append(content.get("text", ""))
            elif item.get("type") == "function_call":
                tool_calls.append(ToolCall(
                    id=item.get("call_id") or item.get("id", ""),
                    name=item.get("name", ""),
                    arguments=decode_arguments(item.get("arguments")),
                ))

        return ProviderResponse(
            text="".join(texts),
            usage=self._usage(payload),
            finish_reason=self._finish_reason(payload, bool(tool_calls)),
            tool_calls=tool_calls,
        )

    def _event_events(self, event: Any, state: StreamState) -> List[StreamEvent]:
        if not isinstance(event, dict):
            return []
        event_type = event.get("type", "")
        events: List[Optional[StreamEvent]] = []

        if event_type == "response.output_text.delta":
            events.append(state.text_delta(event.get("delta")))
        elif event_type == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                key = item.get("id") or item.get("call_id")
                events.append(state.start_tool_call(key, item.get("call_id") or key, item.get("name", "")))
        elif event_type == "response.function_call_arguments.delta":
            events.append(state.append_tool_arguments(event.get("item_id"), event.get("delta")))
        elif event_type == "response.function_call_arguments.done":
            events.append(state.finish_tool_call(event.get("item_id"), arguments=event.get("arguments")))
        elif event_type == "response.output_item.done":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                key = item.get("id") or item.get("call_id")
                events.append(state.finish_tool_call(key, arguments=item.get("arguments")))
        elif event_type in ("response.completed", "response.incomplete", "response.failed"):
            payload = event.get("response") or {}
            self._check_failed(payload)
            usage = payload.get("usage") or {}
            state.update_usage(usage.get("input_tokens"), usage.get("output_tokens"), usage.get("total_tokens"))
            events.extend(state.finish_open_tool_calls())
            state.finish_reason = self._finish_reason(payload, bool(state.tool_calls))
        elif event_type == "error":
            raise APIError(f"OpenAI stream error: {event.get('message', 'unknown error')}", vendor=self.label)
        return emit_all(events)

    # ==========================================================================
    # Calls
    # ==========================================================================

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        payload = await self._post_json(
            self.build_url("/responses"), self._build_body(request, stream=False), request
        )
        return self._parse_response(payload)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        state = StreamState()
        url = self.build_url("/responses")
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
                    if state.finish_reason is not None:
                        break

        for end in state.finish_open_tool_calls():
            await emit(end)
        return state.done()

    async def list_models(self) -> List[str]:
        return await self._chat.list_models()
