import json
import logging
from contextlib import aclosing
from typing import Any, Dict, List, Optional, Sequence

from ..arguments import arguments_from_native, arguments_to_native
from ..errors import APIError, InvalidInputError, LLMGateError, ModelNotFoundError, error_from_response
from ..streaming import Emit, StreamState, WireFormat, emit_all, iter_frames
from ..types import (
    Done, FinishReason, ImagePart, Message, ProviderRequest, ProviderResponse, StreamEvent,
    ToolCall, ToolCallPart, ToolResultPart, Vendor,
)
from .base import BaseLLMProvider
from .openai_compatible import convert_tools

logger = logging.getLogger(__name__)

DONE_REASONS: Dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
}


class OllamaProvider(BaseLLMProvider):
    """
    Provider for a local or remote Ollama server (``/api/chat``).

    Streams newline-delimited JSON. No API key is required; when one is
    configured it is sent as a bearer token. Malformed lines are skipped.
    """

    vendor = Vendor.OLLAMA
    label = "Ollama"
    default_base_url = "http://localhost:11434"
    requires_api_key = False
    wire_format = WireFormat.NDJSON
    stream_accept = "application/x-ndjson"

    def _status_error(self, status_code: int, body: str) -> LLMGateError:
        if status_code == 404:
            return ModelNotFoundError(self.model.name)
        return error_from_response(self.label, status_code, body)

    @staticmethod
    def _convert_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            for result in msg.tool_results:
                entry = {"role": "tool", "content": result.payload.to_text()}
                if result.name:
                    entry["tool_name"] = result.name
                converted.append(entry)
            if msg.role == "tool":
                continue

            images = []
            for part in msg.parts:
                if isinstance(part, ImagePart):
                    if part.url is not None:
                        raise InvalidInputError("Ollama only accepts inline image data, not URLs")
                    images.append(part.base64())

            parts = [p for p in msg.parts if not isinstance(p, ToolResultPart)]
            if not parts:
                continue
            entry: Dict[str, Any] = {"role": msg.role, "content": msg.text}
            if images:
                entry["images"] = images
            calls = [p for p in parts if isinstance(p, ToolCallPart)]
            if calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": arguments_to_native(call.arguments)}}
                    for call in calls
                ]
            converted.append(entry)
        return converted

    def _build_body(self, request: ProviderRequest, *, stream: bool) -> Dict[str, Any]:
        settings = request.settings
        body: Dict[str, Any] = {
            "model": self.model.name,
            "messages": self._convert_messages(request.messages),
            "stream": stream,
        }
        options = {
            "temperature": settings.temperature,
            "num_predict": settings.max_tokens,
            "top_p": settings.top_p,
            "top_k": settings.top_k,
            "stop": list(settings.stop_sequences) or None,
        }
        options = {k: v for k, v in options.items() if v is not None}
        if options:
            body["options"] = options
        if request.tools:
            body["tools"] = convert_tools(request.tools)
        return body

    @staticmethod
    def _tool_calls(message: Dict[str, Any], offset: int = 0) -> List[ToolCall]:
        calls = []
        for index, call in enumerate(message.get("tool_calls") or [], start=offset):
            function = call.get("function") or {}
            calls.append(ToolCall(
                id=call.get("id") or f"call_{index}",
                name=function.get("name", ""),
                arguments=arguments_from_native(function.get("arguments") or {}),
            ))
        return calls

    def _finish_reason(self, done_reason: Optional[str], has_tool_calls: bool) -> FinishReason:
        reason = self.map_finish_reason(DONE_REASONS, done_reason) or FinishReason.STOP
        if has_tool_calls and reason is FinishReason.STOP:
            return FinishReason.TOOL_CALLS
        return reason

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        payload = await self._post_json(
            self.build_url("/api/chat"), self._build_body(request, stream=False), request
        )
        if not isinstance(payload, dict):
            raise APIError("Ollama response is not an object", vendor=self.label)
        if payload.get("error"):
            raise APIError(f"Ollama error: {payload['error']}", vendor=self.label)

        message = payload.get("message") or {}
        tool_calls = self._tool_calls(message)
        return ProviderResponse(
            text=message.get("content") or "",
            usage=self.normalize_usage(
                input_tokens=payload.get("prompt_eval_count"),
                output_tokens=payload.get("eval_count"),
            ),
            finish_reason=self._finish_reason(payload.get("done_reason"), bool(tool_calls)),
            tool_calls=tool_calls,
        )

    def _line_events(self, line: Any, state: StreamState) -> List[StreamEvent]:
        if not isinstance(line, dict):
            return []
        if line.get("error"):
            raise APIError(f"Ollama stream error: {line['error']}", vendor=self.label)

        message = line.get("message") or {}
        events: List[Optional[StreamEvent]] = [state.text_delta(message.get("content"))]
        # Ollama sends each tool call complete, in a single line
        for call in self._tool_calls(message, offset=len(state.tool_calls)):
            events.append(state.start_tool_call(call.id, call.id, call.name))
            events.append(state.append_tool_arguments(
                call.id, json.dumps(arguments_to_native(call.arguments))
            ))
            events.append(state.finish_tool_call(call.id, arguments=arguments_to_native(call.arguments)))

        if line.get("done"):
            state.update_usage(line.get("prompt_eval_count"), line.get("eval_count"))
            state.finish_reason = self._finish_reason(line.get("done_reason"), bool(state.tool_calls))
        return emit_all(events)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        state = StreamState()
        url = self.build_url("/api/chat")
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
                    for event in self._line_events(frame, state):
                        await emit(event)
                    if isinstance(frame, dict) and frame.get("done"):
                        break
        return state.done()

    async def list_models(self) -> List[str]:
        response = await self._send("GET", self.build_url("/api/tags"), headers=self._headers())
        data = self._decode_json(response)
        return [m["name"] for m in data.get("models", []) if isinstance(m, dict) and "name" in m]
