import json
import logging
from contextlib import aclosing
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..arguments import arguments_to_native
from ..errors import APIError, InvalidInputError
from ..streaming import Emit, MalformedFramePolicy, StreamState, emit_all, iter_frames
from ..types import (
    Done, FinishReason, ImagePart, Message, ProviderRequest, StreamEvent, TextPart,
    ToolCallPart, ToolDefinition, ToolResultPart, Vendor,
)
from .base import BaseLLMProvider

logger = logging.getLogger(__name__)

FINISH_REASONS: Dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "length": FinishReason.LENGTH,
    "safety": FinishReason.CONTENT_FILTER,
    "recitation": FinishReason.CONTENT_FILTER,
    "blocklist": FinishReason.CONTENT_FILTER,
    "prohibited_content": FinishReason.CONTENT_FILTER,
    "spii": FinishReason.CONTENT_FILTER,
    "image_safety": FinishReason.CONTENT_FILTER,
}

# JSON Schema keywords the Gemini function-declaration schema rejects
_UNSUPPORTED_SCHEMA_KEYS = ("$schema", "additionalProperties", "$defs", "definitions")


def _clean_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {k: _clean_schema(v) for k, v in schema.items() if k not in _UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(schema, list):
        return [_clean_schema(item) for item in schema]
    return schema


def _model_path(name: str) -> str:
    return name if name.startswith("models/") else f"models/{name}"


class GeminiProvider(BaseLLMProvider):
    """
    Provider for Google Gemini (Generative Language API).

    The REST surface is consumed stream-first: ``generate_text`` drains
    ``streamGenerateContent``. Unlike the other adapters a malformed frame
    fails the stream.
    """

    vendor = Vendor.GOOGLE
    label = "Google"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    malformed_frames = MalformedFramePolicy.FAIL

    def _missing_key_message(self) -> str:
        return "GEMINI_API_KEY not found (set GEMINI_API_KEY or GOOGLE_API_KEY)"

    def _auth_headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or ""}

    # ==========================================================================
    # Request Translation
    # ==========================================================================

    @staticmethod
    def _convert_messages(messages: Sequence[Message]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        """
        Convert messages to Gemini ``contents``.

        Gemini uses the role "model" for assistant turns. Function responses
        are addressed by function name, which is recovered from the matching
        tool call when the result does not carry one.

        Returns:
            Tuple containing:
            - system_text: Joined system prompt (or None)
            - contents: List of content dicts
        """
        system_parts: List[str] = []
        contents: List[Dict[str, Any]] = []
        call_names: Dict[str, str] = {}

        for msg in messages:
            if msg.role == "system":
                if msg.text:
                    system_parts.append(msg.text)
                continue

            role = "model" if msg.role == "assistant" else "user"
            parts: List[Dict[str, Any]] = []
            for part in msg.parts:
                if isinstance(part, TextPart):
                    if part.text:
                        parts.append({"text": part.text})
                elif isinstance(part, ImagePart):
                    if part.url is not None:
                        parts.append({"fileData": {"mimeType": part.mime_type, "fileUri": part.url}})
                    else:
                        parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.base64()}})
                elif isinstance(part, ToolCallPart):
                    call_names[part.id] = part.name
                    parts.append({
                        "functionCall": {"name": part.name, "args": arguments_to_native(part.arguments)}
                    })
                elif isinstance(part, ToolResultPart):
                    name = part.name or call_names.get(part.call_id)
                    if not name:
                        raise InvalidInputError(f"No function name known for tool result {part.call_id}")
                    response: Dict[str, Any] = {"result": part.payload.to_native()}
                    if part.is_error:
                        response["is_error"] = True
                    parts.append({"functionResponse": {"name": name, "response": response}})

            if not parts:
                continue
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})

        system_text = "\n\n".join(system_parts) if system_parts else None
        return system_text, contents

    @staticmethod
    def _convert_tools(tools: Sequence[ToolDefinition]) -> List[Dict[str, Any]]:
        return [{
            "functionDeclarations": [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": _clean_schema(tool.parameters),
                }
                for tool in tools
            ]
        }]

    def _build_body(self, request: ProviderRequest) -> Dict[str, Any]:
        system_text, contents = self._convert_messages(request.messages)
        body: Dict[str, Any] = {"contents": contents}
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}

        settings = request.settings
        config = {
            "temperature": settings.temperature,
            "maxOutputTokens": settings.max_tokens,
            "topP": settings.top_p,
            "topK": settings.top_k,
            "stopSequences": list(settings.stop_sequences) or None,
        }
        config = {k: v for k, v in config.items() if v is not None}
        if config:
            body["generationConfig"] = config

        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
        return body

    # ==========================================================================
    # Stream Translation
    # ==========================================================================

    def _chunk_events(self, chunk: Any, state: StreamState) -> List[StreamEvent]:
        """
        Translate one ``GenerateContentResponse`` chunk.

        Raises:
            APIError: If the chunk is not an object or carries an error.
        """
        if not isinstance(chunk, dict):
            raise APIError(f"Unexpected Gemini stream frame: {chunk!r}", vendor=self.label)
        if "error" in chunk:
            error = chunk["error"] or {}
            raise APIError(
                f"Gemini stream error: {error.get('message', 'unknown error')}",
                status_code=error.get("code"),
                vendor=self.label,
            )

        usage = chunk.get("usageMetadata")
        if isinstance(usage, dict):
            state.update_usage(
                usage.get("promptTokenCount"),
                usage.get("candidatesTokenCount"),
                usage.get("totalTokenCount"),
            )

        events: List[Optional[StreamEvent]] = []
        candidates = chunk.get("candidates") or []
        for candidate in candidates[:1]:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if "functionCall" in part:
                    call = part["functionCall"] or {}
                    args = call.get("args") or {}
                    key = call.get("id") or f"call_{len(state.tool_calls)}"
                    events.append(state.start_tool_call(key, key, call.get("name", "")))
                    events.append(state.append_tool_arguments(key, json.dumps(args)))
                    events.append(state.finish_tool_call(key, arguments=args))
                elif "text" in part and not part.get("thought"):
                    events.append(state.text_delta(part["text"]))

            if candidate.get("finishReason"):
                state.finish_reason = self.map_finish_reason(FINISH_REASONS, candidate["finishReason"])

        feedback = chunk.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            state.finish_reason = FinishReason.CONTENT_FILTER
        return emit_all(events)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        state = StreamState()
        url = self.build_url(
            f"/{_model_path(self.model.name)}:streamGenerateContent",
            {"alt": "sse", "key": self.api_key or ""},
        )
        async with self._open_stream(url, self._build_body(request), request) as response:
            frames = iter_frames(
                response,
                self.wire_format,
                vendor=self.label,
                malformed=self.malformed_frames,
                cancellation=request.cancellation,
            )
            async with aclosing(frames):
                async for frame in frames:
                    for event in self._chunk_events(frame, state):
                        await emit(event)

        if state.tool_calls and state.finish_reason in (None, FinishReason.STOP):
            state.finish_reason = FinishReason.TOOL_CALLS
        return state.done()

    async def list_models(self) -> List[str]:
        """
        Get models that support ``generateContent``, following pagination.

        Returns:
            List[str]: Model names without the ``models/`` prefix.
        """
        names: List[str] = []
        page_token: Optional[str] = None
        while True:
            query = {"key": self.api_key or "", "pageSize": "1000"}
            if page_token:
                query["pageToken"] = page_token
            response = await self._send("GET", self.build_url("/models", query), headers=self._headers())
            data = self._decode_json(response)
            for model in data.get("models", []):
                if "generateContent" in model.get("supportedGenerationMethods", []):
                    names.append(model.get("name", "").removeprefix("models/"))
            page_token = data.get("nextPageToken")
            if not page_token:
                return names
