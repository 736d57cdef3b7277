import httpx
import pytest

from helpers import Recorder, collect, json_response, ndjson_response, sse_response, trickle_response
from llmgate.arguments import Argument
from llmgate.cancellation import CancellationToken
from llmgate.config import Configuration
from llmgate.errors import (
    APIError, AuthenticationError, InvalidConfigurationError, InvalidInputError, NetworkError,
    ModelNotFoundError, RequestCancelledError, UnsupportedOperationError,
)
from llmgate.providers import (
    AnthropicProvider, AzureOpenAIProvider, GeminiProvider, GrokProvider, OllamaProvider,
    OpenAICompatibleProvider, OpenAIProvider, OpenAIResponsesProvider, ReplicateProvider,
    create_provider,
)
from llmgate.streaming import collect_stream
from llmgate.types import (
    Done, FinishReason, GenerationSettings, ImagePart, Message, ProviderRequest, TextDelta,
    ToolCall, ToolCallArgument, ToolCallEnd, ToolCallStart, ToolDefinition, Usage, Vendor,
)

WEATHER_TOOL = ToolDefinition(
    name="get_weather",
    description="Current weather for a city",
    parameters={"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
)


def chat_request(*messages, **settings) -> ProviderRequest:
    return ProviderRequest(list(messages) or [Message.user("hi")], GenerationSettings(**settings))


def openai_completion(text="Hello", tool_calls=None, finish_reason="stop"):
    message = {"role": "assistant", "content": text}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def openai_chunk(content=None, finish_reason=None, tool_calls=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


# =============================================================================
# OpenAI (Chat Completions)
# =============================================================================

class TestOpenAIProvider:

    @pytest.mark.asyncio
    async def test_generate_text(self, config):
        recorder = Recorder(json_response(openai_completion()))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)

        response = await provider.generate_text(chat_request(Message.system("Be brief."), Message.user("hi"), temperature=0.2))

        assert response.text == "Hello"
        assert response.usage == Usage(10, 5)
        assert response.finish_reason is FinishReason.STOP
        request = recorder.last
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test-openai"
        body = recorder.body()
        assert body["model"] == "gpt-4o"
        assert body["temperature"] == 0.2
        assert "max_tokens" not in body
        assert body["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
        ]

    @pytest.mark.asyncio
    async def test_stream_text(self, config):
        recorder = Recorder(sse_response(
            openai_chunk("Hel"),
            openai_chunk("lo"),
            openai_chunk(finish_reason="stop"),
            {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}},
        ))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)

        events = await collect(provider.stream_text(chat_request()))

        assert events == [TextDelta("Hel"), TextDelta("lo"), Done(Usage(10, 5), FinishReason.STOP)]
        body = recorder.body()
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert recorder.last.headers["accept"] == "text/event-stream"

    @pytest.mark.asyncio
    async def test_streamed_tool_call(self, config):
        recorder = Recorder(sse_response(
            openai_chunk(tool_calls=[{"index": 0, "id": "call_abc", "function": {"name": "get_weather", "arguments": ""}}]),
            openai_chunk(tool_calls=[{"index": 0, "function": {"arguments": '{"city":'}}]),
            openai_chunk(tool_calls=[{"index": 0, "function": {"arguments": ' "Paris"}'}}]),
            openai_chunk(finish_reason="tool_calls"),
        ))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        request = ProviderRequest([Message.user("Weather in Paris?")], tools=[WEATHER_TOOL])

        events = await collect(provider.stream_text(request))

        assert events == [
            ToolCallStart("call_abc", "get_weather"),
            ToolCallArgument("call_abc", "get_weather", '{"city":'),
            ToolCallArgument("call_abc", "get_weather", ' "Paris"}'),
            ToolCallEnd("call_abc", "get_weather", {"city": Argument.string("Paris")}),
            Done(None, FinishReason.TOOL_CALLS),
        ]
        assert recorder.body()["tools"][0]["function"]["name"] == "get_weather"

    @pytest.mark.asyncio
    async def test_generate_and_stream_agree(self, config):
        tool_calls = [{"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": '{"city": "Oslo"}'}}]
        recorder = Recorder(
            json_response(openai_completion("Let me check.", tool_calls, "tool_calls")),
            sse_response(
                openai_chunk("Let me "),
                openai_chunk("check."),
                openai_chunk(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "get_weather", "arguments": '{"city": "Oslo"}'}}]),
                openai_chunk(finish_reason="tool_calls"),
                {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}},
            ),
        )
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        unary = await provider.generate_text(chat_request())

        streamed = await collect_stream(provider.stream_text(chat_request()))

        assert streamed == unary

    @pytest.mark.asyncio
    async def test_tool_round_trip_messages(self, config):
        recorder = Recorder(json_response(openai_completion("It is sunny.")))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        call = ToolCall("call_1", "get_weather", {"city": Argument.string("Paris")})

        await provider.generate_text(chat_request(
            Message.user("Weather?"),
            Message.assistant("", [call]),
            Message.tool_result("call_1", {"sky": "sunny"}),
        ))

        messages = recorder.body()["messages"]
        assert messages[1]["tool_calls"][0]["function"] == {"name": "get_weather", "arguments": '{"city": "Paris"}'}
        assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": '{"sky": "sunny"}'}

    @pytest.mark.asyncio
    async def test_image_content(self, config):
        recorder = Recorder(json_response(openai_completion()))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)

        await provider.generate_text(chat_request(Message.user("What is this?", ImagePart(data=b"hi", mime_type="image/png"))))

        content = recorder.body()["messages"][0]["content"]
        assert content[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,aGk="}}

    @pytest.mark.asyncio
    async def test_reasoning_models_use_max_completion_tokens(self, config):
        recorder = Recorder(json_response(openai_completion()))
        provider = OpenAIProvider("o3-mini", config, transport=recorder.transport)
        await provider.generate_text(chat_request(max_tokens=100))
        body = recorder.body()
        assert body["max_completion_tokens"] == 100
        assert "max_tokens" not in body

    def test_missing_key_fails_at_construction(self, empty_config):
        with pytest.raises(AuthenticationError, match="OPENAI_API_KEY"):
            OpenAIProvider("gpt-4o", empty_config)

    def test_invalid_base_url(self, config):
        with pytest.raises(InvalidConfigurationError):
            OpenAIProvider("gpt-4o", config, base_url="not a url")

    @pytest.mark.asyncio
    async def test_http_error_maps_to_api_error(self, config):
        recorder = Recorder(json_response({"error": {"message": "Rate limit reached"}}, 429))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        with pytest.raises(APIError) as excinfo:
            await provider.generate_text(chat_request())
        assert excinfo.value.status_code == 429
        assert excinfo.value.is_retryable
        assert "Rate limit reached" in excinfo.value.detail

    @pytest.mark.asyncio
    async def test_stream_http_error(self, config):
        recorder = Recorder(json_response({"error": {"message": "bad model"}}, 404))
        provider = OpenAIProvider("gpt-9", config, transport=recorder.transport)
        with pytest.raises(APIError, match="bad model"):
            await collect(provider.stream_text(chat_request()))

    @pytest.mark.asyncio
    async def test_transport_failure_maps_to_network_error(self, config):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = OpenAIProvider("gpt-4o", config, transport=httpx.MockTransport(refuse))
        with pytest.raises(NetworkError):
            await provider.generate_text(chat_request())
        with pytest.raises(NetworkError):
            await collect(provider.stream_text(chat_request()))

    @pytest.mark.asyncio
    async def test_cancelled_request_is_not_sent(self, config):
        recorder = Recorder()
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        token = CancellationToken()
        token.cancel("changed my mind")
        request = ProviderRequest([Message.user("hi")], cancellation=token)

        with pytest.raises(RequestCancelledError):
            await provider.generate_text(request)
        with pytest.raises(RequestCancelledError):
            await collect(provider.stream_text(request))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, config):
        token = CancellationToken()
        recorder = Recorder(trickle_response(openai_chunk("a"), openai_chunk("b"), openai_chunk(finish_reason="stop")))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        request = ProviderRequest([Message.user("hi")], cancellation=token)

        seen = []
        with pytest.raises(RequestCancelledError):
            async for event in provider.stream_text(request):
                seen.append(event)
                token.cancel()
        assert all(not isinstance(event, Done) for event in seen)

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self, config):
        recorder = Recorder(sse_response("{not json", openai_chunk("ok"), openai_chunk(finish_reason="stop")))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        events = await collect(provider.stream_text(chat_request()))
        assert events[0] == TextDelta("ok")
        assert isinstance(events[-1], Done)

    @pytest.mark.asyncio
    async def test_error_inside_stream(self, config):
        recorder = Recorder(sse_response(openai_chunk("a"), {"error": {"message": "server overloaded"}}))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        with pytest.raises(APIError, match="server overloaded"):
            await collect(provider.stream_text(chat_request()))

    @pytest.mark.asyncio
    async def test_buffered_answer_to_stream_call(self, config):
        recorder = Recorder(json_response(openai_completion("whole answer")))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        events = await collect(provider.stream_text(chat_request()))
        assert events == [TextDelta("whole answer"), Done(Usage(10, 5), FinishReason.STOP)]

    @pytest.mark.asyncio
    async def test_organization_header(self):
        config = Configuration(
            api_keys={"openai": "sk"}, settings={"OPENAI_ORG_ID": "org-123"},
            env_file=None, use_environment=False,
        )
        recorder = Recorder(json_response(openai_completion()))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        await provider.generate_text(chat_request())
        assert recorder.last.headers["openai-organization"] == "org-123"

    @pytest.mark.asyncio
    async def test_list_models(self, config):
        recorder = Recorder(json_response({"data": [{"id": "gpt-4o"}, {"id": "o3-mini"}]}))
        provider = OpenAIProvider("gpt-4o", config, transport=recorder.transport)
        assert await provider.list_models() == ["gpt-4o", "o3-mini"]
        assert recorder.last.url.path == "/v1/models"


# =============================================================================
# OpenAI (Responses)
# =============================================================================

class TestOpenAIResponsesProvider:

    def test_registry_routes_responses_only_models(self, config):
        assert isinstance(create_provider("openai", "o3-pro", config), OpenAIResponsesProvider)
        assert isinstance(create_provider("openai", "gpt-4o", config), OpenAIProvider)
        assert isinstance(create_provider("openai", "gpt-4o", config, use_responses_api=True), OpenAIResponsesProvider)

    @pytest.mark.asyncio
    async def test_generate_text(self, config):
        recorder = Recorder(json_response({
            "status": "completed",
            "output": [
                {"type": "message", "content": [{"type": "output_text", "text": "Checking."}]},
                {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "get_weather", "arguments": '{"city": "Rome"}'},
            ],
            "usage": {"input_tokens": 20, "output_tokens": 8, "total_tokens": 28},
        }))
        provider = OpenAIResponsesProvider("o3-pro", config, transport=recorder.transport)

        response = await provider.generate_text(ProviderRequest(
            [Message.system("Be brief."), Message.user("Weather in Rome?")], tools=[WEATHER_TOOL]
        ))

        assert response.text == "Checking."
        assert response.tool_calls == (ToolCall("call_1", "get_weather", {"city": Argument.string("Rome")}),)
        assert response.finish_reason is FinishReason.TOOL_CALLS
        assert response.usage == Usage(20, 8)
        body = recorder.body()
        assert recorder.last.url.path == "/v1/responses"
        assert body["instructions"] == "Be brief."
        assert body["input"] == [{"role": "user", "content": [{"type": "input_text", "text": "Weather in Rome?"}]}]
        assert body["tools"][0] == {
            "type": "function",
            "name": "get_weather",
            "description": "Current weather for a city",
            "parameters": WEATHER_TOOL.parameters,
        }

    @pytest.mark.asyncio
    async def test_stream_text(self, config):
        recorder = Recorder(sse_response(
            {"type": "response.output_text.delta", "delta": "Hi"},
            {"type": "response.output_item.added", "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "get_weather"}},
            {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"city": "Rome"}'},
            {"type": "response.function_call_arguments.done", "item_id": "fc_1", "arguments": '{"city": "Rome"}'},
            {"type": "response.completed", "response": {"status": "completed", "usage": {"input_tokens": 5, "output_tokens": 3}}},
            done=False,
        ))
        provider = OpenAIResponsesProvider("o3-pro", config, transport=recorder.transport)

        events = await collect(provider.stream_text(chat_request()))

        assert events == [
            TextDelta("Hi"),
            ToolCallStart("call_1", "get_weather"),
            ToolCallArgument("call_1", "get_weather", '{"city": "Rome"}'),
            ToolCallEnd("call_1", "get_weather", {"city": Argument.string("Rome")}),
            Done(Usage(5, 3), FinishReason.TOOL_CALLS),
        ]

    @pytest.mark.asyncio
    async def test_incomplete_response(self, config):
        recorder = Recorder(json_response({
            "status": "incomplete",
            "incomplete_details": {"reason": "max_output_tokens"},
            "output": [{"type": "message", "content": [{"type": "output_text", "text": "Trunc"}]}],
        }))
        provider = OpenAIResponsesProvider("o3-pro", config, transport=recorder.transport)
        response = await provider.generate_text(chat_request())
        assert response.finish_reason is FinishReason.LENGTH
        assert response.usage is None

    @pytest.mark.asyncio
    async def test_failed_response(self, config):
        recorder = Recorder(json_response({"status": "failed", "error": {"message": "server_error"}}))
        provider = OpenAIResponsesProvider("o3-pro", config, transport=recorder.transport)
        with pytest.raises(APIError, match="server_error"):
            await provider.generate_text(chat_request())


# =============================================================================
# Anthropic
# =============================================================================

class TestAnthropicProvider:

    @pytest.mark.asyncio
    async def test_generate_text(self, config):
        recorder = Recorder(json_response({
            "content": [
                {"type": "text", "text": "Checking the weather."},
                {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 12, "output_tokens": 7},
        }))
        provider = AnthropicProvider("claude-sonnet-4-20250514", config, transport=recorder.transport)

        response = await provider.generate_text(ProviderRequest(
            [Message.system("Be brief."), Message.user("Weather in Paris?")], tools=[WEATHER_TOOL]
        ))

        assert response.text == "Checking the weather."
        assert response.tool_calls == (ToolCall("toolu_1", "get_weather", {"city": Argument.string("Paris")}),)
        assert response.finish_reason is FinishReason.TOOL_CALLS
        assert response.usage == Usage(12, 7)

        request = recorder.last
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "sk-test-anthropic"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = recorder.body()
        assert body["system"] == "Be brief."
        assert body["max_tokens"] == 4096
        assert body["messages"] == [{"role": "user", "content": "Weather in Paris?"}]
        assert body["tools"][0]["input_schema"] == WEATHER_TOOL.parameters

    @pytest.mark.asyncio
    async def test_stream_text(self, config):
        recorder = Recorder(sse_response(
            {"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_weather"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"city":'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ' "Paris"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
            done=False,
        ))
        provider = AnthropicProvider("claude-sonnet-4-20250514", config, transport=recorder.transport)

        events = await collect(provider.stream_text(chat_request()))

        assert events == [
            TextDelta("Hi"),
            ToolCallStart("toolu_1", "get_weather"),
            ToolCallArgument("toolu_1", "get_weather", '{"city":'),
            ToolCallArgument("toolu_1", "get_weather", ' "Paris"}'),
            ToolCallEnd("toolu_1", "get_weather", {"city": Argument.string("Paris")}),
            Done(Usage(12, 7), FinishReason.TOOL_CALLS),
        ]

    @pytest.mark.asyncio
    async def test_overloaded_error_event(self, config):
        recorder = Recorder(sse_response(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}, done=False
        ))
        provider = AnthropicProvider("claude-sonnet-4-20250514", config, transport=recorder.transport)
        with pytest.raises(APIError) as excinfo:
            await collect(provider.stream_text(chat_request()))
        assert excinfo.value.status_code == 529
        assert excinfo.value.is_retryable

    def test_tool_results_merge_into_one_user_turn(self):
        call = ToolCall("toolu_1", "get_weather", {"city": Argument.string("Paris")})
        system, converted = AnthropicProvider._convert_messages([
            Message.user("Weather?"),
            Message.assistant("", [call]),
            Message.tool_result("toolu_1", "sunny"),
            Message.user("Thanks"),
        ])
        assert system is None
        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert converted[1]["content"] == [
            {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}}
        ]
        assert converted[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "sunny"},
            {"type": "text", "text": "Thanks"},
        ]

    def test_image_url_source(self):
        _, converted = AnthropicProvider._convert_messages([
            Message.user("What is it?", ImagePart(url="https://example.com/cat.jpg"))
        ])
        assert converted[0]["content"][1] == {"type": "image", "source": {"type": "url", "url": "https://example.com/cat.jpg"}}

    @pytest.mark.asyncio
    async def test_list_models(self, config):
        recorder = Recorder(json_response({"data": [{"id": "claude-sonnet-4-20250514"}]}))
        provider = AnthropicProvider("claude-sonnet-4-20250514", config, transport=recorder.transport)
        assert await provider.list_models() == ["claude-sonnet-4-20250514"]


# =============================================================================
# Google Gemini
# =============================================================================

def gemini_chunk(text=None, finish=None, usage=None, function_call=None):
    parts = []
    if text is not None:
        parts.append({"text": text})
    if function_call is not None:
        parts.append({"functionCall": function_call})
    chunk = {"candidates": [{"content": {"role": "model", "parts": parts}}]}
    if finish:
        chunk["candidates"][0]["finishReason"] = finish
    if usage:
        chunk["usageMetadata"] = usage
    return chunk


class TestGeminiProvider:

    @pytest.mark.asyncio
    async def test_stream_text(self, config):
        recorder = Recorder(sse_response(
            gemini_chunk("Hel"),
            gemini_chunk("lo", finish="STOP", usage={"promptTokenCount": 4, "candidatesTokenCount": 3, "totalTokenCount": 7}),
            done=False,
        ))
        provider = GeminiProvider("gemini-2.5-flash", config, transport=recorder.transport)

        events = await collect(provider.stream_text(chat_request(Message.system("Be brief."), Message.user("hi"), max_tokens=50)))

        assert events == [TextDelta("Hel"), TextDelta("lo"), Done(Usage(4, 3), FinishReason.STOP)]
        url = recorder.last.url
        assert url.path == "/v1beta/models/gemini-2.5-flash:streamGenerateContent"
        assert url.params["alt"] == "sse"
        body = recorder.body()
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert body["generationConfig"] == {"maxOutputTokens": 50}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]

    @pytest.mark.asyncio
    async def test_generate_text_drains_stream(self, config):
        recorder = Recorder(sse_response(
            gemini_chunk("Hel"),
            gemini_chunk("lo", finish="MAX_TOKENS", usage={"promptTokenCount": 4, "totalTokenCount": 4}),
            done=False,
        ))
        provider = GeminiProvider("gemini-2.5-flash", config, transport=recorder.transport)
        response = await provider.generate_text(chat_request())
        assert response.text == "Hello"
        assert response.finish_reason is FinishReason.LENGTH
        assert response.usage == Usage(4, 0)

    @pytest.mark.asyncio
    async def test_function_call(self, config):
        recorder = Recorder(sse_response(
            gemini_chunk(function_call={"name": "get_weather", "args": {"city": "Oslo"}}, finish="STOP"),
            done=False,
        ))
        provider = GeminiProvider("gemini-2.5-flash", config, transport=recorder.transport)

        response = await provider.generate_text(ProviderRequest([Message.user("Weather?")], tools=[WEATHER_TOOL]))

        assert response.tool_calls == (ToolCall("call_0", "get_weather", {"city": Argument.string("Oslo")}),)
        assert response.finish_reason is FinishReason.TOOL_CALLS
        declaration = recorder.body()["tools"][0]["functionDeclarations"][0]
        assert declaration["name"] == "get_weather"

    @pytest.mark.asyncio
    async def test_malformed_frame_fails_the_stream(self, config):
        recorder = Recorder(sse_response(gemini_chunk("ok"), "{broken", done=False))
        provider = GeminiProvider("gemini-2.5-flash", config, transport=recorder.transport)
        with pytest.raises(APIError, match="malformed"):
            await collect(provider.stream_text(chat_request()))

    @pytest.mark.asyncio
    async def test_blocked_prompt(self, config):
        recorder = Recorder(sse_response({"promptFeedback": {"blockReason": "SAFETY"}}, done=False))
        provider = GeminiProvider("gemini-2.5-flash", config, transport=recorder.transport)
        response = await provider.generate_text(chat_request())
        assert response.finish_reason is FinishReason.CONTENT_FILTER

    def test_function_response_name_recovered_from_call(self):
        call = ToolCall("call_0", "get_weather", {"city": Argument.string("Oslo")})
        _, contents = GeminiProvider._convert_messages([
            Message.user("Weather?"),
            Message.assistant("", [call]),
            Message.tool_result("call_0", {"temp": 3}),
        ])
        assert contents[1] == {"role": "model", "parts": [{"functionCall": {"name": "get_weather", "args": {"city": "Oslo"}}}]}
        assert contents[2] == {
            "role": "user",
            "parts": [{"functionResponse": {"name": "get_weather", "response": {"result": {"temp": 3}}}}],
        }

    def test_unknown_tool_result_name(self):
        with pytest.raises(InvalidInputError):
            GeminiProvider._convert_messages([Message.tool_result("call_9", "x")])

    def test_google_api_key_fallback(self):
        config = Configuration(settings={"GOOGLE_API_KEY": "AIza-fallback"}, env_file=None, use_environment=False)
        assert GeminiProvider("gemini-2.5-flash", config).api_key == "AIza-fallback"

    @pytest.mark.asyncio
    async def test_list_models_follows_pages(self, config):
        recorder = Recorder(
            json_response({
                "models": [
                    {"name": "models/gemini-2.5-flash", "supportedGenerationMethods": ["generateContent"]},
                    {"name": "models/text-embedding-004", "supportedGenerationMethods": ["embedContent"]},
                ],
                "nextPageToken": "page-2",
            }),
            json_response({"models": [{"name": "models/gemini-2.5-pro", "supportedGenerationMethods": ["generateContent"]}]}),
        )
        provider = GeminiProvider("gemini-2.5-flash", config, transport=recorder.transport)
        assert await provider.list_models() == ["gemini-2.5-flash", "gemini-2.5-pro"]
        assert recorder.requests[1].url.params["pageToken"] == "page-2"


# =============================================================================
# Ollama
# =============================================================================

class TestOllamaProvider:

    @pytest.mark.asyncio
    async def test_stream_text(self, empty_config):
        recorder = Recorder(ndjson_response(
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop",
             "prompt_eval_count": 9, "eval_count": 2},
        ))
        provider = OllamaProvider("llama3.2", empty_config, transport=recorder.transport)

        events = await collect(provider.stream_text(chat_request(temperature=0.5, max_tokens=20)))

        assert events == [TextDelta("Hel"), TextDelta("lo"), Done(Usage(9, 2), FinishReason.STOP)]
        request = recorder.last
        assert str(request.url) == "http://localhost:11434/api/chat"
        assert "authorization" not in request.headers
        assert request.headers["accept"] == "application/x-ndjson"
        assert recorder.body()["options"] == {"temperature": 0.5, "num_predict": 20}

    @pytest.mark.asyncio
    async def test_generate_text_with_tool_call(self, empty_config):
        recorder = Recorder(json_response({
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "get_weather", "arguments": {"city": "Lima"}}}],
            },
            "done": True,
            "done_reason": "stop",
            "prompt_eval_count": 30,
            "eval_count": 12,
        }))
        provider = OllamaProvider("llama3.2", empty_config, transport=recorder.transport)

        response = await provider.generate_text(ProviderRequest([Message.user("Weather?")], tools=[WEATHER_TOOL]))

        assert response.tool_calls == (ToolCall("call_0", "get_weather", {"city": Argument.string("Lima")}),)
        assert response.finish_reason is FinishReason.TOOL_CALLS
        assert response.usage == Usage(30, 12)
        assert recorder.body()["stream"] is False

    @pytest.mark.asyncio
    async def test_inline_images_only(self, empty_config):
        provider = OllamaProvider("llava", empty_config, transport=Recorder().transport)
        with pytest.raises(InvalidInputError):
            await provider.generate_text(chat_request(Message.user("What?", ImagePart(url="https://example.com/x.png"))))

    def test_base_url_from_configuration(self):
        config = Configuration(base_urls={"ollama": "http://gpu-box:11434/"}, env_file=None, use_environment=False)
        assert OllamaProvider("llama3.2", config).base_url == "http://gpu-box:11434"

    @pytest.mark.asyncio
    async def test_list_models(self, empty_config):
        recorder = Recorder(json_response({"models": [{"name": "llama3.2:latest"}, {"name": "qwen3:8b"}]}))
        provider = OllamaProvider("llama3.2", empty_config, transport=recorder.transport)
        assert await provider.list_models() == ["llama3.2:latest", "qwen3:8b"]
        assert recorder.last.url.path == "/api/tags"

    @pytest.mark.asyncio
    async def test_unknown_model(self, empty_config):
        not_found = {"error": "model \"phantom\" not found, try pulling it first"}
        recorder = Recorder(httpx.Response(404, json=not_found), httpx.Response(404, json=not_found))
        provider = OllamaProvider("phantom", empty_config, transport=recorder.transport)
        with pytest.raises(ModelNotFoundError, match="Model not found: phantom"):
            await provider.generate_text(chat_request())
        with pytest.raises(ModelNotFoundError):
            await collect(provider.stream_text(chat_request()))


# =============================================================================
# OpenAI-compatible family
# =============================================================================

class TestAzureOpenAIProvider:

    @pytest.mark.asyncio
    async def test_deployment_url_and_api_key_header(self, config):
        recorder = Recorder(json_response(openai_completion()))
        provider = AzureOpenAIProvider("gpt4o-prod", config, transport=recorder.transport)

        await provider.generate_text(chat_request())

        request = recorder.last
        assert request.url.path == "/openai/deployments/gpt4o-prod/chat/completions"
        assert request.url.host == "myres.openai.azure.com"
        assert request.url.params["api-version"] == "2024-10-21"
        assert request.headers["api-key"] == "azure-test-key"
        assert "authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_bearer_token_preferred(self):
        config = Configuration(
            settings={"AZURE_OPENAI_BEARER_TOKEN": "entra-token", "AZURE_OPENAI_RESOURCE": "other"},
            env_file=None, use_environment=False,
        )
        recorder = Recorder(json_response(openai_completion()))
        provider = AzureOpenAIProvider("gpt4o-prod", config, api_version="2025-01-01-preview", transport=recorder.transport)

        await provider.generate_text(chat_request())

        request = recorder.last
        assert request.url.host == "other.openai.azure.com"
        assert request.url.params["api-version"] == "2025-01-01-preview"
        assert request.headers["authorization"] == "Bearer entra-token"

    def test_missing_endpoint(self):
        config = Configuration(api_keys={"azure_openai": "k"}, env_file=None, use_environment=False)
        with pytest.raises(InvalidConfigurationError):
            AzureOpenAIProvider("gpt4o-prod", config)

    def test_missing_credentials(self):
        config = Configuration(base_urls={"azure_openai": "myres.openai.azure.com"}, env_file=None, use_environment=False)
        with pytest.raises(AuthenticationError):
            AzureOpenAIProvider("gpt4o-prod", config)

    @pytest.mark.asyncio
    async def test_listing_models_is_unsupported(self, config):
        provider = AzureOpenAIProvider("gpt4o-prod", config)
        with pytest.raises(UnsupportedOperationError):
            await provider.list_models()


class TestReplicateProvider:

    @pytest.mark.asyncio
    async def test_turbo_header_and_no_usage_option(self):
        config = Configuration(
            api_keys={"replicate": "r8"}, settings={"REPLICATE_PREFERRED_OUTPUT": "turbo"},
            env_file=None, use_environment=False,
        )
        recorder = Recorder(sse_response(openai_chunk("hi"), openai_chunk(finish_reason="stop")))
        provider = ReplicateProvider("meta/meta-llama-3-70b-instruct", config, transport=recorder.transport)

        events = await collect(provider.stream_text(chat_request()))

        assert events == [TextDelta("hi"), Done(None, FinishReason.STOP)]
        assert recorder.last.headers["prefer"] == "wait=false"
        assert "stream_options" not in recorder.body()

    @pytest.mark.asyncio
    async def test_no_turbo_by_default(self, config):
        recorder = Recorder(json_response(openai_completion()))
        provider = ReplicateProvider("meta/meta-llama-3-70b-instruct", config, transport=recorder.transport)
        await provider.generate_text(chat_request())
        assert "prefer" not in recorder.last.headers
        assert recorder.last.headers["authorization"] == "Bearer r8-test"


class TestGrokProvider:

    @pytest.mark.asyncio
    async def test_endpoint(self, config):
        recorder = Recorder(json_response(openai_completion("Grok here")))
        provider = GrokProvider("grok-4", config, transport=recorder.transport)
        response = await provider.generate_text(chat_request())
        assert response.text == "Grok here"
        assert str(recorder.last.url) == "https://api.x.ai/v1/chat/completions"
        assert recorder.last.headers["authorization"] == "Bearer xai-test"

    def test_xai_key_alias(self):
        config = Configuration(settings={"XAI_API_KEY": "xai-alias"}, env_file=None, use_environment=False)
        assert GrokProvider("grok-4", config).api_key == "xai-alias"


class TestOpenAICompatibleProvider:

    def test_base_url_required(self, empty_config):
        with pytest.raises(InvalidConfigurationError):
            OpenAICompatibleProvider("qwen3", empty_config)

    @pytest.mark.asyncio
    async def test_keyless_server_with_custom_headers(self, empty_config):
        recorder = Recorder(json_response(openai_completion()))
        provider = OpenAICompatibleProvider(
            "qwen3", empty_config,
            name="vLLM",
            base_url="http://localhost:8000/v1",
            headers={"X-Team": "research"},
            transport=recorder.transport,
        )

        await provider.generate_text(chat_request(top_k=40))

        request = recorder.last
        assert str(request.url) == "http://localhost:8000/v1/chat/completions"
        assert "authorization" not in request.headers
        assert request.headers["x-team"] == "research"
        assert recorder.body()["top_k"] == 40

    @pytest.mark.asyncio
    async def test_error_detail_uses_label(self, empty_config):
        recorder = Recorder(httpx.Response(503, text="upstream unavailable"))
        provider = OpenAICompatibleProvider(
            "qwen3", empty_config, name="vLLM", base_url="http://localhost:8000/v1", transport=recorder.transport
        )
        with pytest.raises(APIError, match=r"vLLM error \(HTTP 503\): upstream unavailable"):
            await provider.generate_text(chat_request())

    def test_registry_builds_compatible_provider(self, empty_config):
        provider = create_provider(Vendor.OPENAI_COMPATIBLE, "qwen3", empty_config, base_url="http://localhost:1234/v1")
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.base_url == "http://localhost:1234/v1"
