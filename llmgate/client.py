import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union,
)

import httpx

from .arguments import arguments_to_native
from .cancellation import CancellationToken
from .config import Configuration, ConfigurationProvider
from .errors import InvalidInputError, LLMGateError, describe
from .providers.base import BaseLLMProvider
from .providers.registry import create_provider, parse_model_identifier, resolve_vendor
from .types import (
    GenerationSettings, Message, ProviderRequest, ProviderResponse, StreamEvent, ToolCall,
    ToolDefinition, ToolSource, Vendor,
)
from .utils import (
    create_assistant_message_with_tool_calls, create_image_content, create_message,
    create_tool, create_tool_result, image_from_file,
)

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class ToolLoopResult:
    """
    Outcome of ``UnifiedChatClient.chat_with_tools``.

    Attributes:
        response: The last model response (no further tool calls, or the
            response at which ``max_iterations`` was reached).
        messages: The full conversation, including assistant tool-call turns
            and tool results.
        tool_history: One entry per executed call: tool, arguments, result.
    """
    response: ProviderResponse
    messages: List[Message]
    tool_history: List[Dict[str, Any]] = field(default_factory=list)


class UnifiedChatClient:
    """
    Unified client for every supported vendor.

    Adapters are created lazily on first use and cached per
    ``(vendor, model)``; each is immutable and safe to share across
    concurrent requests.

    Example:
        client = UnifiedChatClient()
        response = await client.chat("anthropic", "claude-sonnet-4-20250514", [Message.user("Hi")])
        async for event in client.astream("openai/gpt-4o", messages=[Message.user("Hi")]):
            ...
    """

    def __init__(
        self,
        configuration: Optional[ConfigurationProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **provider_options,
    ):
        """
        Args:
            configuration: Keys, base URLs and settings. Defaults to
                ``Configuration()`` (explicit values, environment, then ``.env``).
            transport: httpx transport shared by every adapter (tests inject
                ``httpx.MockTransport``).
            **provider_options: Passed to every adapter constructor (e.g. ``timeout``,
                ``retry_policy``).
        """
        self.configuration = configuration if configuration is not None else Configuration()
        self._transport = transport
        self._provider_options = provider_options
        self._providers: Dict[Tuple[Vendor, str, Optional[bool]], BaseLLMProvider] = {}

    # ==========================================================================
    # Adapters
    # ==========================================================================

    def provider(
        self,
        vendor: Union[str, Vendor],
        model: Optional[str] = None,
        *,
        use_responses_api: Optional[bool] = None,
    ) -> BaseLLMProvider:
        """
        Get (or build) the adapter for a vendor and model.

        ``model`` may be omitted when ``vendor`` is a ``"vendor/model"``
        identifier.

        Raises:
            InvalidConfigurationError: If the vendor is unknown.
            AuthenticationError: If the vendor needs a key and none resolves.
        """
        if model is None:
            resolved, model = parse_model_identifier(str(vendor))
        else:
            resolved = resolve_vendor(vendor)

        key = (resolved, model, use_responses_api)
        adapter = self._providers.get(key)
        if adapter is None:
            options = dict(self._provider_options)
            if self._transport is not None:
                options["transport"] = self._transport
            adapter = create_provider(
                resolved, model, self.configuration, use_responses_api=use_responses_api, **options
            )
            self._providers[key] = adapter
            logger.debug("Created %r", adapter)
        return adapter

    async def list_models(self, vendor: Union[str, Vendor], model: str = "") -> List[str]:
        """List model names offered by ``vendor``."""
        return await self.provider(vendor, model).list_models()

    # ==========================================================================
    # Image / Message Helpers - Re-exported from utils
    # ==========================================================================

    image_from_file = staticmethod(image_from_file)
    create_image_content = staticmethod(create_image_content)
    create_message = staticmethod(create_message)
    create_tool = staticmethod(create_tool)
    create_tool_result = staticmethod(create_tool_result)
    create_assistant_message_with_tool_calls = staticmethod(create_assistant_message_with_tool_calls)

    # ==========================================================================
    # Unified Chat Methods
    # ==========================================================================

    @staticmethod
    def _request(
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        cancellation: Optional[CancellationToken],
        opts: Dict[str, Any],
    ) -> ProviderRequest:
        stop = opts.pop("stop", None) or opts.pop("stop_sequences", None) or ()
        if isinstance(stop, str):
            stop = (stop,)
        settings = GenerationSettings(
            temperature=opts.pop("temperature", None),
            max_tokens=opts.pop("max_tokens", None),
            top_p=opts.pop("top_p", None),
            top_k=opts.pop("top_k", None),
            stop_sequences=tuple(stop),
        )
        if opts:
            raise InvalidInputError(f"Unknown generation options: {', '.join(sorted(opts))}")
        return ProviderRequest(messages, settings, tuple(tools), cancellation)

    async def chat(
        self,
        vendor: Union[str, Vendor],
        model: Optional[str] = None,
        messages: Sequence[Message] = (),
        *,
        tools: Sequence[ToolDefinition] = (),
        cancellation: Optional[CancellationToken] = None,
        **opts,
    ) -> ProviderResponse:
        """
        Send a non-streaming request.

        Args:
            vendor: Vendor name or alias, or a ``"vendor/model"`` identifier.
            model: Model name (omit when ``vendor`` is an identifier).
            messages: Conversation so far.
            tools: Tools offered to the model.
            cancellation: Token that aborts the call when cancelled.
            **opts: ``temperature``, ``max_tokens``, ``top_p``, ``top_k``, ``stop``.

        Returns:
            ProviderResponse: Text, usage, finish reason and tool calls.

        Raises:
            InvalidInputError: On unknown options.
            LLMGateError: Any adapter failure (see ``llmgate.errors``).
        """
        request = self._request(messages, tools, cancellation, dict(opts))
        return await self.provider(vendor, model).generate_text(request)

    async def astream(
        self,
        vendor: Union[str, Vendor],
        model: Optional[str] = None,
        messages: Sequence[Message] = (),
        *,
        tools: Sequence[ToolDefinition] = (),
        cancellation: Optional[CancellationToken] = None,
        **opts,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream unified events; the last one is ``Done``.

        Arguments are the same as ``chat``.
        """
        request = self._request(messages, tools, cancellation, dict(opts))
        async with aclosing(self.provider(vendor, model).stream_text(request)) as events:
            async for event in events:
                yield event

    async def chat_with_tools(
        self,
        vendor: Union[str, Vendor],
        model: Optional[str] = None,
        messages: Sequence[Message] = (),
        *,
        tools: Sequence[ToolDefinition] = (),
        tool_source: Optional[ToolSource] = None,
        tool_handlers: Optional[Dict[str, ToolHandler]] = None,
        max_iterations: int = 10,
        cancellation: Optional[CancellationToken] = None,
        **opts,
    ) -> ToolLoopResult:
        """
        Chat while executing the model's tool calls until it answers in text.

        Each iteration sends the conversation, runs every requested tool
        (native handlers first, then ``tool_source`` when it can execute
        calls, e.g. ``MCPToolExecutor``), appends the results and asks again.

        Args:
            tools: Native tool definitions.
            tool_source: Extra tools; if it provides ``execute_tool_calls``
                its tools are executed through it.
            tool_handlers: Native handlers keyed by tool name. They receive
                plain JSON arguments and may be sync or async.
            max_iterations: Upper bound on model round trips.

        Returns:
            ToolLoopResult: Final response, full conversation and tool history.
        """
        tool_handlers = tool_handlers or {}
        all_tools = list(tools)
        if tool_source is not None:
            all_tools.extend(tool_source.get_tools())

        conversation = list(messages)
        history: List[Dict[str, Any]] = []
        response: Optional[ProviderResponse] = None

        for _ in range(max(1, max_iterations)):
            response = await self.chat(
                vendor, model, conversation, tools=all_tools, cancellation=cancellation, **opts
            )
            if not response.tool_calls:
                break

            conversation.append(Message.assistant(response.text, response.tool_calls))
            for call in response.tool_calls:
                result = await self._execute_tool_call(call, tool_handlers, tool_source)
                conversation.append(result)
                history.append({
                    "tool": call.name,
                    "arguments": arguments_to_native(call.arguments),
                    "result": result.tool_results[0].payload.to_native(),
                })

        return ToolLoopResult(response=response, messages=conversation, tool_history=history)

    async def _execute_tool_call(
        self,
        call: ToolCall,
        tool_handlers: Dict[str, ToolHandler],
        tool_source: Optional[ToolSource],
    ) -> Message:
        if call.name in tool_handlers:
            try:
                result = tool_handlers[call.name](arguments_to_native(call.arguments))
                if asyncio.iscoroutine(result):
                    result = await result
            except Exception as e:
                # Handler failures are reported to the model, not raised
                logger.warning("Tool handler %r failed: %s", call.name, e)
                return Message.tool_result(
                    call.id, f"Error executing tool '{call.name}': {e}", is_error=True, name=call.name
                )
            return Message.tool_result(call.id, result, name=call.name)

        execute = getattr(tool_source, "execute_tool_calls", None)
        if execute is not None and call.name in {t.name for t in tool_source.get_tools()}:
            try:
                return (await execute([call]))[0]
            except LLMGateError as e:
                logger.warning("Tool %r failed: %s", call.name, describe(e))
                return Message.tool_result(call.id, f"Error: {e}", is_error=True, name=call.name)

        return Message.tool_result(
            call.id, f"Error: No handler for tool '{call.name}'", is_error=True, name=call.name
        )
