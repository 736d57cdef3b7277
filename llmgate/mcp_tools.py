"""
MCP (Model Context Protocol) tool execution for llmgate.

Connects to MCP servers, offers their tools to any adapter as
``ToolDefinition`` objects, and routes model tool calls back to the server
that owns each tool. Results come back as ``Argument`` values, so they can be
fed to the next turn with ``Message.tool_result``.

Supported transports:
- stdio: local servers spawned as a subprocess (most common)
- sse: HTTP servers pushing responses over Server-Sent Events
- streamable-http: HTTP servers with streamable responses

Example Usage:
-------------
```python
from llmgate.mcp_tools import mcp_executor

async with mcp_executor() as executor:
    await executor.connect_stdio(
        name="fs",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
    )
    request = ProviderRequest(messages, tools=executor.get_tools())
    response = await provider.generate_text(request)
    messages.extend(await executor.execute_tool_calls(response.tool_calls))
```
"""
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any, AsyncIterator, Dict, List, Literal, Mapping, Optional, Sequence, TypedDict,
)

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import AnyUrl, CallToolResult, Tool as MCPTool

from .arguments import Argument, arguments_to_native
from .errors import InvalidConfigurationError, InvalidInputError, LLMGateError, describe
from .types import Message, ToolCall, ToolDefinition

logger = logging.getLogger(__name__)

# =============================================================================
# Type Definitions
# =============================================================================

TransportType = Literal["stdio", "sse", "streamable-http"]


class MCPServerConfig(TypedDict, total=False):
    """
    Configuration dictionary accepted by ``MCPToolExecutor.connect``.

    Fields:
        name: Unique identifier for the connection (required)
        transport: "stdio" (default), "sse" or "streamable-http"

        For stdio transport:
            command: Executable to run (e.g., "npx", "uv")
            args: Command-line arguments
            env: Environment variables for the subprocess

        For HTTP-based transports:
            url: Server endpoint URL
            headers: HTTP headers (e.g., authentication)
    """
    name: str
    transport: TransportType
    command: str
    args: List[str]
    env: Dict[str, str]
    url: str
    headers: Dict[str, str]


@dataclass
class MCPConnection:
    """An initialized session plus the tools discovered on it."""
    name: str
    session: ClientSession
    tools: List[ToolDefinition] = field(default_factory=list)


# =============================================================================
# Argument / Result Conversion
# =============================================================================

def to_mcp_arguments(arguments: Mapping[str, Argument]) -> Dict[str, Any]:
    """Convert unified tool arguments to the plain JSON mapping MCP expects."""
    return arguments_to_native(arguments)


def _content_to_argument(content: Any) -> Argument:
    content_type = getattr(content, "type", None)

    if content_type == "text":
        return Argument.string(content.text)

    if content_type in ("image", "audio"):
        return Argument.object({
            "type": Argument.string(content_type),
            "mimeType": Argument.string(content.mimeType),
            "data": Argument.string(content.data),
        })

    if content_type == "resource":
        resource = content.resource
        fields = {
            "type": Argument.string("resource"),
            "uri": Argument.string(str(resource.uri)),
            "mimeType": Argument.string(resource.mimeType) if resource.mimeType else Argument.null(),
        }
        if getattr(resource, "text", None) is not None:
            fields["text"] = Argument.string(resource.text)
        else:
            fields["blob"] = Argument.string(getattr(resource, "blob", ""))
        return Argument.object(fields)

    if content_type == "resource_link":
        return Argument.object({
            "type": Argument.string("resource_link"),
            "uri": Argument.string(str(content.uri)),
            "name": Argument.string(content.name),
        })

    return Argument.string(str(content))


def from_mcp_result(result: CallToolResult) -> Argument:
    """
    Convert an MCP tool result into a single ``Argument``.

    - no content: null
    - one content block: that block (text as a string, media and resources
      as objects)
    - several blocks: an array in server order
    - ``isError`` results: ``"Error: <text>"``

    Args:
        result: Result returned by ``ClientSession.call_tool``.

    Returns:
        Argument: Payload for a tool-result message.
    """
    contents = [_content_to_argument(c) for c in result.content or []]

    if result.isError:
        text = "\n".join(c.to_text() for c in contents) or "tool reported an error"
        return Argument.string(f"Error: {text}")

    if not contents:
        structured = getattr(result, "structuredContent", None)
        return Argument.from_native(structured) if structured is not None else Argument.null()
    if len(contents) == 1:
        return contents[0]
    return Argument.array(contents)


# =============================================================================
# Executor
# =============================================================================

class MCPToolExecutor:
    """
    Manages connections to MCP servers and executes their tools.

    All sessions live on one ``AsyncExitStack`` and are closed in reverse
    order when the executor's context exits. Tool names are routed to the
    server that advertised them; when two servers advertise the same name
    the later connection wins.

    The executor satisfies the ``ToolSource`` protocol, so ``get_tools()``
    can be handed straight to a ``ProviderRequest``.

    Example:
        async with MCPToolExecutor() as executor:
            await executor.connect({"name": "fs", "command": "npx", "args": [...]})
            result = await executor.call_tool("list_directory", {"path": Argument.string("/tmp")})
    """

    def __init__(self):
        self._exit_stack: Optional[AsyncExitStack] = None
        self._connections: Dict[str, MCPConnection] = {}
        self._tool_map: Dict[str, str] = {}

    async def __aenter__(self) -> "MCPToolExecutor":
        self._exit_stack = AsyncExitStack()
        await self._exit_stack.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.__aexit__(exc_type, exc_val, exc_tb)
            self._exit_stack = None
        self._connections.clear()
        self._tool_map.clear()

    @property
    def connections(self) -> Dict[str, MCPConnection]:
        return dict(self._connections)

    @property
    def tool_names(self) -> List[str]:
        return list(self._tool_map)

    def get_tools(self) -> List[ToolDefinition]:
        """Tools from every connected server."""
        tools: List[ToolDefinition] = []
        for conn in self._connections.values():
            tools.extend(conn.tools)
        return tools

    def get_tools_for_server(self, server_name: str) -> List[ToolDefinition]:
        conn = self._connections.get(server_name)
        return list(conn.tools) if conn else []

    def _ensure_context(self) -> AsyncExitStack:
        if self._exit_stack is None:
            raise InvalidConfigurationError(
                "MCPToolExecutor must be used as an async context manager: "
                "async with MCPToolExecutor() as executor: ..."
            )
        return self._exit_stack

    def _check_name(self, name: str) -> AsyncExitStack:
        stack = self._ensure_context()
        if name in self._connections:
            raise InvalidConfigurationError(f"Connection '{name}' already exists")
        return stack

    async def _register(self, name: str, stack: AsyncExitStack, read_stream, write_stream) -> MCPConnection:
        # Session is entered after its transport, so it is closed first
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()

        listing = await session.list_tools()
        tools = [self._convert_mcp_tool(tool) for tool in listing.tools]
        for tool in tools:
            if tool.name in self._tool_map:
                logger.warning(
                    "MCP tool %r from %r shadows the one from %r",
                    tool.name, name, self._tool_map[tool.name],
                )
            self._tool_map[tool.name] = name

        connection = MCPConnection(name=name, session=session, tools=tools)
        self._connections[name] = connection
        logger.info("Connected MCP server %r with %d tools", name, len(tools))
        return connection

    # ==========================================================================
    # Connections
    # ==========================================================================

    async def connect_stdio(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """
        Spawn an MCP server as a subprocess and talk to it over stdin/stdout.

        Args:
            name: Unique name for this connection
            command: Executable to run (e.g., "npx", "python")
            args: Command-line arguments
            env: Environment variables for the subprocess

        Returns:
            MCPConnection with an initialized session and its tools
        """
        stack = self._check_name(name)
        params = StdioServerParameters(command=command, args=args or [], env=env)
        read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        return await self._register(name, stack, read_stream, write_stream)

    async def connect_sse(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """
        Connect to a remote MCP server over Server-Sent Events.

        Args:
            name: Unique name for this connection
            url: Server endpoint (e.g., "http://localhost:8000/sse")
            headers: Optional HTTP headers (e.g., {"Authorization": "Bearer ..."})
        """
        stack = self._check_name(name)
        read_stream, write_stream = await stack.enter_async_context(sse_client(url, headers=headers))
        return await self._register(name, stack, read_stream, write_stream)

    async def connect_http(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """Connect to an MCP server over the streamable HTTP transport."""
        stack = self._check_name(name)
        # Third value is a session-id getter we do not need
        read_stream, write_stream, _ = await stack.enter_async_context(
            streamablehttp_client(url, headers=headers)
        )
        return await self._register(name, stack, read_stream, write_stream)

    async def connect(self, config: MCPServerConfig) -> MCPConnection:
        """
        Connect using a configuration dictionary, routing on ``transport``.

        Args:
            config: Server configuration (see ``MCPServerConfig``).

        Raises:
            InvalidConfigurationError: If the transport is unknown.
        """
        transport = config.get("transport", "stdio")
        name = config["name"]

        match transport:
            case "stdio":
                return await self.connect_stdio(
                    name=name,
                    command=config["command"],
                    args=config.get("args"),
                    env=config.get("env"),
                )
            case "sse":
                return await self.connect_sse(name=name, url=config["url"], headers=config.get("headers"))
            case "streamable-http":
                return await self.connect_http(name=name, url=config["url"], headers=config.get("headers"))
            case _:
                raise InvalidConfigurationError(f"Unsupported MCP transport: {transport}")

    # ==========================================================================
    # Tool Execution
    # ==========================================================================

    async def call_tool(self, tool_name: str, arguments: Mapping[str, Argument]) -> Argument:
        """
        Execute a tool on whichever server advertised it.

        Args:
            tool_name: Tool to run (e.g., "read_file")
            arguments: Unified tool arguments

        Returns:
            Argument: The converted tool result (see ``from_mcp_result``).

        Raises:
            InvalidInputError: If no connected server offers the tool.
        """
        return from_mcp_result(await self._invoke(tool_name, arguments))

    async def _invoke(self, tool_name: str, arguments: Mapping[str, Argument]) -> CallToolResult:
        server_name = self._tool_map.get(tool_name)
        if server_name is None:
            raise InvalidInputError(f"Tool '{tool_name}' not found in any connected server")

        session = self._connections[server_name].session
        logger.debug("Calling MCP tool %r on %r", tool_name, server_name)
        return await session.call_tool(tool_name, to_mcp_arguments(arguments))

    async def execute_tool_calls(self, tool_calls: Sequence[ToolCall]) -> List[Message]:
        """
        Run the tool calls from a model response, in order.

        A failing tool does not abort the batch: its message carries
        ``"Error: ..."`` with ``is_error`` set, so the model can see what
        went wrong and retry.

        Args:
            tool_calls: ``ProviderResponse.tool_calls`` (or any ``ToolCall``s).

        Returns:
            List[Message]: One tool-result message per call, in call order.
        """
        results: List[Message] = []
        for call in tool_calls:
            try:
                result = await self._invoke(call.name, call.arguments)
                payload, is_error = from_mcp_result(result), bool(result.isError)
            except LLMGateError as e:
                logger.warning("MCP tool %r failed: %s", call.name, describe(e))
                payload, is_error = Argument.string(f"Error: {e}"), True
            except McpError as e:
                logger.warning("MCP tool %r failed: %s", call.name, e.error.message)
                payload, is_error = Argument.string(f"Error: {e}"), True
            results.append(Message.tool_result(call.id, payload, is_error=is_error, name=call.name))
        return results

    @staticmethod
    def _convert_mcp_tool(tool: MCPTool) -> ToolDefinition:
        return ToolDefinition(
            name=tool.name,
            description=tool.description or "",
            parameters=tool.inputSchema or {"type": "object", "properties": {}},
        )

    # ==========================================================================
    # Resources
    # ==========================================================================

    async def list_resources(self, server_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List resources exposed by one server, or by all of them.

        Servers that do not implement resources are skipped when listing
        across all connections.

        Returns:
            List of dicts with ``uri``, ``name`` and ``server``.
        """
        if server_name is not None:
            if server_name not in self._connections:
                raise InvalidInputError(f"No MCP connection named '{server_name}'")
            targets = {server_name: self._connections[server_name]}
        else:
            targets = self._connections

        resources: List[Dict[str, Any]] = []
        for name, conn in targets.items():
            try:
                listing = await conn.session.list_resources()
            except McpError as e:
                if server_name is not None:
                    raise
                logger.debug("MCP server %r does not list resources: %s", name, e)
                continue
            resources.extend({"uri": str(r.uri), "name": r.name, "server": name} for r in listing.resources)
        return resources

    async def read_resource(self, uri: str, server_name: Optional[str] = None) -> str:
        """
        Read a resource by URI, trying each server in turn when none is given.

        Returns:
            The text of the first content block (base64 for binary content).

        Raises:
            InvalidInputError: If no server returns the resource.
        """
        candidates = (
            [self._connections[server_name]] if server_name in self._connections
            else list(self._connections.values()) if server_name is None
            else []
        )
        for conn in candidates:
            try:
                result = await conn.session.read_resource(AnyUrl(uri))
            except McpError as e:
                logger.debug("MCP server %r could not read %s: %s", conn.name, uri, e)
                continue
            if result.contents:
                content = result.contents[0]
                text = getattr(content, "text", None)
                return text if text is not None else getattr(content, "blob", "")
        raise InvalidInputError(f"Resource '{uri}' not found")


# =============================================================================
# Context Manager Helper
# =============================================================================

@asynccontextmanager
async def mcp_executor(*configs: MCPServerConfig) -> AsyncIterator[MCPToolExecutor]:
    """
    Open an executor, optionally connecting the given servers up front.

    Example:
        async with mcp_executor({"name": "fs", "command": "npx", "args": [...]}) as executor:
            tools = executor.get_tools()
    """
    async with MCPToolExecutor() as executor:
        for config in configs:
            await executor.connect(config)
        yield executor
