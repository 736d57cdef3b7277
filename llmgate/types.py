import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any, Dict, List, Literal, Optional, Protocol, Sequence, Tuple, Union,
    runtime_checkable,
)

from .arguments import Argument, ArgumentMap, arguments_hash
from .cancellation import CancellationToken
from .errors import InvalidInputError

# =============================================================================
# Vendors and Models
# =============================================================================

class Vendor(str, Enum):
    """Backend services with a dedicated adapter."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    GROK = "grok"
    OLLAMA = "ollama"
    AZURE_OPENAI = "azure_openai"
    REPLICATE = "replicate"
    OPENAI_COMPATIBLE = "openai_compatible"


@dataclass(frozen=True)
class ModelCapabilities:
    vision: bool = False
    tools: bool = True
    streaming: bool = True
    context_length: int = 128_000
    max_output_tokens: int = 4096


@dataclass(frozen=True)
class ModelInfo:
    """
    Identifies the model an adapter talks to.

    Attributes:
        vendor (Vendor): Backend service.
        name (str): Vendor model identifier (or Azure deployment name).
        capabilities (ModelCapabilities): What the model supports.
    """
    vendor: Vendor
    name: str
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)


# =============================================================================
# Content Parts
# =============================================================================

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """
    Image content, either inline bytes or a remote URL.

    Exactly one of ``data`` and ``url`` must be set.
    """
    data: Optional[bytes] = None
    url: Optional[str] = None
    mime_type: str = "image/jpeg"

    def __post_init__(self):
        if (self.data is None) == (self.url is None):
            raise InvalidInputError("ImagePart needs exactly one of data or url")

    def base64(self) -> str:
        if self.data is None:
            raise InvalidInputError(f"Image at {self.url} has no inline data")
        return base64.b64encode(self.data).decode("ascii")

    def data_uri(self) -> str:
        """Inline data as a ``data:`` URI, or the remote URL unchanged."""
        if self.url is not None:
            return self.url
        return f"data:{self.mime_type};base64,{self.base64()}"


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    arguments: ArgumentMap = field(default_factory=dict)

    def __hash__(self):
        return hash((self.id, self.name, arguments_hash(self.arguments)))


@dataclass(frozen=True)
class ToolResultPart:
    call_id: str
    payload: Argument
    is_error: bool = False
    # Some vendors (Google) address results by function name instead of id
    name: Optional[str] = None


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart]


# =============================================================================
# Messages
# =============================================================================

@dataclass(frozen=True)
class Message:
    """
    One conversation turn: a role and an ordered sequence of content parts.

    Roles:
    - "system": System prompt / instructions
    - "user": User message
    - "assistant": Model response, possibly with tool calls
    - "tool": Tool execution results
    """
    role: Role
    parts: Tuple[ContentPart, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "parts", tuple(self.parts))

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls("system", (TextPart(text),))

    @classmethod
    def user(cls, *content: Union[str, ContentPart]) -> "Message":
        return cls("user", _normalize_parts(content))

    @classmethod
    def assistant(
        cls,
        text: str = "",
        tool_calls: Sequence["ToolCall"] = (),
    ) -> "Message":
        parts: List[ContentPart] = [TextPart(text)] if text else []
        parts.extend(ToolCallPart(c.id, c.name, dict(c.arguments)) for c in tool_calls)
        return cls("assistant", tuple(parts))

    @classmethod
    def tool_result(
        cls,
        call_id: str,
        payload: Any,
        *,
        is_error: bool = False,
        name: Optional[str] = None,
    ) -> "Message":
        return cls("tool", (ToolResultPart(call_id, Argument.from_native(payload), is_error, name),))

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> List[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> List[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]


def _normalize_parts(content: Sequence[Union[str, ContentPart]]) -> Tuple[ContentPart, ...]:
    return tuple(TextPart(item) if isinstance(item, str) else item for item in content)


# =============================================================================
# Requests
# =============================================================================

@dataclass(frozen=True)
class GenerationSettings:
    """Sampling settings. Unset values are left to the vendor's defaults."""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolDefinition:
    """
    A callable tool offered to the model.

    Attributes:
        name (str): Function name.
        description (str): What the tool does.
        parameters (dict): JSON Schema object describing the arguments.
    """
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    # parameters is a free-form JSON schema
    __hash__ = None


@runtime_checkable
class ToolSource(Protocol):
    """Anything that can list tool definitions (e.g. an MCP executor)."""

    def get_tools(self) -> List[ToolDefinition]:
        ...


@dataclass(frozen=True)
class ProviderRequest:
    messages: Tuple[Message, ...]
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    tools: Tuple[ToolDefinition, ...] = ()
    cancellation: Optional[CancellationToken] = None

    __hash__ = None

    def __post_init__(self):
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "tools", tuple(self.tools))

    def raise_if_cancelled(self) -> None:
        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()

    @property
    def system_prompt(self) -> Optional[str]:
        """System messages joined with blank lines, or None."""
        texts = [m.text for m in self.messages if m.role == "system" and m.text]
        return "\n\n".join(texts) if texts else None


# =============================================================================
# Responses
# =============================================================================

class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_CALLS = "tool_calls"
    OTHER = "other"


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def reconcile(
        cls,
        prompt: Optional[int],
        completion: Optional[int] = None,
        total: Optional[int] = None,
    ) -> "Usage":
        """
        Build usage from whatever counters a vendor reported.

        When only prompt and total counts are present the output count is
        derived as ``max(0, total - prompt)``.
        """
        input_tokens = max(0, prompt or 0)
        if completion is not None:
            output_tokens = max(0, completion)
        elif total is not None:
            output_tokens = max(0, total - input_tokens)
        else:
            output_tokens = 0
        return cls(input_tokens, output_tokens)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: ArgumentMap = field(default_factory=dict)

    def __hash__(self):
        return hash((self.id, self.name, arguments_hash(self.arguments)))


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    usage: Optional[Usage] = None
    finish_reason: FinishReason = FinishReason.STOP
    tool_calls: Tuple[ToolCall, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))


# =============================================================================
# Stream Events
# =============================================================================

@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgument:
    id: str
    name: str
    partial: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str
    name: str
    arguments: ArgumentMap = field(default_factory=dict)

    def __hash__(self):
        return hash((self.id, self.name, arguments_hash(self.arguments)))


@dataclass(frozen=True)
class Done:
    usage: Optional[Usage] = None
    finish_reason: Optional[FinishReason] = None


StreamEvent = Union[TextDelta, ToolCallStart, ToolCallArgument, ToolCallEnd, Done]
