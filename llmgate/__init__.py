"""
llmgate - one async interface to many LLM vendors.

Adapters for OpenAI (Chat Completions and Responses), Anthropic, Google
Gemini, xAI Grok, Ollama, Azure OpenAI, Replicate and any OpenAI-compatible
server, with a common message model, normalized streaming events, tool
calling, MCP tool execution, retries and bounded-concurrency batches.
"""
import logging

from .arguments import Argument, ArgumentKind, decode_arguments, encode_arguments
from .batch import AdmissionGate, run_batch
from .cancellation import CancellationToken
from .client import ToolLoopResult, UnifiedChatClient
from .config import Configuration, ConfigurationProvider
from .errors import (
    APIError, AuthenticationError, InvalidConfigurationError, InvalidInputError, LLMGateError,
    ModelNotFoundError, NetworkError, RequestCancelledError, SpeechFailedError,
    TranscriptionFailedError, UnsupportedOperationError,
)
from .providers import BaseLLMProvider, create_provider, parse_model_identifier
from .retry import RetryPolicy
from .types import (
    Done, FinishReason, GenerationSettings, ImagePart, Message, ModelCapabilities, ModelInfo,
    ProviderRequest, ProviderResponse, StreamEvent, TextDelta, TextPart, ToolCall, ToolCallArgument,
    ToolCallEnd, ToolCallPart, ToolCallStart, ToolDefinition, ToolResultPart, ToolSource, Usage,
    Vendor,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "Argument",
    "ArgumentKind",
    "decode_arguments",
    "encode_arguments",
    "AdmissionGate",
    "run_batch",
    "CancellationToken",
    "ToolLoopResult",
    "UnifiedChatClient",
    "Configuration",
    "ConfigurationProvider",
    "APIError",
    "AuthenticationError",
    "InvalidConfigurationError",
    "InvalidInputError",
    "LLMGateError",
    "ModelNotFoundError",
    "NetworkError",
    "RequestCancelledError",
    "SpeechFailedError",
    "TranscriptionFailedError",
    "UnsupportedOperationError",
    "BaseLLMProvider",
    "create_provider",
    "parse_model_identifier",
    "RetryPolicy",
    "Done",
    "FinishReason",
    "GenerationSettings",
    "ImagePart",
    "Message",
    "ModelCapabilities",
    "ModelInfo",
    "ProviderRequest",
    "ProviderResponse",
    "StreamEvent",
    "TextDelta",
    "TextPart",
    "ToolCall",
    "ToolCallArgument",
    "ToolCallEnd",
    "ToolCallPart",
    "ToolCallStart",
    "ToolDefinition",
    "ToolResultPart",
    "ToolSource",
    "Usage",
    "Vendor",
]
