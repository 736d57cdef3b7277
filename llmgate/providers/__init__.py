from .base import BaseLLMProvider
from .openai_compatible import OpenAICompatibleHelper
from .openai import OpenAIProvider
from .openai_responses import OpenAIResponsesProvider
from .anthropic import AnthropicProvider
from .gemini import GeminiProvider
from .grok import GrokProvider
from .ollama import OllamaProvider
from .azure import AzureOpenAIProvider
from .replicate import ReplicateProvider
from .compatible import OpenAICompatibleProvider
from .registry import create_provider, parse_model_identifier, resolve_vendor

__all__ = [
    "BaseLLMProvider",
    "OpenAICompatibleHelper",
    "OpenAIProvider",
    "OpenAIResponsesProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "GrokProvider",
    "OllamaProvider",
    "AzureOpenAIProvider",
    "ReplicateProvider",
    "OpenAICompatibleProvider",
    "create_provider",
    "parse_model_identifier",
    "resolve_vendor",
]
