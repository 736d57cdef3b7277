"""
Vendor dispatch: one constructor per vendor, plus model-string parsing.
"""
from typing import Callable, Dict, Optional, Tuple, Type, Union

from ..config import ConfigurationProvider
from ..errors import InvalidConfigurationError
from ..models import prefers_responses_api
from ..types import Vendor
from .anthropic import AnthropicProvider
from .azure import AzureOpenAIProvider
from .base import BaseLLMProvider
from .compatible import OpenAICompatibleProvider
from .gemini import GeminiProvider
from .grok import GrokProvider
from .ollama import OllamaProvider
from .openai import OpenAIProvider
from .openai_responses import OpenAIResponsesProvider
from .replicate import ReplicateProvider

PROVIDERS: Dict[Vendor, Type[BaseLLMProvider]] = {
    Vendor.OPENAI: OpenAIProvider,
    Vendor.ANTHROPIC: AnthropicProvider,
    Vendor.GOOGLE: GeminiProvider,
    Vendor.GROK: GrokProvider,
    Vendor.OLLAMA: OllamaProvider,
    Vendor.AZURE_OPENAI: AzureOpenAIProvider,
    Vendor.REPLICATE: ReplicateProvider,
    Vendor.OPENAI_COMPATIBLE: OpenAICompatibleProvider,
}

VENDOR_ALIASES: Dict[str, Vendor] = {
    "claude": Vendor.ANTHROPIC,
    "gemini": Vendor.GOOGLE,
    "xai": Vendor.GROK,
    "x-ai": Vendor.GROK,
    "azure": Vendor.AZURE_OPENAI,
    "azure-openai": Vendor.AZURE_OPENAI,
    "compatible": Vendor.OPENAI_COMPATIBLE,
}


def resolve_vendor(name: Union[str, Vendor]) -> Vendor:
    """
    Normalize a vendor name or alias.

    Raises:
        InvalidConfigurationError: If the name is not a known vendor.
    """
    if isinstance(name, Vendor):
        return name
    key = name.strip().lower()
    if key in VENDOR_ALIASES:
        return VENDOR_ALIASES[key]
    try:
        return Vendor(key.replace("-", "_"))
    except ValueError:
        raise InvalidConfigurationError(f"Unknown vendor: {name!r}") from None


def parse_model_identifier(identifier: str) -> Tuple[Vendor, str]:
    """
    Split ``"vendor/model"`` into its parts.

    Only the first slash separates the vendor, so Ollama and Replicate names
    containing slashes survive (``"replicate/meta/llama-3"``).

    Raises:
        InvalidConfigurationError: If there is no vendor prefix or it is unknown.
    """
    vendor, sep, model = identifier.partition("/")
    if not sep or not model:
        raise InvalidConfigurationError(f"Expected 'vendor/model', got {identifier!r}")
    return resolve_vendor(vendor), model


def create_provider(
    vendor: Union[str, Vendor],
    model: str,
    configuration: Optional[ConfigurationProvider] = None,
    *,
    use_responses_api: Optional[bool] = None,
    **options,
) -> BaseLLMProvider:
    """
    Build the adapter for ``vendor``.

    Args:
        vendor (str | Vendor): Vendor or alias.
        model (str): Model name (deployment name for Azure).
        configuration (ConfigurationProvider, optional): Keys and endpoints.
        use_responses_api (bool, optional): Force (or forbid) the OpenAI
            Responses API. By default it is used only for models that require it.
        **options: Passed to the adapter constructor (``transport``,
            ``base_url``, ``api_key``, ``timeout`` and vendor-specific options).

    Returns:
        BaseLLMProvider: A ready adapter.
    """
    vendor = resolve_vendor(vendor)
    factory: Callable[..., BaseLLMProvider] = PROVIDERS[vendor]
    if vendor is Vendor.OPENAI:
        if use_responses_api is None:
            use_responses_api = prefers_responses_api(model)
        if use_responses_api:
            factory = OpenAIResponsesProvider
    return factory(model, configuration, **options)
