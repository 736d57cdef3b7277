from typing import Dict, List, Optional

from ..streaming import Emit
from ..types import Done, ProviderRequest, ProviderResponse, Vendor
from .base import BaseLLMProvider
from .openai_compatible import OpenAICompatibleHelper


class OpenAICompatibleProvider(BaseLLMProvider):
    """
    Provider for any server that speaks the OpenAI chat-completions dialect
    (vLLM, LM Studio, DeepSeek, OpenRouter, ...).

    A base URL is required; the API key is optional.

    Args:
        model (str): Model identifier understood by the server.
        configuration (ConfigurationProvider, optional): Configuration source.
        name (str): Label used in logs and error details.
        send_top_k (bool): Forward ``top_k`` (most self-hosted servers accept it).
        headers (dict, optional): Extra headers sent with every call.
    """

    vendor = Vendor.OPENAI_COMPATIBLE
    requires_api_key = False

    def __init__(
        self,
        model,
        configuration=None,
        *,
        name: str = "OpenAI-compatible",
        send_top_k: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ):
        self.label = name
        super().__init__(model, configuration, **kwargs)
        self.headers = dict(headers or {})
        self._chat = OpenAICompatibleHelper(self, send_top_k=send_top_k)

    def _auth_headers(self) -> Dict[str, str]:
        return self._chat.auth_headers(self.api_key)

    def _extra_headers(self) -> Dict[str, str]:
        return dict(self.headers)

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        return await self._chat.generate(request)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        return await self._chat.stream(request, emit)

    async def list_models(self) -> List[str]:
        return await self._chat.list_models()
