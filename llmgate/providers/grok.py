from typing import Dict, List

from ..streaming import Emit
from ..types import Done, ProviderRequest, ProviderResponse, Vendor
from .base import BaseLLMProvider
from .openai_compatible import OpenAICompatibleHelper


class GrokProvider(BaseLLMProvider):
    """Provider for xAI Grok, which serves the OpenAI chat-completions dialect."""

    vendor = Vendor.GROK
    label = "Grok"
    default_base_url = "https://api.x.ai/v1"

    def __init__(self, model, configuration=None, **kwargs):
        super().__init__(model, configuration, **kwargs)
        self._chat = OpenAICompatibleHelper(self)

    def _auth_headers(self) -> Dict[str, str]:
        return self._chat.auth_headers(self.api_key)

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        return await self._chat.generate(request)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        return await self._chat.stream(request, emit)

    async def list_models(self) -> List[str]:
        return await self._chat.list_models()
