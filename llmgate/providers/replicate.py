from typing import Dict

from ..streaming import Emit
from ..types import Done, ProviderRequest, ProviderResponse, Vendor
from .base import BaseLLMProvider
from .openai_compatible import OpenAICompatibleHelper


class ReplicateProvider(BaseLLMProvider):
    """
    Provider for Replicate's OpenAI-compatible chat endpoint.

    Setting ``REPLICATE_PREFERRED_OUTPUT=turbo`` sends ``Prefer: wait=false``
    so predictions are not held open server-side.
    """

    vendor = Vendor.REPLICATE
    label = "Replicate"
    default_base_url = "https://api.replicate.com/v1"

    def __init__(self, model, configuration=None, **kwargs):
        super().__init__(model, configuration, **kwargs)
        preferred = self.configuration.get_setting("REPLICATE_PREFERRED_OUTPUT") or ""
        self.turbo = preferred.lower() == "turbo"
        self._chat = OpenAICompatibleHelper(self, stream_usage=False, models_path=None)

    def _auth_headers(self) -> Dict[str, str]:
        return self._chat.auth_headers(self.api_key)

    def _extra_headers(self) -> Dict[str, str]:
        if self.turbo:
            return {"Prefer": "wait=false"}
        return {}

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        return await self._chat.generate(request)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        return await self._chat.stream(request, emit)
