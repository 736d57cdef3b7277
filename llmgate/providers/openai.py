from typing import Dict, List, Optional

from ..streaming import Emit
from ..types import Done, ProviderRequest, ProviderResponse, Vendor
from .base import BaseLLMProvider
from .openai_compatible import OpenAICompatibleHelper

# Reasoning models reject max_tokens in favour of max_completion_tokens
REASONING_PREFIXES = ("o1", "o3", "o4", "gpt-5")


class OpenAIProvider(BaseLLMProvider):
    """
    Provider for the OpenAI Chat Completions API.

    Sends ``OpenAI-Organization`` when ``OPENAI_ORG_ID`` is configured.
    """

    vendor = Vendor.OPENAI
    label = "OpenAI"
    default_base_url = "https://api.openai.com/v1"

    def __init__(self, model, configuration=None, **kwargs):
        super().__init__(model, configuration, **kwargs)
        self.organization: Optional[str] = self.configuration.get_setting("OPENAI_ORG_ID")
        reasoning = self.model.name.lower().startswith(REASONING_PREFIXES)
        self._chat = OpenAICompatibleHelper(
            self,
            max_tokens_field="max_completion_tokens" if reasoning else "max_tokens",
        )

    def _auth_headers(self) -> Dict[str, str]:
        return self._chat.auth_headers(self.api_key)

    def _extra_headers(self) -> Dict[str, str]:
        if self.organization:
            return {"OpenAI-Organization": self.organization}
        return {}

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """
        Send a chat request using the Chat Completions endpoint.

        Args:
            request (ProviderRequest): Unified request.

        Returns:
            ProviderResponse: Text, usage, finish reason and any tool calls.
        """
        return await self._chat.generate(request)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        return await self._chat.stream(request, emit)

    async def list_models(self) -> List[str]:
        return await self._chat.list_models()
