from typing import Dict, Optional
from urllib.parse import quote

from ..config import Configuration, ConfigurationProvider
from ..errors import AuthenticationError, InvalidConfigurationError
from ..streaming import Emit
from ..types import Done, ProviderRequest, ProviderResponse, Vendor
from .base import BaseLLMProvider
from .openai_compatible import OpenAICompatibleHelper

DEFAULT_API_VERSION = "2024-10-21"


def resolve_azure_endpoint(
    configuration: ConfigurationProvider,
    endpoint: Optional[str] = None,
    resource: Optional[str] = None,
) -> str:
    """
    Work out the Azure OpenAI endpoint.

    Order: explicit endpoint, configured ``AZURE_OPENAI_ENDPOINT`` (``https://``
    is added when the scheme is missing), then ``https://{resource}.openai.azure.com``.

    Raises:
        InvalidConfigurationError: If neither an endpoint nor a resource is known.
    """
    endpoint = endpoint or configuration.get_base_url(Vendor.AZURE_OPENAI)
    if endpoint:
        if "://" not in endpoint:
            endpoint = f"https://{endpoint}"
        return endpoint

    resource = resource or configuration.get_setting("AZURE_OPENAI_RESOURCE")
    if resource:
        return f"https://{resource}.openai.azure.com"
    raise InvalidConfigurationError(
        "Azure OpenAI endpoint not configured (set AZURE_OPENAI_ENDPOINT or AZURE_OPENAI_RESOURCE)"
    )


class AzureOpenAIProvider(BaseLLMProvider):
    """
    Provider for Azure OpenAI deployments.

    The model name is the deployment name. A bearer token (Entra ID) is used
    when available, otherwise the ``api-key`` header.

    Args:
        deployment (str): Deployment name.
        configuration (ConfigurationProvider, optional): Configuration source.
        endpoint (str, optional): Explicit endpoint, e.g. ``https://x.openai.azure.com``.
        resource (str, optional): Resource name used when no endpoint is set.
        api_version (str, optional): ``api-version`` query value.
        bearer_token (str, optional): Entra ID access token.
    """

    vendor = Vendor.AZURE_OPENAI
    label = "Azure OpenAI"
    requires_api_key = False

    def __init__(
        self,
        deployment,
        configuration: Optional[ConfigurationProvider] = None,
        *,
        endpoint: Optional[str] = None,
        resource: Optional[str] = None,
        api_version: Optional[str] = None,
        bearer_token: Optional[str] = None,
        **kwargs,
    ):
        configuration = configuration if configuration is not None else Configuration()
        api_key = kwargs.pop("api_key", None) or configuration.get_api_key(Vendor.AZURE_OPENAI)
        self.bearer_token = (
            bearer_token
            or configuration.get_setting("AZURE_OPENAI_BEARER_TOKEN")
            or configuration.get_setting("AZURE_OPENAI_TOKEN")
        )
        if not api_key and not self.bearer_token:
            raise AuthenticationError(
                "Azure OpenAI credentials not found (set AZURE_OPENAI_API_KEY or AZURE_OPENAI_BEARER_TOKEN)"
            )

        base_url = kwargs.pop("base_url", None) or resolve_azure_endpoint(configuration, endpoint, resource)
        super().__init__(deployment, configuration, api_key=api_key, base_url=base_url, **kwargs)

        self.api_version = (
            api_version
            or configuration.get_setting("AZURE_OPENAI_API_VERSION")
            or DEFAULT_API_VERSION
        )
        self._chat = OpenAICompatibleHelper(
            self,
            path=f"/openai/deployments/{quote(self.model.name, safe='')}/chat/completions",
            query={"api-version": self.api_version},
            auth_header="api-key",
            auth_prefix="",
            models_path=None,
        )

    def _auth_headers(self) -> Dict[str, str]:
        if self.bearer_token:
            return {"Authorization": f"Bearer {self.bearer_token}"}
        return self._chat.auth_headers(self.api_key)

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        return await self._chat.generate(request)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        return await self._chat.stream(request, emit)
