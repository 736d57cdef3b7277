import logging
from abc import ABC, abstractmethod
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

import httpx

from ..cancellation import CancellationToken
from ..config import API_KEY_VARIABLES, Configuration, ConfigurationProvider
from ..errors import (
    APIError, AuthenticationError, InvalidConfigurationError, LLMGateError, NetworkError,
    UnsupportedOperationError, error_from_response, truncate_text,
)
from ..models import model_info
from ..retry import RetryPolicy, parse_retry_after, retry_async
from ..streaming import (
    Emit, MalformedFramePolicy, WireFormat, collect_stream, read_error_body, run_producer,
)
from ..types import (
    Done, FinishReason, ModelInfo, ProviderRequest, ProviderResponse, StreamEvent, Usage, Vendor,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


class BaseLLMProvider(ABC):
    """
    Abstract base class for provider adapters.

    An adapter is built once per (vendor, model, credentials, endpoint) and is
    not modified afterwards, so one instance can serve many concurrent
    requests. Credentials are resolved at construction; a missing key fails
    here rather than on the first call.

    Subclasses set the class attributes below and implement
    ``_produce_stream``. ``generate_text`` drains the stream unless the
    subclass has a unary endpoint it prefers.
    """

    vendor: Vendor
    label: str = "Provider"
    default_base_url: Optional[str] = None
    requires_api_key: bool = True
    wire_format: WireFormat = WireFormat.SSE
    malformed_frames: MalformedFramePolicy = MalformedFramePolicy.SKIP
    stream_accept: str = "text/event-stream"

    def __init__(
        self,
        model: Union[str, ModelInfo],
        configuration: Optional[ConfigurationProvider] = None,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Args:
            model (str | ModelInfo): Model name, or a full ``ModelInfo``.
            configuration (ConfigurationProvider, optional): Source of keys and
                base URLs. Defaults to ``Configuration()``.
            api_key (str, optional): Explicit key, overriding configuration.
            base_url (str, optional): Explicit base URL, overriding configuration.
            transport (httpx.AsyncBaseTransport, optional): Injected transport,
                e.g. ``httpx.MockTransport`` in tests.
            timeout (float): Per-request timeout in seconds.
            retry_policy (RetryPolicy, optional): Backoff for transient
                failures (network errors, 408/409/429/5xx). Only the opening
                of a call is retried. None sends each request once.

        Raises:
            AuthenticationError: If a key is required and none resolves.
            InvalidConfigurationError: If the base URL is malformed.
        """
        self.configuration = configuration if configuration is not None else Configuration()
        self.model = model if isinstance(model, ModelInfo) else model_info(self.vendor, model)
        self.api_key = api_key or self._resolve_api_key()
        if self.requires_api_key and not self.api_key:
            raise AuthenticationError(self._missing_key_message())

        resolved = base_url or self.configuration.get_base_url(self.vendor) or self.default_base_url
        if not resolved:
            raise InvalidConfigurationError(f"No base URL configured for {self.label}")
        self.base_url = self.validate_base_url(resolved)
        self._transport = transport
        self._timeout = timeout
        self.retry_policy = retry_policy

    def _resolve_api_key(self) -> Optional[str]:
        return self.configuration.get_api_key(self.vendor)

    def _missing_key_message(self) -> str:
        names = " or ".join(API_KEY_VARIABLES.get(self.vendor, ())) or "an API key"
        return f"{self.label} API key not found (set {names})"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model.name!r}, base_url={self.base_url!r})"

    # ==========================================================================
    # Capabilities
    # ==========================================================================

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """
        Produce a complete response.

        The default drains ``stream_text`` and folds the events, which keeps
        both entry points consistent for stream-first vendors.

        Args:
            request (ProviderRequest): Unified request.

        Returns:
            ProviderResponse: Final text, usage, finish reason and tool calls.
        """
        async with aclosing(self.stream_text(request)) as events:
            return await collect_stream(events)

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream unified events for ``request``.

        Exactly one ``Done`` ends a successful stream. Failures, including
        cancellation, surface as an exception raised from the iteration.

        Yields:
            StreamEvent: ``TextDelta``, ``ToolCallStart``, ``ToolCallArgument``,
            ``ToolCallEnd`` and finally ``Done``.
        """
        request.raise_if_cancelled()
        producer = run_producer(lambda emit: self._produce_stream(request, emit))
        async with aclosing(producer) as events:
            async for event in events:
                yield event

    @abstractmethod
    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        """Issue the streaming call, emit events, and return the terminal ``Done``."""

    async def list_models(self) -> List[str]:
        """
        Get list of available models from the vendor.

        Raises:
            UnsupportedOperationError: If the vendor has no listing endpoint.
        """
        raise UnsupportedOperationError(f"{self.label} does not support listing models")

    # ==========================================================================
    # HTTP Plumbing
    # ==========================================================================

    def validate_base_url(self, url: str) -> str:
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as e:
            raise InvalidConfigurationError(f"Invalid base URL for {self.label}: {url!r}") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise InvalidConfigurationError(f"Invalid base URL for {self.label}: {url!r}")
        return url.rstrip("/")

    def build_url(self, path: str, query: Optional[Mapping[str, str]] = None) -> httpx.URL:
        """
        Join ``path`` onto the base URL and merge query items.

        Raises:
            InvalidConfigurationError: If the result is not a valid http(s) URL.
        """
        raw = f"{self.base_url}/{path.lstrip('/')}" if path else self.base_url
        try:
            url = httpx.URL(raw)
        except httpx.InvalidURL as e:
            raise InvalidConfigurationError(f"Invalid endpoint for {self.label}: {raw!r}") from e
        if not url.host:
            raise InvalidConfigurationError(f"Invalid endpoint for {self.label}: {raw!r}")
        if query:
            url = url.copy_merge_params(dict(query))
        return url

    def _auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def _extra_headers(self) -> Dict[str, str]:
        return {}

    def _headers(self, *, stream: bool = False, json_body: bool = True) -> Dict[str, str]:
        headers = {"Accept": self.stream_accept if stream else "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        headers.update(self._auth_headers())
        headers.update(self._extra_headers())
        return headers

    def _status_error(self, status_code: int, body: str) -> LLMGateError:
        """Map a non-2xx status to an error; adapters override for vendor-specific kinds."""
        return error_from_response(self.label, status_code, body)

    def _response_error(self, response: httpx.Response, body: str) -> LLMGateError:
        error = self._status_error(response.status_code, body)
        if isinstance(error, APIError) and error.retry_after is None:
            error.retry_after = parse_retry_after(response.headers.get("Retry-After"))
        return error

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def _send(
        self,
        method: str,
        url: httpx.URL,
        *,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[CancellationToken] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Issue one unary HTTP call and check the status.

        Raises:
            NetworkError: On transport failure.
            APIError: On a non-2xx status.
            RequestCancelledError: If cancelled before or during the call.

        Transient failures are retried according to ``retry_policy``.
        """
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        async def attempt() -> httpx.Response:
            logger.debug("%s %s%s (%s)", method, url.host, url.path, self.label)
            try:
                async with self._client() as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                raise NetworkError(f"{self.label} request failed: {e}") from e
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            if not response.is_success:
                raise self._response_error(response, response.text)
            return response

        return await retry_async(attempt, self.retry_policy, label=self.label, cancellation=cancellation)

    async def _post_json(self, url: httpx.URL, body: Dict[str, Any], request: ProviderRequest) -> Any:
        response = await self._send(
            "POST", url, json=body, headers=self._headers(), cancellation=request.cancellation
        )
        return self._decode_json(response)

    def _decode_json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise APIError(
                f"{self.label} returned an undecodable body: {truncate_text(response.text, 200)}",
                status_code=response.status_code,
                body=truncate_text(response.text),
                vendor=self.label,
            ) from e

    @asynccontextmanager
    async def _open_stream(
        self,
        url: httpx.URL,
        body: Dict[str, Any],
        request: ProviderRequest,
    ) -> AsyncIterator[httpx.Response]:
        """
        Open a streaming POST and yield the response once its status is 2xx.

        Opening the stream (up to the status check) is retried according to
        ``retry_policy``; nothing is retried once the body is being read.
        Transport failures while the body is being consumed are mapped to
        ``NetworkError`` as well.
        """
        request.raise_if_cancelled()
        async with self._client() as client:

            async def attempt() -> httpx.Response:
                logger.debug("POST %s%s (%s, stream)", url.host, url.path, self.label)
                outgoing = client.build_request("POST", url, json=body, headers=self._headers(stream=True))
                try:
                    response = await client.send(outgoing, stream=True)
                except httpx.TransportError as e:
                    raise NetworkError(f"{self.label} stream failed: {e}") from e
                if response.is_success:
                    return response
                try:
                    error_body = await read_error_body(response)
                except httpx.TransportError as e:
                    raise NetworkError(f"{self.label} stream failed: {e}") from e
                finally:
                    await response.aclose()
                raise self._response_error(response, error_body)

            response = await retry_async(
                attempt, self.retry_policy, label=self.label, cancellation=request.cancellation
            )
            try:
                yield response
            except httpx.TransportError as e:
                raise NetworkError(f"{self.label} stream failed: {e}") from e
            finally:
                await response.aclose()

    # ==========================================================================
    # Translation Helpers
    # ==========================================================================

    @staticmethod
    def map_finish_reason(
        table: Mapping[str, FinishReason],
        value: Optional[str],
    ) -> Optional[FinishReason]:
        """Look ``value`` up in a vendor table; unknown values become ``OTHER``."""
        if value is None:
            return None
        return table.get(str(value).lower(), FinishReason.OTHER)

    @staticmethod
    def normalize_usage(
        *,
        input_tokens: Optional[int],
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> Optional[Usage]:
        """
        Normalize token usage across providers.

        Returns None when the vendor reported no counters at all.
        """
        if input_tokens is None and output_tokens is None and total_tokens is None:
            return None
        return Usage.reconcile(input_tokens, output_tokens, total_tokens)
