"""
Error taxonomy shared by every provider adapter.

Adapters never raise vendor-specific exception types. Every failure is mapped
onto one of the classes below so callers can branch on the kind and still read
a human-readable ``detail`` carrying the vendor status code and body.
"""
import json
from typing import Any, Dict, Optional

# Ceiling for vendor bodies embedded in error details
ERROR_DETAIL_LIMIT = 1000
TRUNCATION_MARKER = "…[truncated]"


def truncate_text(text: str, limit: int = ERROR_DETAIL_LIMIT) -> str:
    """Cap ``text`` at ``limit`` characters, appending the truncation marker."""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class LLMGateError(Exception):
    """Base class for all errors raised by llmgate."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class AuthenticationError(LLMGateError):
    """No usable credential, or the vendor rejected the one we sent."""


class InvalidConfigurationError(LLMGateError):
    """Endpoint, deployment or other adapter configuration is unusable."""


class InvalidInputError(LLMGateError):
    """The request cannot be expressed in the vendor's wire format."""


class NetworkError(LLMGateError):
    """Transport-level failure: DNS, connect, TLS, timeouts, dropped streams."""


class UnsupportedOperationError(LLMGateError):
    """The adapter does not implement the requested capability."""


class ModelNotFoundError(LLMGateError):
    def __init__(self, name: str):
        super().__init__(f"Model not found: {name}")
        self.name = name


class TranscriptionFailedError(LLMGateError):
    """Transcription response decoded but carried no usable transcript."""


class SpeechFailedError(LLMGateError):
    """Speech response decoded but carried no usable audio."""


class RequestCancelledError(LLMGateError):
    """The caller cancelled the request through its cancellation token."""


class APIError(LLMGateError):
    """
    The vendor answered with a non-2xx status or an unusable 2xx body.

    Attributes:
        status_code (int, optional): HTTP status returned by the vendor.
        body (str, optional): Captured (and capped) response body.
        vendor (str, optional): Vendor label the error came from.
        retry_after (float, optional): Seconds the vendor asked us to wait
            (``Retry-After``), when it said so.
    """

    def __init__(
        self,
        detail: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        vendor: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(detail)
        self.status_code = status_code
        self.body = body
        self.vendor = vendor
        self.retry_after = retry_after

    @property
    def is_retryable(self) -> bool:
        """Whether the same request may succeed if sent again later."""
        if self.status_code is None:
            return False
        return self.status_code in (408, 409, 429) or self.status_code >= 500


def _extract_message(payload: Any) -> Optional[str]:
    """Pull a human-readable message out of the common vendor error envelopes."""
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    # {"error": {"message": "...", "type": "..."}} (OpenAI, Anthropic, Google)
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    # {"error": "..."} (Ollama)
    if isinstance(error, str) and error:
        return error
    # {"message": "..."} (assorted compatible servers)
    message = payload.get("message")
    if isinstance(message, str) and message:
        return message
    # {"detail": "..."} (Replicate)
    detail = payload.get("detail")
    if isinstance(detail, str) and detail:
        return detail
    return None


def error_from_response(
    vendor: str,
    status_code: int,
    body: str,
    retry_after: Optional[float] = None,
) -> APIError:
    """
    Build the ``APIError`` for a non-2xx vendor response.

    Args:
        vendor (str): Vendor label used in the detail string.
        status_code (int): HTTP status code.
        body (str): Response body text (may already be truncated).
        retry_after (float, optional): Parsed ``Retry-After`` delay.

    Returns:
        APIError: Error carrying status, capped body and a readable detail.
    """
    message = None
    try:
        message = _extract_message(json.loads(body))
    except ValueError:
        pass
    body = truncate_text(body)

    if message:
        detail = f"{vendor} error (HTTP {status_code}): {message}"
    else:
        detail = f"{vendor} error (HTTP {status_code}): {body}"
    return APIError(detail, status_code=status_code, body=body, vendor=vendor, retry_after=retry_after)


def describe(error: LLMGateError) -> Dict[str, Any]:
    """Flatten an error into a dict suitable for logging or tool-result payloads."""
    info: Dict[str, Any] = {"kind": type(error).__name__, "detail": error.detail}
    if isinstance(error, APIError):
        info["status_code"] = error.status_code
        info["vendor"] = error.vendor
        if error.retry_after is not None:
            info["retry_after"] = error.retry_after
    return info
