import base64
import binascii
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from .errors import InvalidInputError, NetworkError, error_from_response
from .types import ContentPart, ImagePart, Message, Role, TextPart, ToolCall, ToolDefinition

# =============================================================================
# Image Helpers
# =============================================================================

IMAGE_MIME_TYPES: Dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}


def guess_mime_type(path: Union[str, Path], default: str = "image/jpeg") -> str:
    """Image MIME type from a file extension, or ``default`` when unknown."""
    return IMAGE_MIME_TYPES.get(Path(path).suffix.lower(), default)


def image_from_file(image_path: Union[str, Path]) -> ImagePart:
    """
    Load a local image file as inline image content.

    Args:
        image_path (str | Path): Path to the image file.

    Returns:
        ImagePart: Image bytes with the MIME type taken from the extension.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")
    return ImagePart(data=path.read_bytes(), mime_type=guess_mime_type(path))


def image_from_data_uri(uri: str) -> ImagePart:
    """
    Decode a ``data:<mime>;base64,<payload>`` URI.

    Raises:
        InvalidInputError: If the URI is not base64 data or does not decode.
    """
    if not uri.startswith("data:") or "," not in uri:
        raise InvalidInputError("Expected a data URI (data:<mime>;base64,<data>)")
    header, payload = uri.split(",", 1)
    media = header[len("data:"):]
    if not media.endswith(";base64"):
        raise InvalidInputError("Only base64 data URIs are supported")
    mime_type = media[: -len(";base64")] or "image/jpeg"
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInputError("Data URI payload is not valid base64") from None
    return ImagePart(data=data, mime_type=mime_type)


async def image_from_url(
    url: str,
    *,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ImagePart:
    """
    Download an image and inline it.

    Useful for vendors that only accept inline image data (Ollama).

    Args:
        url (str): Publicly reachable image URL.
        timeout (float): Download timeout in seconds.
        transport (httpx.AsyncBaseTransport, optional): Injected transport.

    Returns:
        ImagePart: Downloaded bytes, MIME type from the Content-Type header.

    Raises:
        NetworkError: If the download cannot complete.
        APIError: If the server answers with a non-2xx status.
    """
    # Some image hosts reject clients without a browser-like agent
    headers = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"}
    async with httpx.AsyncClient(
        timeout=timeout, headers=headers, follow_redirects=True, transport=transport
    ) as http_client:
        try:
            response = await http_client.get(url)
        except httpx.TransportError as e:
            raise NetworkError(f"Image download failed: {e}") from e

    if not response.is_success:
        raise error_from_response("Image download", response.status_code, response.text)
    content_type = response.headers.get("content-type", "image/jpeg")
    return ImagePart(data=response.content, mime_type=content_type.split(";")[0].strip())


def create_image_content(source: str, *, mime_type: Optional[str] = None) -> ImagePart:
    """
    Build image content from whatever reference the caller has.

    Args:
        source (str): Can be:
            - A data URI (``data:image/png;base64,...``)
            - A remote URL (kept as a URL; vendors that need bytes will refuse it)
            - Raw base64 data (requires ``mime_type``)
            - A local file path
        mime_type (str, optional): Required when ``source`` is raw base64.

    Raises:
        InvalidInputError: If the source type cannot be determined.
    """
    if source.startswith("data:"):
        return image_from_data_uri(source)
    if source.startswith(("http://", "https://")):
        return ImagePart(url=source, mime_type=mime_type or "image/jpeg")
    if mime_type:
        return image_from_data_uri(f"data:{mime_type};base64,{source}")
    if len(source) < 260 and Path(source).exists():
        return image_from_file(source)
    raise InvalidInputError(
        f"Cannot determine image source type for: {source[:50]}... "
        "Provide mime_type for raw base64 data."
    )


# =============================================================================
# Message Helpers
# =============================================================================

def create_message(role: Role, content: Union[str, Sequence[Union[str, ContentPart]]]) -> Message:
    """
    Create a message from a string or a list of strings and content parts.

    Strings inside a list become text parts.
    """
    if isinstance(content, str):
        content = [content]
    return Message(role, tuple(TextPart(item) if isinstance(item, str) else item for item in content))


# =============================================================================
# Tool Calling Helpers
# =============================================================================

def create_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> ToolDefinition:
    """
    Create a tool definition from its property schemas.

    Args:
        name (str): Function name the model will call.
        description (str): What the tool does.
        parameters (Dict): JSON Schema for each property, keyed by name.
        required (List[str], optional): Names of required properties.

    Returns:
        ToolDefinition: Tool with an object-typed parameter schema.
    """
    return ToolDefinition(
        name=name,
        description=description,
        parameters={
            "type": "object",
            "properties": parameters,
            "required": required or [],
        },
    )


def create_tool_result(tool_call_id: str, content: Any, *, is_error: bool = False, name: Optional[str] = None) -> Message:
    """Tool-result message; ``content`` is any JSON-like value."""
    return Message.tool_result(tool_call_id, content, is_error=is_error, name=name)


def create_assistant_message_with_tool_calls(content: str, tool_calls: Sequence[ToolCall]) -> Message:
    return Message.assistant(content, tool_calls)
