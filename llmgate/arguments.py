"""
Tool argument values.

``Argument`` is the canonical in-memory form of tool call arguments and tool
results. Vendor payloads arrive as JSON text or plain Python structures and are
converted here; the MCP boundary has its own converters in ``mcp_tools``.
"""
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Set, Union

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

# Key used when a vendor sends argument text that is not a JSON object
RAW_ARGUMENTS_KEY = "_raw"


class ArgumentKind(str, Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    DOUBLE = "double"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class Argument:
    """
    Recursive tagged union: null | bool | int | double | string | array | object.

    Arrays hold a tuple of ``Argument``; objects hold a ``dict`` of string keys
    to ``Argument``. Values form a tree, each node owned by its parent.

    Attributes:
        kind (ArgumentKind): Which case of the union this value is.
        value (Any): Payload for ``kind`` (None for null).
    """
    kind: ArgumentKind
    value: Any = None

    def __post_init__(self):
        if self.kind is ArgumentKind.ARRAY:
            items = tuple(self.value or ())
            for item in items:
                if not isinstance(item, Argument):
                    raise TypeError("array items must be Argument values")
            object.__setattr__(self, "value", items)
        elif self.kind is ArgumentKind.OBJECT:
            fields = dict(self.value or {})
            for key, item in fields.items():
                if not isinstance(key, str) or not isinstance(item, Argument):
                    raise TypeError("object fields must map str to Argument")
            object.__setattr__(self, "value", fields)

    def __hash__(self):
        if self.kind is ArgumentKind.OBJECT:
            return hash((self.kind, frozenset(self.value.items())))
        return hash((self.kind, self.value))

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def null(cls) -> "Argument":
        return cls(ArgumentKind.NULL)

    @classmethod
    def boolean(cls, value: bool) -> "Argument":
        return cls(ArgumentKind.BOOL, bool(value))

    @classmethod
    def integer(cls, value: int) -> "Argument":
        return cls(ArgumentKind.INT, int(value))

    @classmethod
    def double(cls, value: float) -> "Argument":
        return cls(ArgumentKind.DOUBLE, float(value))

    @classmethod
    def string(cls, value: str) -> "Argument":
        return cls(ArgumentKind.STRING, str(value))

    @classmethod
    def array(cls, items: Iterable["Argument"]) -> "Argument":
        return cls(ArgumentKind.ARRAY, tuple(items))

    @classmethod
    def object(cls, fields: Mapping) -> "Argument":
        return cls(ArgumentKind.OBJECT, dict(fields))

    # -------------------------------------------------------------------------
    # Native conversion
    # -------------------------------------------------------------------------

    @classmethod
    def from_native(cls, value: Any) -> "Argument":
        """
        Convert a plain Python value into an ``Argument``.

        Recognizes, in order: None, bool, int, float, str, list/tuple and
        str-keyed mappings. Anything else, including containers that refer back
        to themselves, becomes its string description.

        Args:
            value (Any): Value to convert.

        Returns:
            Argument: The converted value. Never raises.
        """
        return cls._from_native(value, set())

    @classmethod
    def _from_native(cls, value: Any, active: Set[int]) -> "Argument":
        if isinstance(value, Argument):
            return value
        if value is None:
            return cls.null()
        # bool is a subclass of int and must be tested first
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, int):
            return cls.integer(value)
        if isinstance(value, float):
            return cls.double(value)
        if isinstance(value, str):
            return cls.string(value)

        is_array = isinstance(value, (list, tuple))
        is_object = isinstance(value, Mapping) and all(isinstance(k, str) for k in value)
        if not (is_array or is_object) or id(value) in active:
            return cls.string(str(value))

        active.add(id(value))
        try:
            if is_array:
                return cls.array(cls._from_native(item, active) for item in value)
            return cls.object({k: cls._from_native(v, active) for k, v in value.items()})
        finally:
            active.discard(id(value))

    def to_native(self) -> Any:
        """Inverse of ``from_native``: None, bool, int, float, str, list or dict."""
        if self.kind is ArgumentKind.ARRAY:
            return [item.to_native() for item in self.value]
        if self.kind is ArgumentKind.OBJECT:
            return {key: item.to_native() for key, item in self.value.items()}
        return self.value

    # -------------------------------------------------------------------------
    # JSON conversion
    # -------------------------------------------------------------------------

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "Argument":
        """
        Parse JSON text into an ``Argument``.

        Raises:
            InvalidInputError: If ``text`` is not valid JSON.
        """
        try:
            return cls.from_native(json.loads(text))
        except ValueError as e:
            raise InvalidInputError(f"Invalid JSON argument: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_native(), ensure_ascii=False)

    def to_text(self) -> str:
        """Render as text for wire formats that only accept string tool results."""
        if self.kind is ArgumentKind.STRING:
            return self.value
        return self.to_json()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def is_null(self) -> bool:
        return self.kind is ArgumentKind.NULL

    def get(self, key: str, default: Optional["Argument"] = None) -> Optional["Argument"]:
        """Look up ``key`` in an object value; ``default`` for any other kind."""
        if self.kind is not ArgumentKind.OBJECT:
            return default
        return self.value.get(key, default)

    def __repr__(self) -> str:
        if self.kind is ArgumentKind.NULL:
            return "Argument.null()"
        return f"Argument.{self.kind.value}({self.to_native()!r})"


ArgumentMap = Dict[str, Argument]


def _parse_nested(argument: Argument) -> Argument:
    """Replace a string holding a JSON object or array with the parsed structure."""
    if argument.kind is not ArgumentKind.STRING:
        return argument
    text = argument.value.strip()
    if not text or text[0] not in "{[":
        return argument
    try:
        return Argument.from_native(json.loads(text))
    except ValueError:
        return argument


def arguments_from_native(values: Optional[Mapping]) -> ArgumentMap:
    """Convert a plain mapping of argument values, parsing pre-serialized JSON strings."""
    if not values:
        return {}
    return {str(key): _parse_nested(Argument.from_native(value)) for key, value in values.items()}


def decode_arguments(raw: Union[str, Mapping, None]) -> ArgumentMap:
    """
    Decode tool call arguments as sent by a vendor.

    Vendors send arguments either as JSON text (OpenAI family) or as an already
    decoded object (Anthropic, Google, Ollama). Text that does not decode to a
    JSON object is kept under ``"_raw"`` so nothing is lost.

    Args:
        raw: JSON text, a mapping, or None.

    Returns:
        ArgumentMap: Decoded arguments. Never raises.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return arguments_from_native(raw)

    text = str(raw).strip()
    if not text:
        return {}
    try:
        decoded = json.loads(text)
    except ValueError:
        logger.debug("Tool arguments are not valid JSON, keeping raw text")
        return {RAW_ARGUMENTS_KEY: Argument.string(raw)}

    if isinstance(decoded, dict):
        return arguments_from_native(decoded)
    return {RAW_ARGUMENTS_KEY: Argument.string(raw)}


def arguments_hash(arguments: Mapping) -> int:
    """Content hash for an argument map, consistent with ``==``."""
    return hash(frozenset(arguments.items()))


def arguments_to_native(arguments: Mapping) -> Dict[str, Any]:
    return {key: value.to_native() for key, value in arguments.items()}


def encode_arguments(arguments: Mapping) -> str:
    """Serialize an argument map to the JSON text form used on the wire."""
    return json.dumps(arguments_to_native(arguments), ensure_ascii=False)
