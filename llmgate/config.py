"""
Configuration provider for adapters.

Values resolve in order: explicit constructor arguments, the process
environment, then a ``.env`` file read once at construction.
"""
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, Tuple, Union

import dotenv

from .types import Vendor

API_KEY_VARIABLES: Dict[Vendor, Tuple[str, ...]] = {
    Vendor.OPENAI: ("OPENAI_API_KEY",),
    Vendor.ANTHROPIC: ("ANTHROPIC_API_KEY",),
    Vendor.GOOGLE: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    Vendor.GROK: ("X_AI_API_KEY", "XAI_API_KEY"),
    Vendor.OLLAMA: ("OLLAMA_API_KEY",),
    Vendor.AZURE_OPENAI: ("AZURE_OPENAI_API_KEY",),
    Vendor.REPLICATE: ("REPLICATE_API_TOKEN",),
    Vendor.OPENAI_COMPATIBLE: ("OPENAI_COMPATIBLE_API_KEY",),
}

BASE_URL_VARIABLES: Dict[Vendor, Tuple[str, ...]] = {
    Vendor.OPENAI: ("OPENAI_BASE_URL",),
    Vendor.ANTHROPIC: ("ANTHROPIC_BASE_URL",),
    Vendor.GOOGLE: ("GEMINI_BASE_URL", "GOOGLE_BASE_URL"),
    Vendor.GROK: ("XAI_BASE_URL", "X_AI_BASE_URL"),
    Vendor.OLLAMA: ("OLLAMA_BASE_URL", "OLLAMA_HOST"),
    Vendor.AZURE_OPENAI: ("AZURE_OPENAI_ENDPOINT",),
    Vendor.REPLICATE: ("REPLICATE_BASE_URL",),
    Vendor.OPENAI_COMPATIBLE: ("OPENAI_COMPATIBLE_BASE_URL",),
}


class ConfigurationProvider(Protocol):
    """What adapters need from configuration."""

    def get_api_key(self, vendor: Vendor) -> Optional[str]:
        ...

    def get_base_url(self, vendor: Vendor) -> Optional[str]:
        ...

    def get_setting(self, name: str) -> Optional[str]:
        ...


class Configuration:
    """
    Explicit configuration object handed to every adapter.

    Nothing here is mutated after construction; build a new ``Configuration``
    to change credentials or endpoints.

    Args:
        api_keys (Mapping, optional): Vendor -> API key overrides.
        base_urls (Mapping, optional): Vendor -> base URL overrides.
        settings (Mapping, optional): Extra named settings (e.g. ``OPENAI_ORG_ID``).
        env_file (str | Path, optional): ``.env`` file to read. ``None`` skips it.
        use_environment (bool): Whether to consult ``os.environ``.
    """

    def __init__(
        self,
        api_keys: Optional[Mapping[Union[Vendor, str], str]] = None,
        base_urls: Optional[Mapping[Union[Vendor, str], str]] = None,
        settings: Optional[Mapping[str, str]] = None,
        env_file: Optional[Union[str, Path]] = ".env",
        use_environment: bool = True,
    ):
        self._api_keys = {Vendor(k): v for k, v in (api_keys or {}).items() if v}
        self._base_urls = {Vendor(k): v for k, v in (base_urls or {}).items() if v}
        self._settings = dict(settings or {})
        self._environ = dict(os.environ) if use_environment else {}

        self._dotenv: Dict[str, str] = {}
        if env_file is not None and Path(env_file).is_file():
            self._dotenv = {k: v for k, v in dotenv.dotenv_values(env_file).items() if v}

    def get_setting(self, name: str) -> Optional[str]:
        """Look up a named value in settings, then environment, then ``.env``."""
        for source in (self._settings, self._environ, self._dotenv):
            value = source.get(name)
            if value:
                return value
        return None

    def _first_setting(self, names: Tuple[str, ...]) -> Optional[str]:
        for name in names:
            value = self.get_setting(name)
            if value:
                return value
        return None

    def get_api_key(self, vendor: Vendor) -> Optional[str]:
        vendor = Vendor(vendor)
        if vendor in self._api_keys:
            return self._api_keys[vendor]
        return self._first_setting(API_KEY_VARIABLES.get(vendor, ()))

    def get_base_url(self, vendor: Vendor) -> Optional[str]:
        vendor = Vendor(vendor)
        if vendor in self._base_urls:
            return self._base_urls[vendor]
        return self._first_setting(BASE_URL_VARIABLES.get(vendor, ()))

    def replace(self, **kwargs) -> "Configuration":
        """Return a new configuration with some explicit values overridden."""
        api_keys = {**self._api_keys, **kwargs.pop("api_keys", {})}
        base_urls = {**self._base_urls, **kwargs.pop("base_urls", {})}
        settings = {**self._settings, **kwargs.pop("settings", {})}
        if kwargs:
            raise TypeError(f"Unexpected arguments: {', '.join(kwargs)}")
        clone = Configuration(api_keys, base_urls, settings, env_file=None, use_environment=False)
        clone._environ = dict(self._environ)
        clone._dotenv = dict(self._dotenv)
        return clone

    def __repr__(self) -> str:
        configured = sorted(v.value for v in Vendor if self.get_api_key(v))
        return f"Configuration(vendors_with_keys={configured})"
