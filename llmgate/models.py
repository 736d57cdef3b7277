"""
Capability defaults for known model families.

Lookups match on name prefix; the longest matching prefix wins. Unknown models
get the vendor's default capabilities.
"""
from typing import Dict, Optional, Tuple

from .types import ModelCapabilities, ModelInfo, Vendor

_VENDOR_DEFAULTS: Dict[Vendor, ModelCapabilities] = {
    Vendor.OPENAI: ModelCapabilities(vision=True, context_length=128_000, max_output_tokens=16_384),
    Vendor.ANTHROPIC: ModelCapabilities(vision=True, context_length=200_000, max_output_tokens=8192),
    Vendor.GOOGLE: ModelCapabilities(vision=True, context_length=1_048_576, max_output_tokens=8192),
    Vendor.GROK: ModelCapabilities(vision=False, context_length=131_072, max_output_tokens=8192),
    Vendor.OLLAMA: ModelCapabilities(vision=False, context_length=8192, max_output_tokens=4096),
    Vendor.AZURE_OPENAI: ModelCapabilities(vision=True, context_length=128_000, max_output_tokens=16_384),
    Vendor.REPLICATE: ModelCapabilities(tools=False, context_length=8192, max_output_tokens=4096),
    Vendor.OPENAI_COMPATIBLE: ModelCapabilities(),
}

_KNOWN_MODELS: Tuple[Tuple[Vendor, str, ModelCapabilities], ...] = (
    (Vendor.OPENAI, "gpt-4.1", ModelCapabilities(vision=True, context_length=1_047_576, max_output_tokens=32_768)),
    (Vendor.OPENAI, "gpt-4o", ModelCapabilities(vision=True, context_length=128_000, max_output_tokens=16_384)),
    (Vendor.OPENAI, "gpt-3.5", ModelCapabilities(vision=False, context_length=16_385, max_output_tokens=4096)),
    (Vendor.OPENAI, "o1", ModelCapabilities(vision=True, context_length=200_000, max_output_tokens=100_000)),
    (Vendor.OPENAI, "o3", ModelCapabilities(vision=True, context_length=200_000, max_output_tokens=100_000)),
    (Vendor.OPENAI, "o4", ModelCapabilities(vision=True, context_length=200_000, max_output_tokens=100_000)),
    (Vendor.OPENAI, "gpt-5", ModelCapabilities(vision=True, context_length=400_000, max_output_tokens=128_000)),
    (Vendor.ANTHROPIC, "claude-3-haiku", ModelCapabilities(vision=True, context_length=200_000, max_output_tokens=4096)),
    (Vendor.ANTHROPIC, "claude-opus-4", ModelCapabilities(vision=True, context_length=200_000, max_output_tokens=32_000)),
    (Vendor.ANTHROPIC, "claude-sonnet-4", ModelCapabilities(vision=True, context_length=200_000, max_output_tokens=64_000)),
    (Vendor.GOOGLE, "gemini-1.5-pro", ModelCapabilities(vision=True, context_length=2_097_152, max_output_tokens=8192)),
    (Vendor.GOOGLE, "gemini-2.5", ModelCapabilities(vision=True, context_length=1_048_576, max_output_tokens=65_536)),
    (Vendor.GROK, "grok-2-vision", ModelCapabilities(vision=True, context_length=32_768, max_output_tokens=8192)),
    (Vendor.GROK, "grok-4", ModelCapabilities(vision=True, context_length=256_000, max_output_tokens=8192)),
    (Vendor.OLLAMA, "llava", ModelCapabilities(vision=True, tools=False, context_length=4096, max_output_tokens=2048)),
    (Vendor.OLLAMA, "llama3.2-vision", ModelCapabilities(vision=True, context_length=128_000, max_output_tokens=4096)),
    (Vendor.OLLAMA, "llama3", ModelCapabilities(vision=False, context_length=128_000, max_output_tokens=4096)),
)

# Models that only speak the Responses API
RESPONSES_ONLY_PREFIXES = ("o1-pro", "o3-pro", "codex-", "computer-use")


def infer_capabilities(vendor: Vendor, name: str) -> ModelCapabilities:
    best: Optional[Tuple[int, ModelCapabilities]] = None
    lowered = name.lower()
    for known_vendor, prefix, capabilities in _KNOWN_MODELS:
        if known_vendor is not vendor or not lowered.startswith(prefix):
            continue
        if best is None or len(prefix) > best[0]:
            best = (len(prefix), capabilities)
    if best is not None:
        return best[1]
    return _VENDOR_DEFAULTS.get(vendor, ModelCapabilities())


def model_info(vendor: Vendor, name: str, capabilities: Optional[ModelCapabilities] = None) -> ModelInfo:
    """Build a ``ModelInfo``, inferring capabilities when none are given."""
    return ModelInfo(vendor, name, capabilities or infer_capabilities(vendor, name))


def prefers_responses_api(name: str) -> bool:
    return name.lower().startswith(RESPONSES_ONLY_PREFIXES)
