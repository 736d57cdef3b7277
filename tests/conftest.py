import pytest

from llmgate.config import Configuration
from llmgate.types import Vendor


@pytest.fixture
def config():
    """Configuration with a key for every vendor and no environment lookups."""
    return Configuration(
        api_keys={
            Vendor.OPENAI: "sk-test-openai",
            Vendor.ANTHROPIC: "sk-test-anthropic",
            Vendor.GOOGLE: "AIza-test-google",
            Vendor.GROK: "xai-test",
            Vendor.AZURE_OPENAI: "azure-test-key",
            Vendor.REPLICATE: "r8-test",
        },
        base_urls={Vendor.AZURE_OPENAI: "https://myres.openai.azure.com"},
        env_file=None,
        use_environment=False,
    )


@pytest.fixture
def empty_config():
    """Configuration that resolves nothing."""
    return Configuration(env_file=None, use_environment=False)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove vendor variables that could leak in from the developer's shell."""
    for name in (
        "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY",
        "X_AI_API_KEY", "XAI_API_KEY", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT",
        "REPLICATE_API_TOKEN", "OLLAMA_BASE_URL", "OLLAMA_HOST", "OPENAI_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
