import pytest

from agent_gateway.domain.exceptions import ApiError, RateLimitError
from agent_gateway.providers import create_provider
from agent_gateway.providers.anthropic_client import AnthropicClient
from agent_gateway.providers.base import raise_for_status
from agent_gateway.providers.ollama_client import OllamaClient
from agent_gateway.providers.openai_client import OpenAIClient
from agent_gateway.providers.registry import PROVIDER_REGISTRY, get_provider_config


class SettingsStub:
    default_provider = "anthropic"
    http_timeout = 1.0


def test_create_provider_by_name():
    cfg = SettingsStub()
    assert isinstance(create_provider("openai", cfg), OpenAIClient)
    assert isinstance(create_provider("anthropic", cfg), AnthropicClient)
    assert isinstance(create_provider("ollama", cfg), OllamaClient)
    kimi = create_provider("kimi", cfg)
    assert isinstance(kimi, OpenAIClient)
    assert kimi.name == "kimi"


def test_create_provider_uses_configured_default():
    assert create_provider(cfg=SettingsStub()).name == "anthropic"


def test_create_provider_unknown():
    with pytest.raises(ValueError):
        create_provider("nope", SettingsStub())


def test_registry_has_all_vendors():
    for name in ("openai", "anthropic", "ollama", "kimi", "glm"):
        assert name in PROVIDER_REGISTRY
        assert get_provider_config(name).models


def test_raise_for_status_maps_429_separately():
    with pytest.raises(RateLimitError) as exc_info:
        raise_for_status("openai", 429, "slow down")
    assert exc_info.value.http_status == 429

    with pytest.raises(ApiError) as exc_info:
        raise_for_status("openai", 500, "boom")
    assert not isinstance(exc_info.value, RateLimitError)
    assert exc_info.value.extra["body"] == "boom"

    raise_for_status("openai", 200, "")
