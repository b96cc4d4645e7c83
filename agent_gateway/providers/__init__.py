"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 静态配置 (registry)。
- 提供各厂商的具体实现 (openai_client、anthropic_client、ollama_client)。

Provider 在启动时按配置选定一次，然后共享给所有请求处理器。
"""

from typing import Optional

from agent_gateway.config.settings import settings
from agent_gateway.providers.base import ProviderClient
from agent_gateway.providers.openai_client import OpenAIClient
from agent_gateway.providers.anthropic_client import AnthropicClient
from agent_gateway.providers.ollama_client import OllamaClient

OPENAI_COMPATIBLE = ("openai", "kimi", "glm")


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 default_provider。"""

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "openai")).lower()
    if provider_name == "anthropic":
        return AnthropicClient(cfg)
    if provider_name == "ollama":
        return OllamaClient(cfg)
    if provider_name in OPENAI_COMPATIBLE:
        return OpenAIClient(cfg, vendor=provider_name)
    raise ValueError(f"Unknown provider: {provider_name!r}")
