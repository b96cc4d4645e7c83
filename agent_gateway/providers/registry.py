"""Provider 静态配置。

每个厂商一条 ProviderConfig，记录默认 base_url 与对外宣称支持的模型。
实际使用的 base_url / 模型优先取 Settings 中的配置，这里只作兜底。
"""

from dataclasses import dataclass, field
from typing import List, Mapping


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    default_model: str
    models: List[str] = field(default_factory=list)
    default_temperature: float = 0.7
    default_max_tokens: int = 4096


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    default_model="gpt-4o-mini",
    models=["gpt-4o", "gpt-4o-mini", "gpt-4-turbo"],
)

ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    base_url="https://api.anthropic.com",
    default_model="claude-3-5-sonnet-20241022",
    models=["claude-3-5-sonnet-20241022", "claude-3-opus-20240229"],
)

OLLAMA_CONFIG = ProviderConfig(
    name="ollama",
    base_url="http://localhost:11434",
    default_model="llama3.2",
    models=["llama3.2", "mistral"],
)

# Kimi 与 GLM 提供 OpenAI 兼容的 chat/completions 端点
KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    default_model="kimi-k2-turbo-preview",
    models=["kimi-k2-turbo-preview"],
)

GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    default_model="glm-4.6",
    models=["glm-4.6"],
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "anthropic": ANTHROPIC_CONFIG,
    "ollama": OLLAMA_CONFIG,
    "kimi": KIMI_CONFIG,
    "glm": GLM_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
