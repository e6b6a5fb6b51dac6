"""Provider 与模型配置。

集中维护 Provider 的端点与内置模型列表。用户在运行时添加的自定义模型
保存在会话快照里，不在这里登记。"""

from dataclasses import dataclass, field
from typing import List, Mapping


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    default_model: str
    max_tokens_limit: int
    builtin_models: List[str] = field(default_factory=list)


# OpenRouter 配置（免费模型默认使用 DeepSeek R1，会输出 reasoning 通道）
OPENROUTER_CONFIG = ProviderConfig(
    name="openrouter",
    base_url="https://openrouter.ai/api/v1",
    default_model="deepseek/deepseek-r1-0528:free",
    max_tokens_limit=16384,
    builtin_models=[
        "deepseek/deepseek-r1-0528:free",
        "deepseek/deepseek-chat-v3-0324:free",
        "meta-llama/llama-3.3-70b-instruct:free",
    ],
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openrouter": OPENROUTER_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
