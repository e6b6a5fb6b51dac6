"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 配置 (registry)。
- 提供具体实现 (openrouter_client)。
"""

from typing import Optional

from zenbot_core.config.settings import settings
from zenbot_core.providers.base import ChunkSource, ProviderClient
from zenbot_core.providers.openrouter_client import OpenRouterClient
from zenbot_core.providers.registry import OPENROUTER_CONFIG, get_provider_config


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，未登记的名称抛出 KeyError。"""

    provider_cfg = get_provider_config(name or OPENROUTER_CONFIG.name)
    if provider_cfg is OPENROUTER_CONFIG:
        return OpenRouterClient(cfg or settings)
    raise KeyError(f"No client for provider: {provider_cfg.name!r}")


__all__ = ["ChunkSource", "ProviderClient", "OpenRouterClient", "create_provider"]
