"""ZenBot Core 顶层包。

该包提供聊天客户端的核心实现：配置加载、领域模型、OpenRouter Provider 适配、
流式响应消费（分帧、通道分类、分段累积、暂停/恢复/取消）以及会话持久化。
"""

from zenbot_core.api.service import ChatService, get_default_service
from zenbot_core.streaming import StreamController, StreamState

__all__ = ["ChatService", "get_default_service", "StreamController", "StreamState"]
