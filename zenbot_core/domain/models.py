"""统一的对话数据模型。

本模块定义了聊天客户端内部共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant），assistant 消息带 channel 标签。
- ChatRequest: 发给 Provider 的完整请求（模型、历史消息、系统提示词、token 上限）。

Provider 适配器（如 OpenRouterClient）只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# 消息角色（与 OpenAI / OpenRouter 的 role 字段对应）
Role = Literal["system", "user", "assistant"]

# 模型输出的逻辑通道：内部推理 vs 面向用户的回答
Channel = Literal["reasoning", "response"]

CHANNELS = ("reasoning", "response")
DEFAULT_CHANNEL: Channel = "response"


@dataclass
class ChatMessage:
    """一条对话消息。

    - role: 消息角色。
    - content: 纯文本内容；assistant 消息在流式输出期间会被不断追加。
    - channel: 仅 assistant 消息使用，标记 reasoning 或 response。
      同一条消息的 channel 在追加内容后不会再改变，通道切换总是产生新消息。
    - meta: 附加元数据，不发给 Provider。
    """

    role: Role
    content: str
    channel: Optional[Channel] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def append_text(self, text: str) -> None:
        self.content += text

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.channel:
            payload["channel"] = self.channel
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        channel = data.get("channel")
        return cls(
            role=data.get("role") or "user",
            content=data.get("content") or "",
            channel=channel if channel in CHANNELS else None,
        )


@dataclass
class ChatRequest:
    """一次完整的流式聊天请求。

    messages 为按时间顺序排列的完整历史（含本轮用户消息），
    Provider 适配层负责在前面加上 system_prompt 并转换为 API JSON。
    """

    model: str
    messages: List[ChatMessage]
    system_prompt: str = ""
    max_tokens: Optional[int] = None
