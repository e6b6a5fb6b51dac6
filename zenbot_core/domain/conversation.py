from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from .models import ChatMessage


SNAPSHOT_VERSION = 1


class Conversation:
    """按时间顺序排列、只追加的消息序列。

    流式输出期间由 SegmentAccumulator 独占追加，其它组件只读。
    已有消息不会被删除或替换，顺序原样用于回放给 Provider 和渲染。
    """

    def __init__(self, messages: Optional[List[ChatMessage]] = None):
        self._messages: List[ChatMessage] = list(messages or [])

    def append(self, message: ChatMessage) -> int:
        """追加一条消息，返回其位置。"""
        self._messages.append(message)
        return len(self._messages) - 1

    def tail(self, start: int) -> Tuple[ChatMessage, ...]:
        """返回从 start 开始的消息快照（副本），供渲染端安全持有。"""
        return tuple(replace(m, meta=dict(m.meta)) for m in self._messages[start:])

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> ChatMessage:
        return self._messages[index]


@dataclass
class SessionSnapshot:
    """持久化的会话快照（带版本号，便于向前兼容）。"""

    api_key: str = ""
    messages: List[ChatMessage] = field(default_factory=list)
    custom_models: List[str] = field(default_factory=list)
    version: int = SNAPSHOT_VERSION

    def to_blob(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "api_key": self.api_key,
            "messages": [m.to_dict() for m in self.messages],
            "custom_models": list(self.custom_models),
        }

    @classmethod
    def from_blob(cls, blob: Dict[str, Any]) -> Optional["SessionSnapshot"]:
        if not isinstance(blob, dict) or blob.get("version") != SNAPSHOT_VERSION:
            return None
        return cls(
            api_key=blob.get("api_key") or "",
            messages=[ChatMessage.from_dict(m) for m in blob.get("messages") or [] if isinstance(m, dict)],
            custom_models=[str(m) for m in blob.get("custom_models") or []],
        )


class SessionStore(Protocol):
    def save(self, key: str, blob: Dict[str, Any]) -> None:
        ...

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def clear(self, key: str) -> None:
        ...
