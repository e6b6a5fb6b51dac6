"""分段累积器。

把同一通道的连续增量合并进同一条 assistant 消息，通道变化时新建消息。
每处理一个帧恰好通知一次渲染端（帧内可能含零个、一个或两个增量），顺序与帧到达顺序一致。
"""

from dataclasses import dataclass, replace
from typing import Callable, Optional, Sequence, Tuple

from zenbot_core.domain.conversation import Conversation
from zenbot_core.domain.models import ChatMessage, Channel
from zenbot_core.streaming.classifier import Delta


@dataclass(frozen=True)
class SegmentUpdate:
    """一次分段更新通知，每个处理过的帧恰好一次。

    - sequence: 本轮第几个帧（从 1 开始）。
    - position: 当前分段在 Conversation 中的下标，尚无分段时为 -1。
    - created: 本帧是否新建了分段。
    - message: 当前分段的快照，尚无分段时为 None。
    - tail: 本轮已追加的全部分段快照（按顺序）。
    """

    sequence: int
    position: int
    created: bool
    message: Optional[ChatMessage]
    tail: Tuple[ChatMessage, ...]


DeliverySink = Callable[[SegmentUpdate], None]


class SegmentAccumulator:
    def __init__(self, conversation: Conversation, sink: Optional[DeliverySink] = None):
        self._conversation = conversation
        self._sink = sink
        self._turn_start = len(conversation)
        self._position = -1
        self._sequence = 0
        self.active_channel: Optional[Channel] = None
        self.active_message: Optional[ChatMessage] = None

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def segments(self) -> Tuple[ChatMessage, ...]:
        return self._conversation.tail(self._turn_start)

    def apply(self, deltas: Sequence[Delta]) -> SegmentUpdate:
        """合并一个帧携带的全部增量，然后通知一次。

        不含增量的帧（role/usage 等元数据帧）也会产生一次内容不变的通知。
        """
        created = False
        for delta in deltas:
            created = self._merge(delta) or created
        self._sequence += 1
        message = self.active_message
        update = SegmentUpdate(
            sequence=self._sequence,
            position=self._position,
            created=created,
            message=replace(message, meta=dict(message.meta)) if message is not None else None,
            tail=self._conversation.tail(self._turn_start),
        )
        if self._sink is not None:
            self._sink(update)
        return update

    def _merge(self, delta: Delta) -> bool:
        created = False
        if self.active_message is None or delta.channel != self.active_channel:
            message = ChatMessage(role="assistant", content="", channel=delta.channel)
            self._position = self._conversation.append(message)
            self.active_message = message
            self.active_channel = delta.channel
            created = True
        if delta.text:
            self.active_message.append_text(delta.text)
        return created
