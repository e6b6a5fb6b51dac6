"""流式响应消费层。

- decoder: 原始读取 → 完整帧（容忍任意分块与坏帧）。
- classifier: 帧 → reasoning/response 增量、结束信号或 Provider 错误。
- accumulator: 按通道把增量合并为消息分段，并按序通知渲染端。
- controller: 持有 StreamSession 与取消令牌，串联以上组件并提供暂停/恢复/取消。
"""

from zenbot_core.streaming.accumulator import DeliverySink, SegmentAccumulator, SegmentUpdate
from zenbot_core.streaming.cancellation import CancellationToken
from zenbot_core.streaming.classifier import Delta, Done, FrameClassifier, ProviderFailure
from zenbot_core.streaming.controller import StreamController, StreamOutcome, StreamSession, StreamState
from zenbot_core.streaming.decoder import END_OF_STREAM, ChunkDecoder

__all__ = [
    "CancellationToken",
    "ChunkDecoder",
    "Delta",
    "DeliverySink",
    "Done",
    "END_OF_STREAM",
    "FrameClassifier",
    "ProviderFailure",
    "SegmentAccumulator",
    "SegmentUpdate",
    "StreamController",
    "StreamOutcome",
    "StreamSession",
    "StreamState",
]
