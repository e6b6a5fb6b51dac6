"""流式会话控制器。

状态机：IDLE → SENDING → STREAMING → {COMPLETED, ERRORED, CANCELLED}，
STREAMING 期间另有独立的 paused 标志。

start() 在调用线程内阻塞运行整个消费循环：
ChunkSource → ChunkDecoder → FrameClassifier → SegmentAccumulator → sink，
每个帧恰好通知 sink 一次。
pause()/resume()/cancel() 可以从其它线程（如 UI 线程）调用：

- pause 在下一个帧边界生效，暂停期间不再从解码器拉取帧，连接保持打开；
  暂停时正阻塞在读取上的帧会留到恢复后再处理；
- resume 从解码器当前位置继续，不重放也不丢帧；
- cancel 立即置位取消标志并关闭传输，阻塞中的网络读取随之返回，
  已合并的内容保留在 Conversation 中。

每个控制器只承载一个 StreamSession，不跨轮次复用。
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Union
from uuid import uuid4

from zenbot_core.domain.conversation import Conversation
from zenbot_core.domain.exceptions import BusinessError, ProviderError, StreamStateError
from zenbot_core.domain.models import ChatMessage, ChatRequest
from zenbot_core.infrastructure.logging.logger import logger
from zenbot_core.streaming.accumulator import DeliverySink, SegmentAccumulator
from zenbot_core.streaming.cancellation import CancellationToken
from zenbot_core.streaming.classifier import Delta, Done, FrameClassifier, ProviderFailure
from zenbot_core.streaming.decoder import ChunkDecoder

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免与 providers 包循环依赖
    from zenbot_core.providers.base import ProviderClient


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.ERRORED, StreamState.CANCELLED)


@dataclass
class StreamSession:
    """单次流式请求的簿记对象。"""

    id: str = field(default_factory=lambda: f"s-{uuid4().hex}")
    token: CancellationToken = field(default_factory=CancellationToken)
    paused: bool = False
    accumulator: Optional[SegmentAccumulator] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    frames: int = 0
    error: Optional[BaseException] = None

    @property
    def cancellation_requested(self) -> bool:
        return self.token.cancelled

    @property
    def current_segment(self) -> Optional[ChatMessage]:
        if self.accumulator is None:
            return None
        return self.accumulator.active_message


@dataclass
class StreamOutcome:
    """start() 的返回值（COMPLETED 或 CANCELLED）。"""

    state: StreamState
    session_id: str
    frames: int
    updates: int
    skipped_frames: int


class StreamController:
    def __init__(self, provider: "ProviderClient", classifier: Optional[FrameClassifier] = None):
        self._provider = provider
        self._classifier = classifier or FrameClassifier()
        self._lock = threading.RLock()
        self._resume = threading.Event()
        self._resume.set()
        self._state = StreamState.IDLE
        self._session: Optional[StreamSession] = None

    # ---- 状态查询 ----

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._session is not None and self._session.paused

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def token(self) -> Optional[CancellationToken]:
        return self._session.token if self._session is not None else None

    # ---- 主流程 ----

    def start(
        self,
        conversation: Conversation,
        request: ChatRequest,
        sink: Optional[DeliverySink] = None,
    ) -> StreamOutcome:
        with self._lock:
            if self._state is not StreamState.IDLE:
                raise StreamStateError(
                    code="STREAM_ACTIVE",
                    message=f"start() is only valid from idle, current state is {self._state.value}",
                    http_status=409,
                )
            session = StreamSession()
            session.accumulator = SegmentAccumulator(conversation, sink)
            self._session = session
            self._state = StreamState.SENDING
            # 调用方也可能直接取消暴露出去的 token
            session.token.add_callback(self._on_token_cancelled)

        decoder = ChunkDecoder(session_id=session.id)
        self._log(logging.INFO, "Stream started", model=request.model, message_count=len(request.messages))
        try:
            with self._provider.open_stream(request, session.token) as source:
                session.token.add_callback(source.close)
                self._consume(self._first_chunk_marker(source.iter_chunks()), decoder)
        except Exception as exc:
            if session.token.cancelled:
                self._log(logging.INFO, "Transport closed after cancel", error=str(exc))
            else:
                self._fail(exc)
                raise
        with self._lock:
            if not self._state.is_terminal:
                self._state = StreamState.CANCELLED if session.token.cancelled else StreamState.COMPLETED
            outcome = StreamOutcome(
                state=self._state,
                session_id=session.id,
                frames=session.frames,
                updates=session.accumulator.sequence,
                skipped_frames=decoder.skipped,
            )
        self._log(
            logging.INFO,
            "Stream finished",
            state=outcome.state.value,
            frames=outcome.frames,
            updates=outcome.updates,
            skipped_frames=outcome.skipped_frames,
            elapsed_ms=int((datetime.now(timezone.utc) - session.started_at).total_seconds() * 1000),
        )
        return outcome

    def pause(self) -> None:
        with self._lock:
            if self._state is not StreamState.STREAMING or self._session.paused:
                raise StreamStateError(
                    code="INVALID_PAUSE",
                    message=f"pause() is only valid while streaming, current state is {self._state.value}",
                    http_status=409,
                )
            self._session.paused = True
            self._resume.clear()
        self._log(logging.INFO, "Stream paused")

    def resume(self) -> None:
        with self._lock:
            if self._session is None or not self._session.paused or self._state is not StreamState.STREAMING:
                raise StreamStateError(
                    code="INVALID_RESUME",
                    message="resume() is only valid while paused",
                    http_status=409,
                )
            self._session.paused = False
            self._resume.set()
        self._log(logging.INFO, "Stream resumed")

    def cancel(self) -> bool:
        """请求取消；在 SENDING/STREAMING 之外调用（包括重复调用）不产生任何效果。"""
        with self._lock:
            if self._state not in (StreamState.SENDING, StreamState.STREAMING):
                return False
            token = self._session.token
        # 回调会关闭传输，不能持锁执行
        return token.cancel() and self._state is StreamState.CANCELLED

    # ---- 辅助方法 ----

    def _on_token_cancelled(self) -> None:
        with self._lock:
            if self._state.is_terminal:
                return
            self._state = StreamState.CANCELLED
            self._session.paused = False
            self._resume.set()
        self._log(logging.INFO, "Stream cancelled")

    def _consume(self, chunks: Iterable[Union[bytes, str]], decoder: ChunkDecoder) -> None:
        frames = decoder.frames(chunks)
        while self._wait_while_paused():
            try:
                frame = next(frames)
            except StopIteration:
                return
            if not self._deliver(frame):
                return

    def _deliver(self, frame: Any) -> bool:
        """处理一个帧，返回是否继续读取。

        读取阻塞期间可能被暂停，此时帧留在手里，恢复后再处理。
        """
        session = self._session
        while self._wait_while_paused():
            with self._lock:
                if session.token.cancelled:
                    return False
                if session.paused:
                    continue
                deltas: List[Delta] = []
                for signal in self._classifier.classify(frame):
                    if isinstance(signal, Done):
                        self._state = StreamState.COMPLETED
                        return False
                    if isinstance(signal, ProviderFailure):
                        raise ProviderError(
                            code="PROVIDER_ERROR",
                            message=signal.message,
                            http_status=502,
                            session_id=session.id,
                        )
                    deltas.append(signal)
                session.frames += 1
                session.accumulator.apply(deltas)
                return True
        return False

    def _wait_while_paused(self) -> bool:
        self._resume.wait()
        return not self._session.token.cancelled

    def _first_chunk_marker(self, chunks: Iterable[Union[bytes, str]]) -> Iterator[Union[bytes, str]]:
        for chunk in chunks:
            with self._lock:
                if self._state is StreamState.SENDING:
                    self._state = StreamState.STREAMING
            yield chunk

    def _fail(self, exc: BaseException) -> None:
        with self._lock:
            self._state = StreamState.ERRORED
            self._session.error = exc
            self._session.paused = False
        payload: Dict[str, Any] = {"error": str(exc)}
        if isinstance(exc, BusinessError):
            payload["code"] = exc.code
        self._log(logging.ERROR, "Stream failed", **payload)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {"session_id": self._session.id if self._session else None}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
