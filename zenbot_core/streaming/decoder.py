"""流式响应解码器。

把网络层的原始读取（bytes 或 str，任意长度，不保证与帧边界对齐）
切分为完整的 Provider 帧：

- 按行分帧，兼容 \\r\\n；理解 SSE 的 ``data:`` 前缀，忽略 ``event:`` / ``id:`` /
  ``retry:`` 字段以及 ``:`` 开头的注释行（OpenRouter 的 keep-alive）。
- 不完整的尾部片段缓存到下一次读取再拼接；传输关闭时尾部片段作为最后一帧解析。
- 无法解析为 JSON 的帧记录 warning 后跳过，不会中断整个流。
- 遇到 ``[DONE]`` 时产出 END_OF_STREAM 并停止读取。
"""

import codecs
import json
from typing import Any, Iterable, Iterator, List, Optional, Union

from zenbot_core.infrastructure.logging.logger import logger


class _EndOfStream:
    """传输层显式结束标记。"""

    _instance: Optional["_EndOfStream"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()

DONE_MARKER = "[DONE]"
_IGNORED_FIELDS = ("event:", "id:", "retry:")

Chunk = Union[bytes, bytearray, str]


class ChunkDecoder:
    """增量帧解码器，每个流使用一个实例。"""

    def __init__(self, session_id: Optional[str] = None):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finished = False
        self.session_id = session_id
        self.skipped = 0

    def frames(self, chunks: Iterable[Chunk]) -> Iterator[Any]:
        """惰性地把读取序列转换为帧序列。

        只有在调用方请求下一帧且缓冲区中没有完整帧时才会读取下一块，
        调用方停止迭代即停止读取。
        """
        for chunk in chunks:
            for frame in self.feed(chunk):
                yield frame
                if frame is END_OF_STREAM:
                    return
        for frame in self.flush():
            yield frame

    def feed(self, chunk: Chunk) -> List[Any]:
        """输入一块原始数据，返回其中已完整的帧。"""
        if self._finished:
            return []
        if isinstance(chunk, (bytes, bytearray)):
            text = self._utf8.decode(bytes(chunk))
        else:
            text = chunk
        self._buffer += text
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[Any]:
        """传输关闭时调用：解析缓冲区中剩余的尾部片段。"""
        if self._finished:
            return []
        rest = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([rest]) if rest.strip() else []

    def _parse_lines(self, lines: List[str]) -> List[Any]:
        frames: List[Any] = []
        for raw in lines:
            data = self._payload_of(raw)
            if data is None:
                continue
            if data == DONE_MARKER:
                self._finished = True
                frames.append(END_OF_STREAM)
                break
            try:
                frames.append(json.loads(data))
            except json.JSONDecodeError as e:
                self.skipped += 1
                logger.warning(
                    "Skipping malformed stream frame",
                    extra={"extra": {"session_id": self.session_id, "error": str(e), "frame": data[:200]}},
                )
        return frames

    @staticmethod
    def _payload_of(raw: str) -> Optional[str]:
        line = raw.rstrip("\r").strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith("data:"):
            line = line[5:].strip()
            return line or None
        if line.startswith(_IGNORED_FIELDS):
            return None
        return line
