"""帧分类器。

把解码后的单个帧转换为有序的信号列表：

- Delta(channel, text): 某个通道上的文本增量；
- Done: 流正常结束；
- ProviderFailure(message): Provider 报错或无法识别的帧结构（致命）。

支持的帧结构：
- 紧凑格式 ``{"c": "reasoning", "d": "..."}``，``c`` 缺省为 response；
- OpenAI / OpenRouter 的 ``{"choices": [{"delta": {...}}]}``，
  ``reasoning`` / ``reasoning_content`` 归入 reasoning，``content`` 归入 response；
- ``{"error": ...}`` 错误帧。
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from zenbot_core.domain.models import CHANNELS, DEFAULT_CHANNEL, Channel
from zenbot_core.streaming.decoder import END_OF_STREAM

_REASONING_KEYS = ("reasoning", "reasoning_content")


@dataclass(frozen=True)
class Delta:
    channel: Channel
    text: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class ProviderFailure:
    message: str


Signal = Union[Delta, Done, ProviderFailure]


class FrameClassifier:
    """无状态的帧分类器。"""

    def classify(self, frame: Any) -> List[Signal]:
        if frame is END_OF_STREAM:
            return [Done()]
        if not isinstance(frame, dict):
            return [ProviderFailure(f"Unsupported frame: {self._preview(frame)}")]
        if "error" in frame:
            return [ProviderFailure(self._error_message(frame["error"]))]
        if "d" in frame:
            return [self._classify_compact(frame)]
        if "choices" in frame:
            return self._classify_choices(frame["choices"], frame)
        return [ProviderFailure(f"Unsupported frame shape: {self._preview(frame)}")]

    # ---- 辅助方法 ----

    def _classify_compact(self, frame: Dict[str, Any]) -> Signal:
        channel = frame.get("c") or DEFAULT_CHANNEL
        if channel not in CHANNELS:
            return ProviderFailure(f"Unknown channel: {channel!r}")
        text = frame.get("d")
        if text is None:
            text = ""
        if not isinstance(text, str):
            return ProviderFailure(f"Non-text delta: {self._preview(frame)}")
        return Delta(channel=channel, text=text)

    def _classify_choices(self, choices: Any, frame: Dict[str, Any]) -> List[Signal]:
        if not isinstance(choices, list):
            return [ProviderFailure(f"Unsupported frame shape: {self._preview(frame)}")]
        if not choices:
            # usage 等元数据帧
            return []
        choice = choices[0]
        if not isinstance(choice, dict):
            return [ProviderFailure(f"Unsupported choice: {self._preview(choice)}")]
        delta = choice.get("delta")
        if isinstance(delta, dict):
            return self._classify_delta(delta)
        if isinstance(choice.get("text"), str):
            return [Delta(channel="response", text=choice["text"])]
        return []

    @staticmethod
    def _classify_delta(delta: Dict[str, Any]) -> List[Signal]:
        reasoning: Optional[str] = None
        for key in _REASONING_KEYS:
            value = delta.get(key)
            if isinstance(value, str):
                reasoning = value
                if value:
                    break
        content = delta.get("content")
        if not isinstance(content, str):
            content = None

        signals: List[Signal] = []
        if reasoning:
            signals.append(Delta(channel="reasoning", text=reasoning))
        if content:
            signals.append(Delta(channel="response", text=content))
        if signals:
            return signals
        # 只有空字符串
        if reasoning is not None and content is None:
            return [Delta(channel="reasoning", text="")]
        if content is not None:
            return [Delta(channel="response", text="")]
        return []

    @staticmethod
    def _error_message(error: Any) -> str:
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error, ensure_ascii=False)
            code = error.get("code")
            return f"{message} (code={code})" if code is not None else str(message)
        if isinstance(error, str) and error:
            return error
        return json.dumps(error, ensure_ascii=False)

    @staticmethod
    def _preview(value: Any) -> str:
        try:
            text = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            text = repr(value)
        return text[:200]
