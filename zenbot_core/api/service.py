"""对外聊天服务模块。

ChatService 持有 Conversation 与用户设置（API Key、模型、自定义模型、
系统提示词、token 上限），负责：

- 启动时从 SessionStore 恢复会话，没有存储时放入欢迎消息；
- 发送消息：校验 Key 与输入、追加用户消息、为本轮创建新的 StreamController；
- 把 pause/resume/cancel 转发给当前控制器；
- 每轮结束后尽力持久化（失败只记日志）。
"""

import logging
import threading
from typing import Any, List, Optional

from zenbot_core.config.settings import settings
from zenbot_core.domain.conversation import Conversation, SessionSnapshot, SessionStore
from zenbot_core.domain.exceptions import BusinessError, StreamStateError, ValidationError
from zenbot_core.domain.models import ChatMessage, ChatRequest
from zenbot_core.infrastructure.logging.logger import logger
from zenbot_core.infrastructure.storage.json_store import JsonSessionStore
from zenbot_core.providers import create_provider
from zenbot_core.providers.base import ProviderClient
from zenbot_core.providers.registry import OPENROUTER_CONFIG
from zenbot_core.streaming.accumulator import DeliverySink
from zenbot_core.streaming.controller import StreamController, StreamOutcome


WELCOME_MESSAGE = (
    "Welcome to ZenBotTX9000! Enter your OpenRouter API key to start chatting. "
    "Get your free key from [OpenRouter.ai](https://openrouter.ai)."
)


class _KeyedSettings:
    """在全局配置之上覆盖 API Key，供 Provider 读取。"""

    def __init__(self, base, api_key: str):
        self._base = base
        self.openrouter_api_key = api_key

    def __getattr__(self, name: str) -> Any:
        return getattr(self._base, name)


class ChatService:
    def __init__(
        self,
        store: SessionStore,
        provider: Optional[ProviderClient] = None,
        cfg=settings,
    ):
        self._store = store
        self._settings = cfg
        self._provider = provider
        self._storage_key: str = getattr(cfg, "storage_key", "zenbot")
        self.api_key: str = getattr(cfg, "openrouter_api_key", None) or ""
        self.model: str = cfg.default_model
        self.system_prompt: str = cfg.system_prompt
        self.max_tokens: int = cfg.max_tokens
        self.custom_models: List[str] = []
        self.conversation = Conversation()
        self._controller: Optional[StreamController] = None
        self._lock = threading.Lock()

    # ---- 会话持久化 ----

    def load(self) -> Conversation:
        """从存储恢复会话；没有存储时放入欢迎消息。"""
        blob = self._store.load(self._storage_key)
        snapshot = SessionSnapshot.from_blob(blob) if blob is not None else None
        if snapshot is not None:
            self.api_key = snapshot.api_key or self.api_key
            self.conversation = Conversation(snapshot.messages)
            self.custom_models = list(snapshot.custom_models)
        elif blob is None:
            self.conversation = Conversation(
                [ChatMessage(role="assistant", content=WELCOME_MESSAGE, channel="response")]
            )
        else:
            logger.warning(
                "Ignoring stored session with unsupported version",
                extra={"extra": {"key": self._storage_key, "version": blob.get("version")}},
            )
        return self.conversation

    def save(self) -> bool:
        """尽力持久化当前会话，失败返回 False。"""
        snapshot = SessionSnapshot(
            api_key=self.api_key,
            messages=list(self.conversation.messages),
            custom_models=list(self.custom_models),
        )
        try:
            self._store.save(self._storage_key, snapshot.to_blob())
        except BusinessError as e:
            logger.error("Failed to save session", extra={"extra": {"key": self._storage_key, "error": e.message}})
            return False
        return True

    def clear(self) -> None:
        """清空会话并删除存储。"""
        if self.is_streaming:
            raise StreamStateError(code="STREAM_ACTIVE", message="Cannot clear while a reply is streaming", http_status=409)
        self.conversation = Conversation()
        try:
            self._store.clear(self._storage_key)
        except BusinessError as e:
            logger.error("Failed to clear session", extra={"extra": {"key": self._storage_key, "error": e.message}})

    # ---- 凭证与模型 ----

    def verify_api_key(self, api_key: str, model: Optional[str] = None) -> bool:
        """校验 Key 与模型；有效时保存 Key。"""
        valid = self._provider_for(api_key).check_credential(api_key, model or self.model)
        logger.info("API key checked", extra={"extra": {"model": model or self.model, "valid": valid}})
        if valid:
            self.api_key = api_key
            self.save()
        return valid

    def add_custom_model(self, name: str) -> bool:
        name = (name or "").strip()
        if not name or name in self.custom_models:
            return False
        self.custom_models.append(name)
        self.save()
        return True

    def available_models(self) -> List[str]:
        """模型选择列表：内置免费模型在前，自定义模型在后，去重。"""
        models = list(OPENROUTER_CONFIG.builtin_models)
        models.extend(m for m in self.custom_models if m not in models)
        return models

    def fetch_free_models(self) -> List[str]:
        return self._provider_for(self.api_key).fetch_free_models(self.api_key or None)

    # ---- 发送与流控制 ----

    @property
    def is_streaming(self) -> bool:
        controller = self._controller
        return controller is not None and not controller.state.is_terminal

    @property
    def controller(self) -> Optional[StreamController]:
        return self._controller

    def send(self, text: str, sink: Optional[DeliverySink] = None) -> StreamOutcome:
        """发送一条用户消息并阻塞消费流式回复。

        Raises:
            ValidationError: 缺少 API Key 或输入为空（不会创建流式会话）。
            StreamStateError: 已有回复正在流式输出。
            BusinessError: 流式过程中的致命错误，已合并的部分回复保留在会话中。
        """
        self._validate_send(text)
        with self._lock:
            if self.is_streaming:
                raise StreamStateError(code="STREAM_ACTIVE", message="A reply is already streaming", http_status=409)
            controller = StreamController(self._provider_for(self.api_key))
            self._controller = controller

        self.conversation.append(ChatMessage(role="user", content=text))
        request = ChatRequest(
            model=self.model,
            messages=list(self.conversation.messages),
            system_prompt=self.system_prompt,
            max_tokens=self.max_tokens,
        )
        try:
            return controller.start(self.conversation, request, sink)
        finally:
            self.save()

    def send_async(self, text: str, sink: Optional[DeliverySink] = None) -> threading.Thread:
        """在后台线程中发送，调用方可继续驱动暂停/取消。"""

        def _run() -> None:
            try:
                self.send(text, sink)
            except BusinessError as e:
                self._log(logging.ERROR, "Background send failed", code=e.code, error=e.message)

        # 先做同步校验，错误直接抛给调用方
        self._validate_send(text)
        thread = threading.Thread(target=_run, name="zenbot-send", daemon=True)
        thread.start()
        return thread

    def pause(self) -> None:
        self._require_controller().pause()

    def resume(self) -> None:
        self._require_controller().resume()

    def toggle_pause(self) -> bool:
        """切换暂停状态，返回切换后是否处于暂停。"""
        controller = self._require_controller()
        if controller.paused:
            controller.resume()
            return False
        controller.pause()
        return True

    def cancel(self) -> bool:
        controller = self._controller
        if controller is None:
            return False
        return controller.cancel()

    # ---- 辅助方法 ----

    def _validate_send(self, text: str) -> None:
        if not self.api_key:
            raise ValidationError(
                code="MISSING_API_KEY",
                message="Please enter your OpenRouter API key. Visit https://openrouter.ai to get one.",
            )
        if not text or not text.strip():
            raise ValidationError(code="EMPTY_INPUT", message="Message is empty")

    def _provider_for(self, api_key: str) -> ProviderClient:
        if self._provider is not None:
            return self._provider
        return create_provider(cfg=_KeyedSettings(self._settings, api_key))

    def _require_controller(self) -> StreamController:
        controller = self._controller
        if controller is None:
            raise StreamStateError(code="NO_STREAM", message="No reply is streaming", http_status=409)
        return controller

    @staticmethod
    def _log(level: int, message: str, **fields: Any) -> None:
        logger.log(level, message, extra={"extra": fields})


_service: Optional[ChatService] = None


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例），首次调用时恢复存储的会话。"""
    global _service
    if _service is None:
        _service = ChatService(store=JsonSessionStore(root=settings.storage_root))
        _service.load()
    return _service

