"""取消令牌。

由 StreamController 创建并暴露给调用方（UI 的停止按钮等）。
cancel() 只生效一次；注册的回调用于关闭底层传输，
从而让阻塞在网络读取上的消费者立即返回。
"""

import threading
from typing import Callable, List

from zenbot_core.infrastructure.logging.logger import logger


class CancellationToken:
    def __init__(self):
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """注册取消回调；若已取消则立即执行。"""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run(callback)

    def cancel(self) -> bool:
        """请求取消，返回本次调用是否真正触发了取消。"""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run(callback)
        return True

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        # 关闭已断开的连接时可能抛出任意异常，取消流程不能因此中断
        try:
            callback()
        except Exception as e:
            logger.warning("Cancellation callback failed", extra={"extra": {"error": str(e)}})
