"""Provider 抽象接口。

上层 StreamController / ChatService 不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenRouterClient）。
- open_stream 负责发起流式请求并检查 HTTP 状态，返回一个 ChunkSource，
  之后的分帧、分类、累积全部由 streaming 包完成。

这样可以在不改流式消费代码的前提下接入更多兼容 OpenAI 协议的厂商。
"""

from typing import ContextManager, Iterable, List, Optional, Protocol, Union

from zenbot_core.domain.models import ChatRequest
from zenbot_core.streaming.cancellation import CancellationToken


class ChunkSource(Protocol):
    """一个已建立的流式响应。

    - iter_chunks(): 逐块产出原始数据（bytes 或 str），传输关闭即结束。
    - close(): 可从其它线程调用，使阻塞中的 iter_chunks 尽快结束或抛错。
    """

    def iter_chunks(self) -> Iterable[Union[bytes, str]]:
        ...

    def close(self) -> None:
        ...


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。"""

    name: str

    def open_stream(self, req: ChatRequest, token: CancellationToken) -> ContextManager[ChunkSource]:
        """发起流式请求；非 2xx 响应在进入上下文前抛出。"""

        ...

    def check_credential(self, api_key: str, model: str) -> bool:
        """用一次非流式请求验证 API Key 与模型是否可用。"""

        ...

    def fetch_free_models(self, api_key: Optional[str] = None) -> List[str]:
        ...
