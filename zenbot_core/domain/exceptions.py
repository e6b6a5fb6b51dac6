"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在服务层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 session_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、流被中断等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，是否重试由调用方决定。"""


class ValidationError(BusinessError):
    """参数或配置校验失败（如缺少 API Key、空输入）。"""


class ProviderError(BusinessError):
    """流中出现 Provider 错误帧或无法识别的帧结构，属于致命错误。"""


class StreamStateError(BusinessError):
    """在不允许的状态下调用 start/pause/resume。"""


class StoreError(BusinessError):
    """持久化读写失败。"""
