"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

Provider 调用链路上的错误额外携带 ErrorKind（与厂商无关的分类）：

- transient: 超时、限流、5xx，可由 Caller 自动重试。
- permanent: 鉴权失败、请求非法、上下文超长，不重试。
- malformed_response: 响应体或流式分片无法解析，不重试，附带原始内容。
- malformed_tool_call: 工具调用参数无法解析，只影响单个工具调用。
- canceled: 调用方主动取消。
- unsupported_capability: 请求需要的能力 Provider 不支持，在发请求前拦截。
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """与厂商无关的错误分类。"""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    MALFORMED_RESPONSE = "malformed_response"
    MALFORMED_TOOL_CALL = "malformed_tool_call"
    CANCELED = "canceled"
    UNSUPPORTED_CAPABILITY = "unsupported_capability"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class CallError(BusinessError):
    """Provider 调用过程中的已分类错误。

    Attributes:
        kind: ErrorKind 分类，决定是否重试。
        provider: 出错的 Provider 名称。
        status_code: HTTP 状态码（网络层错误时为 None）。
        raw: 原始响应体或分片，便于排查。
    """

    default_kind = ErrorKind.PERMANENT
    default_code = "CALL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        code: Optional[str] = None,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        raw: Any = None,
        **extra,
    ):
        super().__init__(
            code=code or self.default_code,
            message=message,
            http_status=status_code or 500,
            **extra,
        )
        self.kind = kind or self.default_kind
        self.provider = provider
        self.status_code = status_code
        self.raw = raw

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, code={self.code!r}, message={self.message!r})"


class NetworkError(CallError):
    """网络层错误，例如连接失败、超时等。"""

    default_kind = ErrorKind.TRANSIENT
    default_code = "NETWORK_ERROR"


class RateLimitError(CallError):
    """Provider 限流错误，由 Caller 负责重试/退避策略。"""

    default_kind = ErrorKind.TRANSIENT
    default_code = "RATE_LIMIT"

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(CallError):
    """Provider 服务端 5xx / 过载错误。"""

    default_kind = ErrorKind.TRANSIENT
    default_code = "SERVER_ERROR"


class ApiError(CallError):
    """第三方 API 返回的不可重试错误（请求非法等）。"""

    default_code = "API_ERROR"


class AuthenticationError(CallError):
    """鉴权失败（401/403）。"""

    default_code = "AUTH_ERROR"


class ContextLengthExceededError(CallError):
    """输入超过模型上下文长度。"""

    default_code = "CONTEXT_LENGTH_EXCEEDED"


class MalformedResponseError(CallError):
    """响应体或流式分片无法解码。"""

    default_kind = ErrorKind.MALFORMED_RESPONSE
    default_code = "MALFORMED_RESPONSE"


class MalformedToolCallError(CallError):
    """工具调用参数不是合法的结构化数据。"""

    default_kind = ErrorKind.MALFORMED_TOOL_CALL
    default_code = "MALFORMED_TOOL_CALL"

    def __init__(self, message: str, *, call_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.call_id = call_id


class UnsupportedCapabilityError(CallError):
    """请求需要 Provider 未声明的能力（如工具调用、流式）。"""

    default_kind = ErrorKind.UNSUPPORTED_CAPABILITY
    default_code = "UNSUPPORTED_CAPABILITY"


class CanceledError(CallError):
    """调用被取消，严格来说不是错误，而是一种终止结果。"""

    default_kind = ErrorKind.CANCELED
    default_code = "CANCELED"


class RetryExhaustedError(CallError):
    """可重试错误用尽重试次数或时间预算后，对上层表现为永久错误。"""

    default_code = "RETRY_EXHAUSTED"

    def __init__(self, last_error: CallError, attempts: int, elapsed: float):
        super().__init__(
            f"giving up after {attempts} attempts ({elapsed:.1f}s): {last_error.message}",
            provider=last_error.provider,
            status_code=last_error.status_code,
            raw=last_error.raw,
        )
        self.last_error = last_error
        self.attempts = attempts
        self.elapsed = elapsed


class ToolExecutionError(BusinessError):
    """工具执行失败（未注册、参数错误或工具内部异常）。"""

    def __init__(self, message: str, *, tool_name: str = "", call_id: str = "", **extra):
        super().__init__(code="TOOL_ERROR", message=message, **extra)
        self.tool_name = tool_name
        self.call_id = call_id
