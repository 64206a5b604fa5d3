"""请求执行层（Transport / Caller）。

该包下的模块负责：
- 发出 HTTP 请求 (transport)。
- 重试与退避策略 (retry)。
- 协作式取消 (cancellation)。
- 按 Provider 的并发与限速控制 (limiter)。
- 串联以上能力，产出统一事件流 (client)。
"""

from assistant_core.caller.cancellation import CancellationToken
from assistant_core.caller.client import Caller, CallStream
from assistant_core.caller.limiter import LimiterRegistry, ProviderLimiter
from assistant_core.caller.retry import BackoffPolicy, RetryState
from assistant_core.caller.transport import HttpTransport, HttpxTransport

__all__ = [
    "BackoffPolicy",
    "CallStream",
    "Caller",
    "CancellationToken",
    "HttpTransport",
    "HttpxTransport",
    "LimiterRegistry",
    "ProviderLimiter",
    "RetryState",
]
