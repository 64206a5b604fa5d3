"""Provider 适配器抽象接口。

上层 Caller / Orchestrator 不直接依赖具体厂商的线协议，而是依赖此协议：

- 每种线协议实现一个 ProviderAdapter（如 OpenAICompatibleAdapter、AnthropicAdapter）。
- 负责：将 ChatRequest 转成具体 HTTP 请求描述，把流式分片/响应体解码为
  统一的 ResponseEvent，并把厂商错误映射为 ErrorKind。
- 不做任何网络 I/O（那是 Caller 的工作），也不修改 Conversation。

适配器实例按调用创建，内部持有本次调用私有的解码缓冲区；
Caller 在每次尝试开始前调用 begin_stream() 清空上一次尝试的状态。
"""

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Protocol, Tuple, Type

from assistant_core.domain.events import ResponseEvent
from assistant_core.domain.exceptions import (
    ApiError,
    AuthenticationError,
    CallError,
    ContextLengthExceededError,
    ErrorKind,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
    ServerError,
    UnsupportedCapabilityError,
)
from assistant_core.domain.models import ChatRequest

if TYPE_CHECKING:
    from assistant_core.providers.registry import ProviderConfig


@dataclass(frozen=True)
class ProviderCapabilities:
    """Provider 声明的能力。"""

    streaming: bool = True
    tools: bool = True
    max_context_tokens: int = 128000


@dataclass(frozen=True)
class ProviderWirePayload:
    """一次 HTTP 调用所需的全部信息（方法、URL、请求头、JSON 请求体）。"""

    method: str
    url: str
    headers: Dict[str, str]
    json_body: Dict[str, Any]
    stream: bool = False
    timeout: Optional[float] = None


class ProviderAdapter(Protocol):
    """LLM Provider 适配器协议。

    实现者需要提供：
    - name / config / capabilities: Provider 名称、已解析配置与能力声明。
    - build_request(req): 序列化请求，能力不足时抛 UnsupportedCapabilityError。
    - parse_event(raw_chunk): 解码一段网络字节，返回 0 个或多个事件；
      不完整的分片返回空列表，并在内部缓存等待后续字节。
    - finish_stream(): 网络流结束时调用，冲刷缓冲区并补齐终止事件。
    - parse_body(body): 非流式模式下解码完整响应体。
    - classify_error / build_error: 把 HTTP 错误映射为 ErrorKind / CallError。
    """

    name: str
    config: "ProviderConfig"
    capabilities: ProviderCapabilities

    def build_request(self, req: ChatRequest) -> ProviderWirePayload:
        ...

    def begin_stream(self) -> None:
        ...

    def parse_event(self, raw_chunk: bytes) -> List[ResponseEvent]:
        ...

    def finish_stream(self) -> List[ResponseEvent]:
        ...

    def parse_body(self, body: bytes) -> List[ResponseEvent]:
        ...

    def classify_error(self, status_code: Optional[int], body: Any) -> ErrorKind:
        ...

    def build_error(
        self,
        status_code: Optional[int],
        body: Any,
        headers: Optional[Mapping[str, str]] = None,
    ) -> CallError:
        ...


def ensure_capabilities(req: ChatRequest, capabilities: ProviderCapabilities, provider: str) -> None:
    """在发出任何网络请求前校验能力。"""

    if req.stream and not capabilities.streaming:
        raise UnsupportedCapabilityError(f"provider {provider!r} does not support streaming", provider=provider)
    if req.requires_tools and not capabilities.tools:
        raise UnsupportedCapabilityError(f"provider {provider!r} does not support tool calls", provider=provider)


# 错误原因 -> (异常类型, ErrorKind)
_REASONS: Dict[str, Tuple[Type[CallError], ErrorKind]] = {
    "rate_limit": (RateLimitError, ErrorKind.TRANSIENT),
    "server": (ServerError, ErrorKind.TRANSIENT),
    "timeout": (NetworkError, ErrorKind.TRANSIENT),
    "auth": (AuthenticationError, ErrorKind.PERMANENT),
    "context_length": (ContextLengthExceededError, ErrorKind.PERMANENT),
    "invalid": (ApiError, ErrorKind.PERMANENT),
    "malformed": (MalformedResponseError, ErrorKind.MALFORMED_RESPONSE),
}


def reason_kind(reason: str) -> ErrorKind:
    return _REASONS[reason][1]


def reason_for_status(status_code: Optional[int]) -> str:
    """只依据状态码给出的默认错误原因。"""

    if status_code is None:
        return "server"
    if status_code == 429:
        return "rate_limit"
    if status_code in (401, 403):
        return "auth"
    if status_code == 408:
        return "timeout"
    if status_code >= 500:
        return "server"
    return "invalid"


def make_error(
    reason: str,
    message: str,
    *,
    provider: str,
    status_code: Optional[int] = None,
    raw: Any = None,
    retry_after: Optional[float] = None,
) -> CallError:
    error_cls, kind = _REASONS[reason]
    if error_cls is RateLimitError:
        return RateLimitError(
            message,
            provider=provider,
            status_code=status_code,
            raw=raw,
            retry_after=retry_after,
        )
    return error_cls(message, kind=kind, provider=provider, status_code=status_code, raw=raw)


def load_json(body: Any) -> Any:
    """尽力把 bytes/str/dict 解析为 JSON 对象，失败返回 None。"""

    if body is None:
        return None
    if isinstance(body, (dict, list)):
        return body
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        return None


def body_text(body: Any, limit: int = 2000) -> str:
    if isinstance(body, bytes):
        text = body.decode("utf-8", errors="replace")
    elif isinstance(body, str):
        text = body
    else:
        text = json.dumps(body, ensure_ascii=False, default=str)
    return text[:limit]


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    value = None
    for key, val in headers.items():
        if key.lower() == "retry-after":
            value = val
            break
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


@dataclass
class ToolCallTracker:
    """流式解码时跟踪尚未结束的工具调用（厂商索引 -> call_id）。"""

    open_calls: Dict[Any, str] = field(default_factory=dict)

    def start(self, key: Any, call_id: str) -> None:
        self.open_calls[key] = call_id

    def get(self, key: Any) -> Optional[str]:
        return self.open_calls.get(key)

    def end(self, key: Any) -> Optional[str]:
        return self.open_calls.pop(key, None)

    def drain(self) -> List[str]:
        ids = list(self.open_calls.values())
        self.open_calls.clear()
        return ids


def text_field(value: Any, what: str) -> str:
    """取出字符串字段；None 视为空串，其它类型按响应形状错误抛出 TypeError。"""

    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"{what} must be a string, got {type(value).__name__}")
    return value
