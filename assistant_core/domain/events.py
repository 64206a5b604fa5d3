"""流式响应事件。

Provider 适配器把厂商的流式编码（SSE 等）解码为以下统一事件，
Caller 按网络到达顺序原样交给 Stream Assembler 与展示层：

- TextDelta: 文本增量。
- ToolCallStart / ToolCallArgsChunk / ToolCallEnd: 工具调用的开始、参数分片与结束，
  以 call_id 关联，允许多个工具调用交错出现。
- UsageUpdate: 流式过程中的 token 统计。
- Done / ErrorEvent / Canceled: 三种终止事件。
- RetryScheduled: Caller 即将重试，之前尝试产出的部分内容作废。

事件是一次性的：被消费后不再保留。
"""

from dataclasses import dataclass
from typing import Optional, Union

from assistant_core.domain.exceptions import CallError
from assistant_core.domain.models import FinishReason, Usage


@dataclass(frozen=True)
class TextDelta:
    text: str
    index: int = 0


@dataclass(frozen=True)
class ToolCallStart:
    call_id: str
    name: str
    index: int = 0


@dataclass(frozen=True)
class ToolCallArgsChunk:
    call_id: str
    chunk: str


@dataclass(frozen=True)
class ToolCallEnd:
    call_id: str


@dataclass(frozen=True)
class UsageUpdate:
    usage: Usage


@dataclass(frozen=True)
class Done:
    finish_reason: FinishReason = "stop"
    usage: Optional[Usage] = None


@dataclass(frozen=True)
class ErrorEvent:
    error: CallError


@dataclass(frozen=True)
class Canceled:
    reason: str = "canceled"


@dataclass(frozen=True)
class RetryScheduled:
    """Caller 在重试前发出，attempt 为即将开始的尝试序号（从 1 计）。"""

    attempt: int
    delay: float
    error: CallError


ResponseEvent = Union[
    TextDelta,
    ToolCallStart,
    ToolCallArgsChunk,
    ToolCallEnd,
    UsageUpdate,
    Done,
    ErrorEvent,
    Canceled,
    RetryScheduled,
]

TERMINAL_EVENTS = (Done, ErrorEvent, Canceled)


def is_terminal(event: ResponseEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
