"""流式事件折叠器。

StreamAssembler 把一次请求的 ResponseEvent 序列折叠成 AssembledMessage，
同时把原始事件原样转交给展示层（sink / iterate）。

规则：
- 文本增量按到达顺序拼接。
- 工具调用参数按 call_id 拼接，ToolCallEnd 时解析为 JSON 对象；
  解析失败只标记该工具调用（MalformedToolCallError），不影响其他调用。
- Done: 补齐仍未结束的工具调用，记录 finish_reason。
- ErrorEvent / Canceled: 停止折叠，保留已收到的部分内容；
  未结束的工具调用标记为不完整。
- RetryScheduled: Caller 即将重试，丢弃此前尝试的部分内容。
- 终止事件之后的事件忽略并记录告警。
"""

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from assistant_core.domain.events import (
    Canceled,
    Done,
    ErrorEvent,
    ResponseEvent,
    RetryScheduled,
    TextDelta,
    ToolCallArgsChunk,
    ToolCallEnd,
    ToolCallStart,
    UsageUpdate,
)
from assistant_core.domain.exceptions import CallError, MalformedToolCallError
from assistant_core.domain.models import AssembledMessage, FinishReason, ToolCallPart, Turn, Usage
from assistant_core.infrastructure.logging.logger import logger

EventSink = Callable[[ResponseEvent], Any]


@dataclass(frozen=True)
class AssemblyResult:
    """折叠结果：消息本身（可能只有部分内容）+ 可选错误 / 取消标记。"""

    message: AssembledMessage
    error: Optional[CallError] = None
    canceled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.canceled

    @property
    def text(self) -> str:
        return self.message.text


@dataclass
class _PendingCall:
    id: str
    name: str
    chunks: List[str] = field(default_factory=list)
    part: Optional[ToolCallPart] = None


def parse_tool_arguments(call_id: str, raw: str) -> Tuple[Optional[Dict[str, Any]], Optional[MalformedToolCallError]]:
    """把拼接完成的参数字符串解析为 JSON 对象；空字符串视为 {}。"""

    text = raw.strip()
    if not text:
        return {}, None
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        return None, MalformedToolCallError(
            f"arguments of tool call {call_id!r} are not valid JSON: {exc.msg}",
            call_id=call_id,
            raw=raw,
        )
    if not isinstance(value, dict):
        return None, MalformedToolCallError(
            f"arguments of tool call {call_id!r} must be a JSON object",
            call_id=call_id,
            raw=raw,
        )
    return value, None


class StreamAssembler:
    def __init__(self, provider: str = "", model: str = ""):
        self.provider = provider
        self.model = model
        self._reset()

    def _reset(self) -> None:
        self._text: List[str] = []
        self._calls: Dict[str, _PendingCall] = {}
        self._usage: Optional[Usage] = None
        self._finish: Optional[FinishReason] = None
        self._error: Optional[CallError] = None
        self._canceled = False
        self._terminal = False

    @property
    def finished(self) -> bool:
        return self._terminal

    def feed(self, event: ResponseEvent) -> None:
        if self._terminal:
            logger.warning(
                "Ignoring event after terminal event",
                extra={"extra": {"provider": self.provider, "event": type(event).__name__}},
            )
            return
        if isinstance(event, TextDelta):
            self._text.append(event.text)
        elif isinstance(event, ToolCallStart):
            pending = self._calls.get(event.call_id)
            if pending is None:
                self._calls[event.call_id] = _PendingCall(id=event.call_id, name=event.name)
            elif event.name and not pending.name:
                pending.name = event.name
        elif isinstance(event, ToolCallArgsChunk):
            pending = self._calls.get(event.call_id)
            if pending is None:
                pending = self._calls[event.call_id] = _PendingCall(id=event.call_id, name="")
            if pending.part is None:
                pending.chunks.append(event.chunk)
        elif isinstance(event, ToolCallEnd):
            pending = self._calls.get(event.call_id)
            if pending is None:
                logger.warning(
                    "ToolCallEnd for unknown call",
                    extra={"extra": {"provider": self.provider, "call_id": event.call_id}},
                )
            elif pending.part is None:
                self._close(pending)
        elif isinstance(event, UsageUpdate):
            self._usage = event.usage if self._usage is None else self._usage.merge(event.usage)
        elif isinstance(event, Done):
            for pending in self._calls.values():
                if pending.part is None:
                    self._close(pending)
            if event.usage is not None:
                self._usage = event.usage if self._usage is None else self._usage.merge(event.usage)
            self._finish = event.finish_reason
            self._terminal = True
        elif isinstance(event, ErrorEvent):
            self._abandon_open_calls(f"stream failed: {event.error.message}")
            self._error = event.error
            self._finish = "error"
            self._terminal = True
        elif isinstance(event, Canceled):
            self._abandon_open_calls(f"stream canceled: {event.reason}")
            self._canceled = True
            self._finish = "canceled"
            self._terminal = True
        elif isinstance(event, RetryScheduled):
            logger.debug(
                "Discarding partial attempt before retry",
                extra={"extra": {"provider": self.provider, "attempt": event.attempt, "text_chunks": len(self._text)}},
            )
            self._reset()

    def _close(self, pending: _PendingCall) -> None:
        raw = "".join(pending.chunks)
        arguments, error = parse_tool_arguments(pending.id, raw)
        pending.part = ToolCallPart(
            id=pending.id,
            name=pending.name,
            arguments=arguments,
            raw_arguments=raw,
            error=error,
        )

    def _abandon_open_calls(self, message: str) -> None:
        for pending in self._calls.values():
            if pending.part is None:
                pending.part = ToolCallPart(
                    id=pending.id,
                    name=pending.name,
                    arguments=None,
                    raw_arguments="".join(pending.chunks),
                    error=MalformedToolCallError(
                        f"tool call {pending.id!r} incomplete, {message}",
                        call_id=pending.id,
                        provider=self.provider or None,
                    ),
                )

    def _snapshot_calls(self) -> List[ToolCallPart]:
        calls: List[ToolCallPart] = []
        for pending in self._calls.values():
            if pending.part is not None:
                calls.append(pending.part)
            else:
                # 流尚未结束时的临时视图
                calls.append(
                    ToolCallPart(id=pending.id, name=pending.name, raw_arguments="".join(pending.chunks))
                )
        return calls

    def result(self) -> AssemblyResult:
        turn = Turn.assistant("".join(self._text), self._snapshot_calls())
        message = AssembledMessage(
            turn=turn,
            finish_reason=self._finish,
            usage=self._usage,
            provider=self.provider,
            model=self.model,
        )
        return AssemblyResult(message=message, error=self._error, canceled=self._canceled)

    async def assemble(self, events: AsyncIterator[ResponseEvent], sink: Optional[EventSink] = None) -> AssemblyResult:
        """消费整个事件序列，每个事件先交给 sink（可为协程函数）再折叠。"""

        async for event in events:
            if sink is not None:
                outcome = sink(event)
                if inspect.isawaitable(outcome):
                    await outcome
            self.feed(event)
        return self.result()

    async def iterate(self, events: AsyncIterator[ResponseEvent]) -> AsyncIterator[ResponseEvent]:
        """边折叠边原样转发事件；迭代结束后可通过 result() 取得结果。"""

        async for event in events:
            self.feed(event)
            yield event
