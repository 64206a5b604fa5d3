"""Assistant Orchestrator：请求 / 流式折叠 / 工具调用循环。

用显式有限状态机驱动一轮对话：

    AwaitingInput → Requesting → Streaming → (ToolDispatch → Requesting)* → Idle
                                         ↘ Failed

- Requesting → Streaming：Caller 开始产出事件。
- Streaming → ToolDispatch：折叠出的消息包含尚未有结果的工具调用，否则 → Idle。
- ToolDispatch 执行工具，把 ToolResult 作为新 Turn 追加后回到 Requesting。
- Failed：Caller / 适配器的不可恢复错误，或策略标记为致命的工具错误。
- run() 在到达终态前被关闭或抛出异常时，补齐悬空的工具调用后进入 Failed，实例仍可继续使用。

每个 Orchestrator 实例只有一条控制流，多个实例之间不共享可变状态；
Conversation 只由 Orchestrator 追加。
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional, Tuple
from uuid import uuid4

from assistant_core.agents.modes import seed_turns
from assistant_core.caller.cancellation import CancellationToken
from assistant_core.caller.client import Caller
from assistant_core.domain.events import ResponseEvent
from assistant_core.domain.exceptions import BusinessError, ToolExecutionError, ValidationError
from assistant_core.domain.models import (
    AssembledMessage,
    ChatRequest,
    Conversation,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Turn,
    Usage,
)
from assistant_core.infrastructure.logging.logger import logger
from assistant_core.providers.base import ProviderAdapter
from assistant_core.stream.assembler import StreamAssembler
from assistant_core.tools.executor import ToolExecutor


class OrchestratorState(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    IDLE = "idle"
    FAILED = "failed"


S = OrchestratorState
ALLOWED_TRANSITIONS: Dict[OrchestratorState, Tuple[OrchestratorState, ...]] = {
    S.AWAITING_INPUT: (S.REQUESTING,),
    S.REQUESTING: (S.STREAMING, S.FAILED),
    S.STREAMING: (S.TOOL_DISPATCH, S.IDLE, S.FAILED),
    S.TOOL_DISPATCH: (S.REQUESTING, S.IDLE, S.FAILED),
    S.IDLE: (S.AWAITING_INPUT,),
    S.FAILED: (S.AWAITING_INPUT,),
}


class InvalidTransitionError(BusinessError):
    def __init__(self, current: OrchestratorState, target: OrchestratorState):
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"cannot move from {current.value} to {target.value}",
            http_status=409,
        )
        self.current = current
        self.target = target


@dataclass(frozen=True)
class ToolDispatchPolicy:
    """工具调度策略。

    - mode: "sequential" 按顺序逐个执行；"parallel" 并发执行，结果仍按调用顺序追加。
    - max_concurrency: parallel 模式下同时执行的工具数上限。
    - fatal_errors: 为 True 时工具执行失败使本轮对话进入 Failed；
      否则把错误作为 is_error 的 ToolResult 回传给模型。
    """

    mode: Literal["sequential", "parallel"] = "sequential"
    max_concurrency: int = 4
    fatal_errors: bool = False

    def __post_init__(self) -> None:
        if self.mode not in ("sequential", "parallel"):
            raise ValidationError(code="INVALID_DISPATCH_MODE", message=f"unknown dispatch mode: {self.mode!r}")
        if self.max_concurrency < 1:
            raise ValidationError(code="INVALID_DISPATCH_MODE", message="max_concurrency must be >= 1")


@dataclass
class AssistantConfig:
    provider: str
    model: str = "chat"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = True
    mode: str = "general"
    system_prompt: Optional[str] = None
    max_tool_rounds: int = 20  # 最大工具调用轮次，用尽后要求模型直接作答


@dataclass
class TurnOutcome:
    """一次 run / send 的最终结果。"""

    state: OrchestratorState
    conversation: Conversation
    message: Optional[AssembledMessage] = None
    error: Optional[BusinessError] = None
    canceled: bool = False
    tool_rounds: int = 0
    usage: Usage = field(default_factory=Usage)

    @property
    def ok(self) -> bool:
        return self.state is OrchestratorState.IDLE and not self.canceled

    @property
    def text(self) -> str:
        return self.message.text if self.message is not None else ""


@dataclass(frozen=True)
class OrchestratorEvent:
    """Orchestrator 产生的事件。

    kind:
        - "state": 状态变化。
        - "response": Caller 产出的原始 ResponseEvent（供展示层增量渲染）。
        - "message": 一次请求折叠出的 AssembledMessage（可能只有部分内容）。
        - "tool_result": 一个工具调用的执行结果。
        - "outcome": 本轮结束，携带 TurnOutcome。
    """

    kind: Literal["state", "response", "message", "tool_result", "outcome"]
    state: OrchestratorState
    event: Optional[ResponseEvent] = None
    message: Optional[AssembledMessage] = None
    tool_result: Optional[ToolResultPart] = None
    outcome: Optional[TurnOutcome] = None


class AssistantOrchestrator:
    def __init__(
        self,
        adapter_factory: Callable[[], ProviderAdapter],
        caller: Caller,
        config: AssistantConfig,
        tool_executor: Optional[ToolExecutor] = None,
        conversation: Optional[Conversation] = None,
        dispatch_policy: Optional[ToolDispatchPolicy] = None,
    ):
        self._adapter_factory = adapter_factory
        self._caller = caller
        self.config = config
        self._tools = tool_executor
        self.dispatch_policy = dispatch_policy or ToolDispatchPolicy()
        if conversation is None:
            conversation = Conversation(meta={"provider": config.provider, "model": config.model, "mode": config.mode})
            if config.system_prompt:
                conversation.append(Turn.system(config.system_prompt))
            conversation.extend(seed_turns(config.mode))
        self.conversation = conversation
        self.state = OrchestratorState.AWAITING_INPUT
        self._token: Optional[CancellationToken] = None

    # ---- 状态机 ----

    def _transition(self, target: OrchestratorState) -> OrchestratorEvent:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        self.state = target
        return OrchestratorEvent(kind="state", state=target)

    def cancel(self, reason: str = "canceled") -> None:
        """请求取消当前轮次；在下一个挂起点生效。"""

        if self._token is not None:
            self._token.cancel(reason)

    # ---- 主循环 ----

    async def send(self, user_input: str) -> TurnOutcome:
        outcome: Optional[TurnOutcome] = None
        async with aclosing(self.run(user_input)) as events:
            async for event in events:
                if event.kind == "outcome":
                    outcome = event.outcome
        if outcome is None:
            raise BusinessError(code="TURN_INCOMPLETE", message="turn ended without an outcome", http_status=500)
        return outcome

    async def run(self, user_input: str) -> AsyncIterator[OrchestratorEvent]:
        if self.state in (S.IDLE, S.FAILED):
            self._transition(S.AWAITING_INPUT)
        elif self.state is not S.AWAITING_INPUT:
            raise InvalidTransitionError(self.state, S.REQUESTING)

        self._token = token = CancellationToken()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": self.conversation.id,
            "provider": self.config.provider,
            "model": self.config.model,
        }
        self.conversation.append(Turn.user(user_input))
        self._log(logging.INFO, "Turn started", log_ctx, turns=len(self.conversation))

        try:
            rounds = 0
            usage = Usage()
            message: Optional[AssembledMessage] = None
            while True:
                yield self._transition(S.REQUESTING)
                tool_choice = "auto" if rounds < self.config.max_tool_rounds else "none"
                try:
                    adapter = self._adapter_factory()
                    request = self._build_request(tool_choice)
                except BusinessError as exc:
                    self._log(logging.ERROR, "Failed to prepare request", log_ctx, error=exc.code, reason=exc.message)
                    yield self._transition(S.FAILED)
                    yield self._outcome(error=exc, tool_rounds=rounds, usage=usage)
                    return

                assembler = StreamAssembler(provider=adapter.name, model=request.model)
                async with aclosing(self._caller.execute(request, adapter, token)) as stream:
                    async for event in stream:
                        if self.state is S.REQUESTING:
                            yield self._transition(S.STREAMING)
                        assembler.feed(event)
                        yield OrchestratorEvent(kind="response", state=self.state, event=event)
                if self.state is S.REQUESTING:
                    # Caller 没有产出任何事件
                    yield self._transition(S.STREAMING)

                result = assembler.result()
                message = result.message
                usage = _add_usage(usage, message.usage)
                yield OrchestratorEvent(kind="message", state=self.state, message=message)

                if result.canceled:
                    self._keep_partial(message)
                    self._log(logging.INFO, "Turn canceled", log_ctx, rounds=rounds)
                    yield self._transition(S.IDLE)
                    yield self._outcome(message=message, canceled=True, tool_rounds=rounds, usage=usage)
                    return
                if result.error is not None:
                    self._log(
                        logging.ERROR,
                        "Turn failed",
                        log_ctx,
                        error=result.error.code,
                        kind=result.error.kind.value,
                        reason=result.error.message,
                        partial_chars=len(message.text),
                    )
                    yield self._transition(S.FAILED)
                    yield self._outcome(message=message, error=result.error, tool_rounds=rounds, usage=usage)
                    return

                self.conversation.append(message.turn)
                pending = message.unresolved_tool_calls(self.conversation)
                if not pending:
                    self._log(
                        logging.INFO,
                        "Turn completed",
                        log_ctx,
                        rounds=rounds,
                        finish_reason=message.finish_reason,
                        input_tokens=usage.input_tokens,
                        output_tokens=usage.output_tokens,
                    )
                    yield self._transition(S.IDLE)
                    yield self._outcome(message=message, tool_rounds=rounds, usage=usage)
                    return

                yield self._transition(S.TOOL_DISPATCH)
                if rounds >= self.config.max_tool_rounds:
                    # 已要求模型不再调用工具却仍然调用：补齐错误结果保证会话合法后失败
                    results = [_error_result(call, "tool round limit reached") for call in pending]
                    self.conversation.append(Turn.tool(results))
                    error = BusinessError(
                        code="MAX_TOOL_ROUNDS_EXCEEDED",
                        message=f"model kept calling tools after {rounds} rounds",
                    )
                    self._log(logging.ERROR, "Tool round limit exceeded", log_ctx, rounds=rounds)
                    yield self._transition(S.FAILED)
                    yield self._outcome(message=message, error=error, tool_rounds=rounds, usage=usage)
                    return

                rounds += 1
                self._log(
                    logging.INFO,
                    "Tool round",
                    log_ctx,
                    round=rounds,
                    max_rounds=self.config.max_tool_rounds,
                    tools=[call.name for call in pending],
                    mode=self.dispatch_policy.mode,
                )
                results, fatal = await self._dispatch(pending, token, log_ctx)
                self.conversation.append(Turn.tool(results))
                for item in results:
                    yield OrchestratorEvent(kind="tool_result", state=self.state, tool_result=item)

                if fatal is not None:
                    yield self._transition(S.FAILED)
                    yield self._outcome(message=message, error=fatal, tool_rounds=rounds, usage=usage)
                    return
                if token.cancelled:
                    yield self._transition(S.IDLE)
                    yield self._outcome(message=message, canceled=True, tool_rounds=rounds, usage=usage)
                    return
        finally:
            if self.state not in (S.AWAITING_INPUT, S.IDLE, S.FAILED):
                self._abandon(log_ctx)

    def _build_request(self, tool_choice: str) -> ChatRequest:
        tools = tuple(self._tools.definitions()) if self._tools is not None else ()
        return ChatRequest(
            provider=self.config.provider,
            model=self.config.model,
            turns=self.conversation.snapshot(),
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            tools=tools,
            tool_choice=tool_choice if tools else "auto",
            stream=self.config.stream,
        )

    def _keep_partial(self, message: AssembledMessage) -> None:
        # 取消时只保留已收到的文本，未完成的工具调用不进入会话
        if message.text:
            self.conversation.append(Turn(role="assistant", parts=(TextPart(message.text),), meta={"canceled": True}))

    def _abandon(self, log_ctx: Dict[str, Any]) -> None:
        """本轮在到达终态前被关闭或抛出异常：补齐悬空的工具调用并进入 Failed。"""

        resolved = {r.call_id for t in self.conversation.turns for r in t.tool_results}
        dangling = [c for t in self.conversation.turns for c in t.tool_calls if c.id not in resolved]
        if dangling:
            self.conversation.append(Turn.tool([_error_result(call, "turn abandoned") for call in dangling]))
        self._log(logging.WARNING, "Turn abandoned", log_ctx, state=self.state.value, dangling_tool_calls=len(dangling))
        self._transition(S.FAILED)

    def _outcome(self, **kwargs: Any) -> OrchestratorEvent:
        outcome = TurnOutcome(state=self.state, conversation=self.conversation, **kwargs)
        return OrchestratorEvent(kind="outcome", state=self.state, outcome=outcome)

    # ---- 工具调度 ----

    async def _dispatch(
        self,
        calls: List[ToolCallPart],
        token: CancellationToken,
        log_ctx: Dict[str, Any],
    ) -> Tuple[List[ToolResultPart], Optional[ToolExecutionError]]:
        policy = self.dispatch_policy
        outcomes: List[Tuple[ToolResultPart, Optional[ToolExecutionError]]] = []
        if policy.mode == "parallel":
            semaphore = asyncio.Semaphore(policy.max_concurrency)

            async def run_one(call: ToolCallPart):
                async with semaphore:
                    return await self._run_tool(call, token, log_ctx)

            outcomes = list(await asyncio.gather(*(run_one(call) for call in calls)))
        else:
            stop_reason: Optional[str] = None
            for call in calls:
                if stop_reason is not None:
                    outcomes.append((_error_result(call, stop_reason), None))
                    continue
                result, error = await self._run_tool(call, token, log_ctx)
                outcomes.append((result, error))
                if error is not None and policy.fatal_errors:
                    stop_reason = f"skipped after {call.name!r} failed"

        fatal: Optional[ToolExecutionError] = None
        if policy.fatal_errors:
            fatal = next((error for _, error in outcomes if error is not None), None)
        return [result for result, _ in outcomes], fatal

    async def _run_tool(
        self,
        call: ToolCallPart,
        token: CancellationToken,
        log_ctx: Dict[str, Any],
    ) -> Tuple[ToolResultPart, Optional[ToolExecutionError]]:
        if token.cancelled:
            return _error_result(call, f"canceled: {token.reason}"), None
        if call.error is not None:
            # 参数无法解析：只记录在该工具调用上，对话继续
            self._log(logging.WARNING, "Malformed tool call", log_ctx, tool=call.name, call_id=call.id)
            return _error_result(call, call.error.message, raw_arguments=call.raw_arguments), None
        if self._tools is None:
            error = ToolExecutionError("no tool executor configured", tool_name=call.name, call_id=call.id)
        else:
            try:
                result = await self._tools.execute(call)
            except ToolExecutionError as exc:
                error = exc
            else:
                self._log(logging.INFO, "Tool executed", log_ctx, tool=call.name, call_id=call.id)
                return result, None
        self._log(logging.WARNING, "Tool execution failed", log_ctx, tool=call.name, call_id=call.id, reason=error.message)
        return _error_result(call, error.message), error

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _error_result(call: ToolCallPart, message: str, **extra: Any) -> ToolResultPart:
    payload: Dict[str, Any] = {"error": message}
    payload.update(extra)
    return ToolResultPart(call_id=call.id, payload=payload, is_error=True)


def _add_usage(total: Usage, usage: Optional[Usage]) -> Usage:
    if usage is None:
        return total
    return Usage(
        input_tokens=total.input_tokens + usage.input_tokens,
        output_tokens=total.output_tokens + usage.output_tokens,
    )
