"""Caller：针对一个 Provider 适配器执行一次 ChatRequest。

职责：
- 通过 HttpTransport 发出请求（流式或一次性读取响应体）；
- 把网络字节交给适配器解码为 ResponseEvent，按到达顺序逐个产出；
- 对 transient 错误按 BackoffPolicy 重试，重试前产出 RetryScheduled，
  此前尝试的部分内容由下游丢弃；重试耗尽后以 RetryExhaustedError 结束；
- 在每个挂起点检查 CancellationToken，取消时中止网络读取并以 Canceled 结束。

一次 execute 对应一个 CallStream，事件序列有限且不可重放。
"""

import asyncio
import logging
import random
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from assistant_core.caller.cancellation import CancellationToken
from assistant_core.caller.limiter import LimiterRegistry
from assistant_core.caller.retry import BackoffPolicy, RetryState
from assistant_core.caller.transport import HttpTransport, HttpxTransport
from assistant_core.domain.events import (
    Canceled,
    ErrorEvent,
    ResponseEvent,
    RetryScheduled,
    is_terminal,
)
from assistant_core.domain.exceptions import CallError, CanceledError, NetworkError, RetryExhaustedError
from assistant_core.domain.models import ChatRequest
from assistant_core.infrastructure.logging.logger import logger
from assistant_core.providers.base import ProviderAdapter, ProviderWirePayload
from assistant_core.stream.assembler import AssemblyResult, EventSink, StreamAssembler


class CallStream:
    """一次调用产出的事件流（异步迭代器）。

    Attributes:
        retry_state: 本次调用的 RetryState，可在迭代过程中或结束后检查。
        cancel_token: 本次调用使用的取消令牌。
    """

    def __init__(
        self,
        caller: "Caller",
        request: ChatRequest,
        adapter: ProviderAdapter,
        cancel_token: CancellationToken,
        policy: BackoffPolicy,
    ):
        self.request = request
        self.adapter = adapter
        self.cancel_token = cancel_token
        self.retry_state = RetryState(policy=policy)
        self._events = caller._run(self)

    @property
    def attempts(self) -> int:
        return self.retry_state.attempt

    def cancel(self, reason: str = "canceled") -> None:
        self.cancel_token.cancel(reason)

    def __aiter__(self) -> "CallStream":
        return self

    async def __anext__(self) -> ResponseEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()


class Caller:
    def __init__(
        self,
        transport: Optional[HttpTransport] = None,
        limiter_registry: Optional[LimiterRegistry] = None,
        policy: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self._transport = transport or HttpxTransport()
        self._limiters = limiter_registry or LimiterRegistry()
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def execute(
        self,
        request: ChatRequest,
        adapter: ProviderAdapter,
        cancel_token: Optional[CancellationToken] = None,
        policy: Optional[BackoffPolicy] = None,
        **policy_overrides: Any,
    ) -> CallStream:
        """开始执行请求，返回惰性的事件流；第一次迭代时才发出网络请求。

        policy_overrides 可按调用覆盖退避参数，例如 max_attempts=1。
        """

        effective = (policy or self.policy).merged(**policy_overrides)
        return CallStream(self, request, adapter, cancel_token or CancellationToken(), effective)

    async def complete(
        self,
        request: ChatRequest,
        adapter: ProviderAdapter,
        cancel_token: Optional[CancellationToken] = None,
        sink: Optional[EventSink] = None,
        **policy_overrides: Any,
    ) -> AssemblyResult:
        """执行请求并折叠为 AssemblyResult。"""

        stream = self.execute(request, adapter, cancel_token, **policy_overrides)
        assembler = StreamAssembler(provider=adapter.name, model=request.model)
        return await assembler.assemble(stream, sink)

    async def _run(self, call: CallStream) -> AsyncIterator[ResponseEvent]:
        adapter, token, state = call.adapter, call.cancel_token, call.retry_state
        log_ctx: Dict[str, Any] = {
            "provider": adapter.name,
            "model": call.request.model,
            "stream": call.request.stream,
        }
        try:
            payload = adapter.build_request(call.request)
        except CallError as exc:
            self._log(logging.ERROR, "Request rejected before sending", log_ctx, error=exc.code, reason=exc.message)
            yield ErrorEvent(exc)
            return

        started = self._clock()
        while True:
            if token.cancelled:
                yield Canceled(reason=token.reason)
                return
            attempt = state.advance()
            adapter.begin_stream()
            self._log(logging.INFO, "Provider attempt started", log_ctx, attempt=attempt)
            failure: Optional[CallError] = None
            async with aclosing(self._attempt(payload, adapter, token)) as events:
                async for event in events:
                    if isinstance(event, ErrorEvent) and event.error.retryable:
                        failure = event.error
                        break
                    yield event
                    if is_terminal(event):
                        self._log_terminal(event, log_ctx, state)
                        return
                    if token.cancelled:
                        yield Canceled(reason=token.reason)
                        self._log(logging.INFO, "Provider call canceled", log_ctx, attempt=attempt)
                        return
            if failure is None:
                failure = NetworkError("stream ended without a terminal event", provider=adapter.name)

            state.record_failure(failure, self._clock() - started, self._rng)
            if not state.can_retry():
                exhausted = RetryExhaustedError(failure, attempts=state.attempt, elapsed=state.elapsed)
                self._log(
                    logging.ERROR,
                    "Provider call failed, retries exhausted",
                    log_ctx,
                    attempts=state.attempt,
                    elapsed=round(state.elapsed, 3),
                    error=failure.code,
                    status_code=failure.status_code,
                )
                yield ErrorEvent(exhausted)
                return

            self._log(
                logging.WARNING,
                "Transient provider failure, retrying",
                log_ctx,
                attempt=attempt,
                delay=round(state.next_delay, 3),
                error=failure.code,
                status_code=failure.status_code,
                reason=failure.message,
            )
            yield RetryScheduled(attempt=attempt + 1, delay=state.next_delay, error=failure)
            try:
                await self._guarded(self._sleep(state.next_delay), token)
            except CanceledError:
                yield Canceled(reason=token.reason)
                return

    async def _attempt(
        self,
        payload: ProviderWirePayload,
        adapter: ProviderAdapter,
        token: CancellationToken,
    ) -> AsyncIterator[ResponseEvent]:
        """单次网络尝试：产出事件，网络与 HTTP 错误都转为 ErrorEvent 产出。"""

        limiter = self._limiters.get(
            adapter.name,
            max_concurrency=adapter.config.max_concurrency,
            min_interval=adapter.config.min_interval,
        )
        try:
            async with limiter.slot():
                async with self._transport.open(payload) as response:
                    if response.status_code >= 400:
                        body = await self._guarded(response.aread(), token)
                        yield ErrorEvent(adapter.build_error(response.status_code, body, response.headers))
                        return
                    if not payload.stream:
                        body = await self._guarded(response.aread(), token)
                        for event in adapter.parse_body(body):
                            yield event
                        return
                    chunks = response.aiter_bytes().__aiter__()
                    while True:
                        try:
                            chunk = await self._guarded(chunks.__anext__(), token)
                        except StopAsyncIteration:
                            break
                        for event in adapter.parse_event(chunk):
                            yield event
                            if is_terminal(event):
                                return
                    for event in adapter.finish_stream():
                        yield event
        except CanceledError as exc:
            yield Canceled(reason=exc.message)
        except CallError as exc:
            if exc.provider is None:
                exc.provider = adapter.name
            yield ErrorEvent(exc)

    async def _guarded(self, awaitable: Awaitable[Any], token: CancellationToken) -> Any:
        """等待 awaitable；期间若令牌被取消，中止它并抛出 CanceledError。"""

        token.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        await asyncio.gather(task, return_exceptions=True)
        raise CanceledError(token.reason)

    def _log_terminal(self, event: ResponseEvent, log_ctx: Dict[str, Any], state: RetryState) -> None:
        if isinstance(event, ErrorEvent):
            self._log(
                logging.ERROR,
                "Provider call failed",
                log_ctx,
                attempts=state.attempt,
                error=event.error.code,
                kind=event.error.kind.value,
                status_code=event.error.status_code,
                reason=event.error.message,
            )
        elif isinstance(event, Canceled):
            self._log(logging.INFO, "Provider call canceled", log_ctx, attempts=state.attempt)
        else:
            self._log(
                logging.INFO,
                "Provider call completed",
                log_ctx,
                attempts=state.attempt,
                retries=state.retries,
                finish_reason=getattr(event, "finish_reason", None),
            )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
