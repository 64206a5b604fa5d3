import asyncio
import json

import httpx
import pytest

from assistant_core.caller.cancellation import CancellationToken
from assistant_core.caller.client import Caller
from assistant_core.caller.limiter import LimiterRegistry, ProviderLimiter
from assistant_core.caller.retry import BackoffPolicy
from assistant_core.caller.transport import HttpxTransport
from assistant_core.domain.events import Canceled, Done, ErrorEvent, RetryScheduled, TextDelta
from assistant_core.domain.exceptions import (
    AuthenticationError,
    ErrorKind,
    MalformedResponseError,
    NetworkError,
    RetryExhaustedError,
    ServerError,
    UnsupportedCapabilityError,
)
from assistant_core.domain.models import ChatRequest, Turn
from assistant_core.providers.base import ProviderCapabilities
from assistant_core.providers.openai_compat import OpenAICompatibleAdapter
from assistant_core.tools.definitions import ToolDef

OVERLOADED = json.dumps({"error": {"message": "server overloaded", "type": "server_error"}}).encode()


async def no_sleep(delay):
    return None


def _request(stream=True, **kw):
    return ChatRequest(provider="openai", model="chat", turns=(Turn.user("hi"),), stream=stream, **kw)


async def _collect(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_transient_failures_then_success(fast_caller, make_response, text_chunks, openai_config):
    caller, transport = fast_caller(
        [
            make_response(503, body=OVERLOADED),
            make_response(503, body=OVERLOADED),
            make_response(200, chunks=text_chunks("Hel", "lo")),
        ],
        max_attempts=3,
    )
    stream = caller.execute(_request(), OpenAICompatibleAdapter(openai_config))
    events = await _collect(stream)

    assert sum(isinstance(e, Done) for e in events) == 1
    retries = [e for e in events if isinstance(e, RetryScheduled)]
    assert [r.attempt for r in retries] == [2, 3]
    assert all(isinstance(r.error, ServerError) for r in retries)
    assert stream.retry_state.retries == 2
    assert stream.attempts == 3
    assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "Hello"
    assert len(transport.payloads) == 3


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(fast_caller, make_response, openai_config):
    body = json.dumps({"error": {"message": "Incorrect API key provided", "code": "invalid_api_key"}}).encode()
    caller, transport = fast_caller([make_response(401, body=body)], max_attempts=5)
    stream = caller.execute(_request(), OpenAICompatibleAdapter(openai_config))
    events = await _collect(stream)

    assert len(events) == 1
    assert isinstance(events[0].error, AuthenticationError)
    assert events[0].error.kind is ErrorKind.PERMANENT
    assert events[0].error.provider == "openai"
    assert stream.retry_state.retries == 0
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_retries_exhausted(fast_caller, make_response, openai_config):
    caller, transport = fast_caller([make_response(503, body=OVERLOADED) for _ in range(2)], max_attempts=2)
    events = await _collect(caller.execute(_request(), OpenAICompatibleAdapter(openai_config)))

    terminal = events[-1]
    assert isinstance(terminal, ErrorEvent)
    assert isinstance(terminal.error, RetryExhaustedError)
    assert terminal.error.kind is ErrorKind.PERMANENT
    assert terminal.error.attempts == 2
    assert isinstance(terminal.error.last_error, ServerError)
    assert len(transport.payloads) == 2


@pytest.mark.asyncio
async def test_partial_stream_then_transient_error_is_retried(fast_caller, make_response, text_chunks, sse_frames, openai_config):
    # 第一次尝试输出部分文本后连接中断（没有 finish_reason / [DONE]）
    truncated = make_response(200, chunks=[sse_frames({"choices": [{"index": 0, "delta": {"content": "stale"}}]})])
    caller, _ = fast_caller([truncated, make_response(200, chunks=text_chunks("fresh"))], max_attempts=2)
    result = await caller.complete(_request(), OpenAICompatibleAdapter(openai_config))

    assert result.ok
    assert result.text == "fresh"


@pytest.mark.asyncio
async def test_wrongly_shaped_frame_ends_call_with_malformed_error(fast_caller, make_response, sse_frames, openai_config):
    chunks = [
        sse_frames({"choices": [{"index": 0, "delta": {"content": "kept"}}]}),
        sse_frames({"choices": [{"index": 0, "delta": "oops"}]}, "[DONE]"),
    ]
    caller, transport = fast_caller([make_response(200, chunks=chunks)], max_attempts=3)
    result = await caller.complete(_request(), OpenAICompatibleAdapter(openai_config))

    assert not result.ok
    assert isinstance(result.error, MalformedResponseError)
    assert '"delta": "oops"' in result.error.raw
    assert result.text == "kept"
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_network_error_on_open_is_retried(fast_caller, make_response, text_chunks, openai_config):
    caller, _ = fast_caller(
        [NetworkError("connection reset"), make_response(200, chunks=text_chunks("ok"))],
        max_attempts=2,
    )
    events = await _collect(caller.execute(_request(), OpenAICompatibleAdapter(openai_config)))
    assert isinstance(events[0], RetryScheduled)
    assert isinstance(events[-1], Done)


@pytest.mark.asyncio
async def test_cancel_after_first_event_stops_reading(fast_caller, make_response, text_chunks, openai_config):
    caller, transport = fast_caller([make_response(200, chunks=text_chunks("a", "b", "c"))])
    stream = caller.execute(_request(), OpenAICompatibleAdapter(openai_config))
    events = []
    async for event in stream:
        events.append(event)
        if isinstance(event, TextDelta):
            stream.cancel("user")

    assert [type(e) for e in events] == [TextDelta, Canceled]
    assert events[-1].reason == "user"
    assert transport.reads == 1


class _HangingResponse:
    status_code = 200
    headers = {}

    def __init__(self, first):
        self.first = first
        self.closed = False

    async def aiter_bytes(self):
        yield self.first
        try:
            await asyncio.Event().wait()
        finally:
            self.closed = True
        yield b""

    async def aread(self):
        return b""


@pytest.mark.asyncio
async def test_cancel_interrupts_pending_read(fast_caller, sse_frames, openai_config):
    response = _HangingResponse(sse_frames({"choices": [{"index": 0, "delta": {"content": "a"}}]}))
    caller, _ = fast_caller([response])
    token = CancellationToken()
    stream = caller.execute(_request(), OpenAICompatibleAdapter(openai_config), cancel_token=token)

    asyncio.get_running_loop().call_later(0.01, token.cancel, "timeout")
    events = await asyncio.wait_for(_collect(stream), timeout=2)

    assert isinstance(events[-1], Canceled)
    assert events[-1].reason == "timeout"
    assert response.closed


@pytest.mark.asyncio
async def test_cancel_during_backoff(make_transport, make_response, openai_config):
    token = CancellationToken()

    async def sleep(delay):
        token.cancel("stop")
        await asyncio.sleep(10)

    transport = make_transport([make_response(503, body=OVERLOADED), make_response(200)])
    caller = Caller(transport=transport, sleep=sleep, rng=lambda: 0.5)
    events = await _collect(caller.execute(_request(), OpenAICompatibleAdapter(openai_config), cancel_token=token))

    assert [type(e) for e in events] == [RetryScheduled, Canceled]
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_already_cancelled_token_sends_nothing(fast_caller, openai_config):
    caller, transport = fast_caller([])
    token = CancellationToken()
    token.cancel()
    events = await _collect(caller.execute(_request(), OpenAICompatibleAdapter(openai_config), cancel_token=token))
    assert [type(e) for e in events] == [Canceled]
    assert transport.payloads == []


@pytest.mark.asyncio
async def test_retry_after_is_respected(make_transport, make_response, text_chunks, openai_config):
    delays = []

    async def sleep(delay):
        delays.append(delay)

    transport = make_transport(
        [
            make_response(429, body=b'{"error": {"message": "Rate limit reached"}}', headers={"retry-after": "5"}),
            make_response(200, chunks=text_chunks("ok")),
        ]
    )
    caller = Caller(transport=transport, sleep=sleep, rng=lambda: 0.5)
    result = await caller.complete(_request(), OpenAICompatibleAdapter(openai_config))
    assert result.ok
    assert delays == [5.0]


@pytest.mark.asyncio
async def test_capability_check_happens_before_sending(fast_caller, openai_config):
    adapter = OpenAICompatibleAdapter(
        openai_config.with_overrides(capabilities=ProviderCapabilities(streaming=True, tools=False))
    )
    caller, transport = fast_caller([])
    events = await _collect(caller.execute(_request(tools=[ToolDef(name="t", description="")]), adapter))
    assert isinstance(events[0].error, UnsupportedCapabilityError)
    assert transport.payloads == []


@pytest.mark.asyncio
async def test_non_streaming_request(fast_caller, make_response, openai_config):
    body = json.dumps(
        {"choices": [{"message": {"role": "assistant", "content": "whole"}, "finish_reason": "stop"}]}
    ).encode()
    caller, transport = fast_caller([make_response(200, body=body)])
    result = await caller.complete(_request(stream=False), OpenAICompatibleAdapter(openai_config))
    assert result.text == "whole"
    assert transport.payloads[0].stream is False
    assert transport.payloads[0].json_body["stream"] is False


@pytest.mark.asyncio
async def test_per_call_policy_override(fast_caller, make_response, openai_config):
    caller, transport = fast_caller([make_response(503, body=OVERLOADED)], max_attempts=4)
    events = await _collect(caller.execute(_request(), OpenAICompatibleAdapter(openai_config), max_attempts=1))
    assert isinstance(events[-1].error, RetryExhaustedError)
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_limiter_created_per_provider(make_transport, make_response, text_chunks, openai_config, anthropic_config):
    registry = LimiterRegistry()
    caller = Caller(
        transport=make_transport([make_response(200, chunks=text_chunks("x"))]),
        limiter_registry=registry,
        sleep=no_sleep,
    )
    await caller.complete(_request(), OpenAICompatibleAdapter(openai_config))
    assert "openai" in registry
    assert "anthropic" not in registry
    assert registry.get("openai") is registry.get("openai")
    assert registry.get("openai").in_flight == 0


@pytest.mark.asyncio
async def test_limiter_enforces_min_interval():
    now = [100.0]
    waits = []

    async def sleep(delay):
        waits.append(delay)
        now[0] += delay

    limiter = ProviderLimiter("glm", max_concurrency=1, min_interval=1.0, clock=lambda: now[0], sleep=sleep)
    async with limiter.slot():
        assert limiter.in_flight == 1
    now[0] += 0.25
    async with limiter.slot():
        pass
    assert waits == [pytest.approx(0.75)]


@pytest.mark.asyncio
async def test_limiter_bounds_concurrency():
    limiter = ProviderLimiter("kimi", max_concurrency=2)
    peak = 0

    async def worker():
        nonlocal peak
        async with limiter.slot():
            peak = max(peak, limiter.in_flight)
            await asyncio.sleep(0.01)

    await asyncio.gather(*(worker() for _ in range(5)))
    assert peak == 2


@pytest.mark.asyncio
async def test_httpx_transport_streams_and_maps_errors(text_chunks, openai_config):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        assert request.headers["Authorization"] == "Bearer sk-test-1234567890"
        return httpx.Response(200, content=b"".join(text_chunks("via ", "httpx")))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        caller = Caller(transport=HttpxTransport(client), policy=BackoffPolicy(max_attempts=2), sleep=no_sleep)
        result = await caller.complete(_request(), OpenAICompatibleAdapter(openai_config))

    assert result.ok
    assert result.text == "via httpx"
    assert len(attempts) == 2
