import json
from contextlib import asynccontextmanager

import pytest

from assistant_core.caller.client import Caller
from assistant_core.caller.retry import BackoffPolicy
from assistant_core.config.settings import CONFIG_FILE_ENV, Settings
from assistant_core.providers.registry import ANTHROPIC_CONFIG, OPENAI_CONFIG


class FakeResponse:
    def __init__(self, status_code=200, chunks=(), body=b"", headers=None):
        self.status_code = status_code
        self.chunks = list(chunks)
        self.body = body
        self.headers = headers or {}
        self.reads = 0

    async def aiter_bytes(self):
        for chunk in self.chunks:
            self.reads += 1
            yield chunk

    async def aread(self):
        return self.body


class FakeTransport:
    """按顺序返回预置响应；元素为异常时在 open 时抛出。"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.payloads = []
        self.opened = []

    @asynccontextmanager
    async def open(self, payload):
        self.payloads.append(payload)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        self.opened.append(item)
        yield item

    @property
    def reads(self):
        return sum(r.reads for r in self.opened)


def sse(*frames):
    return "".join(f"data: {f if isinstance(f, str) else json.dumps(f)}\n\n" for f in frames).encode("utf-8")


def openai_text_chunks(*texts, finish="stop"):
    chunks = [sse({"choices": [{"index": 0, "delta": {"content": t}}]}) for t in texts]
    chunks.append(sse({"choices": [{"index": 0, "delta": {}, "finish_reason": finish}]}, "[DONE]"))
    return chunks


async def no_sleep(delay):
    return None


@pytest.fixture
def openai_config():
    return OPENAI_CONFIG.with_overrides(api_key="sk-test-1234567890")


@pytest.fixture
def anthropic_config():
    return ANTHROPIC_CONFIG.with_overrides(api_key="sk-ant-test-1234567890")


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_response():
    return FakeResponse


@pytest.fixture
def sse_frames():
    return sse


@pytest.fixture
def text_chunks():
    return openai_text_chunks


@pytest.fixture
def fast_caller(make_transport):
    """返回 build(responses, **kw) -> (Caller, FakeTransport)，退避等待为空操作。"""

    def build(responses, **policy):
        transport = make_transport(responses)
        caller = Caller(
            transport=transport,
            policy=BackoffPolicy(**policy),
            sleep=no_sleep,
            rng=lambda: 0.5,
        )
        return caller, transport

    return build


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """隔离环境变量与工作目录，避免读到本机的 .env / config.yaml。"""

    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    monkeypatch.delenv(CONFIG_FILE_ENV, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path
