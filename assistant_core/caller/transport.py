"""HTTP 传输层。

Caller 只通过 HttpTransport 协议发请求，便于在测试中替换为假的传输实现。
默认实现 HttpxTransport 基于 httpx.AsyncClient：
- trust_env=False，不读取系统代理等环境变量；
- httpx 的超时 / 连接错误统一转换为 NetworkError（transient，可重试）。
"""

from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Mapping, Optional, Protocol

import httpx

from assistant_core.domain.exceptions import NetworkError
from assistant_core.providers.base import ProviderWirePayload


class TransportResponse(Protocol):
    status_code: int
    headers: Mapping[str, str]

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def aread(self) -> bytes:
        ...


class HttpTransport(Protocol):
    def open(self, payload: ProviderWirePayload) -> AsyncContextManager[TransportResponse]:
        """发出请求并在上下文内提供响应；退出上下文即关闭连接。"""
        ...


class HttpxResponse:
    """包装 httpx.Response，把读取过程中的 httpx 异常转换为 NetworkError。"""

    def __init__(self, response: httpx.Response, url: str):
        self._response = response
        self._url = url
        self.status_code = response.status_code
        self.headers = response.headers

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            raise _network_error(exc, self._url) from exc

    async def aread(self) -> bytes:
        try:
            return await self._response.aread()
        except httpx.HTTPError as exc:
            raise _network_error(exc, self._url) from exc


class HttpxTransport:
    """基于 httpx.AsyncClient 的默认传输实现。

    可传入共享的 AsyncClient（由调用方负责关闭）；
    未传入时每次请求创建并关闭一个临时客户端。
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, default_timeout: float = 60.0):
        self._client = client
        self._default_timeout = default_timeout

    @asynccontextmanager
    async def open(self, payload: ProviderWirePayload):
        client = self._client or httpx.AsyncClient(trust_env=False)
        timeout = httpx.Timeout(payload.timeout or self._default_timeout)
        try:
            request = client.build_request(
                payload.method,
                payload.url,
                headers=payload.headers,
                json=payload.json_body,
                timeout=timeout,
            )
            try:
                response = await client.send(request, stream=True)
            except httpx.HTTPError as exc:
                raise _network_error(exc, payload.url) from exc
            try:
                yield HttpxResponse(response, payload.url)
            finally:
                await response.aclose()
        finally:
            if self._client is None:
                await client.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _network_error(exc: httpx.HTTPError, url: str) -> NetworkError:
    if isinstance(exc, httpx.TimeoutException):
        message = f"request to {url} timed out: {exc}"
    else:
        message = f"request to {url} failed: {exc}"
    return NetworkError(message, raw=type(exc).__name__)
