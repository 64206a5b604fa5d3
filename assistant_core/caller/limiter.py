"""按 Provider 划分的限流器。

每个 Provider 一个 ProviderLimiter：信号量限制同时进行的请求数，
并保证两次请求开始之间至少间隔 min_interval 秒。
不同 Provider 的限流器互不影响。
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional


class ProviderLimiter:
    def __init__(
        self,
        name: str,
        max_concurrency: int = 4,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.max_concurrency = max(1, max_concurrency)
        self.min_interval = max(0.0, min_interval)
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sleep = sleep
        self._last_start: Optional[float] = None
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def slot(self):
        """占用一个并发名额，直到上下文退出。"""

        async with self._semaphore:
            await self._throttle()
            self._in_flight += 1
            try:
                yield self
            finally:
                self._in_flight -= 1

    async def _throttle(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            now = self._clock()
            if self._last_start is not None:
                wait = self._last_start + self.min_interval - now
                if wait > 0:
                    await self._sleep(wait)
                    now = self._clock()
            self._last_start = now


class LimiterRegistry:
    """为每个 Provider 名称提供唯一的 ProviderLimiter。"""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._limiters: Dict[str, ProviderLimiter] = {}
        self._clock = clock
        self._sleep = sleep

    def get(self, name: str, max_concurrency: int = 4, min_interval: float = 0.0) -> ProviderLimiter:
        limiter = self._limiters.get(name)
        if limiter is None:
            limiter = ProviderLimiter(
                name,
                max_concurrency=max_concurrency,
                min_interval=min_interval,
                clock=self._clock,
                sleep=self._sleep,
            )
            self._limiters[name] = limiter
        return limiter

    def __contains__(self, name: str) -> bool:
        return name in self._limiters
