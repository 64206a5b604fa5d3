"""协作式取消信号。

Caller 在每个挂起点（读取网络分片、退避等待、事件之间）检查令牌；
取消不是抢占式的。
"""

import asyncio
from typing import List, Optional

from assistant_core.domain.exceptions import CanceledError


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._children: List["CancellationToken"] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason or "canceled"

    def cancel(self, reason: str = "canceled") -> None:
        """发出取消信号，重复调用只保留第一次的原因。"""

        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    async def wait(self) -> str:
        await self._event.wait()
        return self.reason

    def child(self) -> "CancellationToken":
        """派生子令牌：父令牌取消时子令牌随之取消，反之不影响父令牌。"""

        token = CancellationToken()
        if self.cancelled:
            token.cancel(self.reason)
        else:
            self._children.append(token)
        return token

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CanceledError(self.reason)
