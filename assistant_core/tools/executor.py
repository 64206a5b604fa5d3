import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from assistant_core.domain.exceptions import ToolExecutionError
from assistant_core.domain.models import ToolCallPart, ToolResultPart
from .definitions import ToolDef


# 工具函数接收结构化参数，可以是普通函数或协程函数
ToolFunc = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolExecutor:
    """工具注册表与执行器。

    普通函数在线程中执行，不阻塞事件循环；协程函数直接 await。
    未注册的工具、参数无法解析或工具内部抛出的异常统一转换为 ToolExecutionError。
    """

    def __init__(
        self,
        tools: Optional[Dict[str, ToolFunc]] = None,
        definitions: Optional[List[ToolDef]] = None,
    ):
        self._tools: Dict[str, ToolFunc] = dict(tools or {})
        self._defs: Dict[str, ToolDef] = {d.name: d for d in definitions or []}

    def register(self, name: str, func: ToolFunc, definition: Optional[ToolDef] = None) -> None:
        self._tools[name] = func
        if definition is not None:
            self._defs[name] = definition

    def definitions(self) -> List[ToolDef]:
        """提供给模型的工具定义（只包含已注册函数的工具）。"""

        return [d for name, d in self._defs.items() if name in self._tools]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def execute(self, call: ToolCallPart) -> ToolResultPart:
        func = self._tools.get(call.name)
        if func is None:
            raise ToolExecutionError(
                f"tool {call.name!r} is not registered",
                tool_name=call.name,
                call_id=call.id,
            )
        if not call.ok:
            reason = call.error.message if call.error is not None else "missing arguments"
            raise ToolExecutionError(
                f"tool {call.name!r} called with malformed arguments: {reason}",
                tool_name=call.name,
                call_id=call.id,
            )
        args = dict(call.arguments or {})
        try:
            if inspect.iscoroutinefunction(func):
                result = await func(args)
            else:
                result = await asyncio.to_thread(func, args)
                if inspect.isawaitable(result):
                    result = await result
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(
                f"tool {call.name!r} failed: {exc}",
                tool_name=call.name,
                call_id=call.id,
            ) from exc
        return ToolResultPart(call_id=call.id, payload=result)
