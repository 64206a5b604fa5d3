"""Assistant Core 顶层包。

该包提供对话助手客户端的核心实现：统一的消息模型、
各厂商 Provider 适配、带重试与取消的请求执行、流式事件折叠、
对话 / 工具调用状态机，以及配置、日志与会话持久化等外围组件。
"""

from assistant_core.agents.orchestrator import AssistantConfig, AssistantOrchestrator, ToolDispatchPolicy
from assistant_core.caller import BackoffPolicy, Caller, CancellationToken
from assistant_core.providers import create_adapter
from assistant_core.stream import StreamAssembler

__all__ = [
    "AssistantConfig",
    "AssistantOrchestrator",
    "BackoffPolicy",
    "Caller",
    "CancellationToken",
    "StreamAssembler",
    "ToolDispatchPolicy",
    "create_adapter",
]
