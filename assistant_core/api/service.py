"""对外 API 服务模块。

提供简化的函数接口供上层应用（CLI 等）调用：
配置 → ProviderConfig → 适配器工厂 → Caller → Orchestrator 的组装，
以及可选的会话持久化。
"""

from typing import Any, AsyncIterator, Dict, Optional

from assistant_core.agents.orchestrator import (
    AssistantConfig,
    AssistantOrchestrator,
    OrchestratorEvent,
    TurnOutcome,
)
from assistant_core.caller.client import Caller
from assistant_core.config.settings import (
    Settings,
    backoff_policy,
    dispatch_policy,
    load_settings,
    resolve_provider_config,
)
from assistant_core.domain.conversation import ConversationStore
from assistant_core.domain.models import Conversation
from assistant_core.infrastructure.logging.logger import logger
from assistant_core.infrastructure.storage.json_store import JsonConversationStore
from assistant_core.providers import create_adapter
from assistant_core.tools.executor import ToolExecutor


def build_orchestrator(
    settings: Optional[Settings] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    mode: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    stream: bool = True,
    conversation: Optional[Conversation] = None,
    tool_executor: Optional[ToolExecutor] = None,
    caller: Optional[Caller] = None,
) -> AssistantOrchestrator:
    """按配置组装 Orchestrator。

    Raises:
        ValidationError: Provider 未知或缺少 API Key。
    """
    settings = settings or load_settings()
    provider_config = resolve_provider_config(settings, provider)
    config = AssistantConfig(
        provider=provider_config.name,
        model=model or settings.default_model,
        temperature=temperature,
        max_tokens=max_tokens,
        stream=stream,
        mode=mode or settings.default_mode,
        max_tool_rounds=settings.max_tool_rounds,
    )
    return AssistantOrchestrator(
        adapter_factory=lambda: create_adapter(provider_config),
        caller=caller or Caller(policy=backoff_policy(settings)),
        config=config,
        tool_executor=tool_executor,
        conversation=conversation,
        dispatch_policy=dispatch_policy(settings),
    )


def _open_conversation(store: Optional[ConversationStore], conversation_id: Optional[str]) -> Optional[Conversation]:
    if store is None or not conversation_id:
        return None
    return store.load(conversation_id)


def outcome_to_dict(outcome: TurnOutcome) -> Dict[str, Any]:
    message = outcome.message
    return {
        "conversation_id": outcome.conversation.id,
        "state": outcome.state.value,
        "text": outcome.text,
        "finish_reason": message.finish_reason if message else None,
        "canceled": outcome.canceled,
        "tool_rounds": outcome.tool_rounds,
        "usage": {
            "input_tokens": outcome.usage.input_tokens,
            "output_tokens": outcome.usage.output_tokens,
            "total_tokens": outcome.usage.total_tokens,
        },
        "error": {"code": outcome.error.code, "message": outcome.error.message} if outcome.error else None,
    }


async def run_chat(
    user_input: str,
    conversation_id: Optional[str] = None,
    store: Optional[ConversationStore] = None,
    settings: Optional[Settings] = None,
    **options: Any,
) -> Dict[str, Any]:
    """运行一轮对话并返回结果字典。

    Args:
        user_input: 用户输入内容
        conversation_id: 会话ID（可选，需配合 store 使用，不提供则创建新会话）
        store: 会话存储（可选，提供时在结束后保存会话）
        settings: 配置（可选，默认从环境与配置文件加载）
        options: 透传给 build_orchestrator 的参数，如 provider、model、mode

    Returns:
        包含会话ID、状态、回答文本、结束原因、使用统计与错误信息的字典
    """
    try:
        conversation = _open_conversation(store, conversation_id)
        orchestrator = build_orchestrator(settings=settings, conversation=conversation, **options)
        outcome = await orchestrator.send(user_input)
        if store is not None:
            store.save(outcome.conversation)
        return outcome_to_dict(outcome)
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise


async def stream_chat(
    user_input: str,
    conversation_id: Optional[str] = None,
    store: Optional[ConversationStore] = None,
    settings: Optional[Settings] = None,
    orchestrator: Optional[AssistantOrchestrator] = None,
    **options: Any,
) -> AsyncIterator[OrchestratorEvent]:
    """流式运行一轮对话，原样产出 OrchestratorEvent；结束后保存会话。"""

    if orchestrator is None:
        conversation = _open_conversation(store, conversation_id)
        orchestrator = build_orchestrator(settings=settings, conversation=conversation, **options)
    async for event in orchestrator.run(user_input):
        yield event
    if store is not None:
        store.save(orchestrator.conversation)


def default_store(settings: Optional[Settings] = None) -> JsonConversationStore:
    settings = settings or load_settings()
    return JsonConversationStore(root=settings.storage_root)
