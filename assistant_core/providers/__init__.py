"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 适配器协议与错误映射工具 (base)。
- 维护 Provider 与模型配置 (registry)。
- 增量 SSE 解码 (sse)。
- 提供各线协议的具体实现 (openai_compat、anthropic)。
"""

from typing import Callable, Dict

from assistant_core.domain.exceptions import ValidationError
from assistant_core.providers.anthropic import AnthropicAdapter
from assistant_core.providers.base import ProviderAdapter
from assistant_core.providers.openai_compat import OpenAICompatibleAdapter
from assistant_core.providers.registry import ProviderConfig

AdapterFactory = Callable[[ProviderConfig], ProviderAdapter]

# 线协议 -> 适配器实现，按配置选择而不是按继承关系
ADAPTERS: Dict[str, AdapterFactory] = {
    "openai": OpenAICompatibleAdapter,
    "anthropic": AnthropicAdapter,
}


def create_adapter(config: ProviderConfig) -> ProviderAdapter:
    """根据 ProviderConfig.protocol 创建新的适配器实例（每次调用一个）。"""

    factory = ADAPTERS.get(config.protocol)
    if factory is None:
        raise ValidationError(
            code="UNKNOWN_PROTOCOL",
            message=f"provider {config.name!r} uses unsupported protocol {config.protocol!r}",
        )
    return factory(config)
