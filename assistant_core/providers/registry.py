"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "chat"。
- provider_model：厂商实际提供的模型 ID，例如 "kimi-k2-turbo-preview"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。
ProviderConfig 是核心层消费的“已解析配置”：API Key、端点、默认模型都由
外部配置组件（config.settings）填好后传入，核心层不读环境变量和文件。
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Literal, Mapping, Optional

from assistant_core.providers.base import ProviderCapabilities


# 线协议类型：决定使用哪个适配器实现
WireProtocol = Literal["openai", "anthropic"]


@dataclass(frozen=True)
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: Optional[float] = None


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置（已解析，含凭据）。

    - protocol: 线协议，"openai"（chat/completions 兼容）或 "anthropic"。
    - models: 逻辑模型名 -> ModelConfig。
    - max_concurrency / min_interval: 该 Provider 的并发与限速参数。
    - options: 协议相关的开关，例如 {"stream_usage": True}。
    """

    name: str
    protocol: WireProtocol
    base_url: str
    api_key: str = ""
    default_model: str = "chat"
    models: Mapping[str, ModelConfig] = field(default_factory=dict)
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)
    timeout: float = 60.0
    max_concurrency: int = 4
    min_interval: float = 0.0
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    options: Mapping[str, Any] = field(default_factory=dict)

    def resolve_model(self, model: Optional[str]) -> ModelConfig:
        """逻辑名 -> ModelConfig；未登记的名字按厂商模型 ID 原样透传。"""

        name = model or self.default_model
        if name in self.models:
            return self.models[name]
        for cfg in self.models.values():
            if cfg.provider_model == name:
                return cfg
        fallback = self.models.get(self.default_model)
        return ModelConfig(
            logical_name=name,
            provider_model=name,
            max_tokens=fallback.max_tokens if fallback else 4096,
            default_temperature=fallback.default_temperature if fallback else None,
        )

    def with_overrides(self, **changes: Any) -> "ProviderConfig":
        """返回替换了部分字段的新配置（值为 None 的字段忽略）。"""

        return replace(self, **{k: v for k, v in changes.items() if v is not None})


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    protocol="openai",
    base_url="https://api.openai.com/v1",
    default_model="chat",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="gpt-4o-mini",
            max_tokens=4096,
            default_temperature=0.7,
        )
    },
    capabilities=ProviderCapabilities(streaming=True, tools=True, max_context_tokens=128000),
    options={"stream_usage": True},
)

# Kimi 配置
KIMI_CONFIG = ProviderConfig(
    name="kimi",
    protocol="openai",
    base_url="https://api.moonshot.cn/v1",
    default_model="chat",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="kimi-k2-turbo-preview",
            max_tokens=8192,
            default_temperature=0.7,
        )
    },
    capabilities=ProviderCapabilities(streaming=True, tools=True, max_context_tokens=256000),
)

# GLM / BigModel 配置
GLM_CONFIG = ProviderConfig(
    name="glm",
    protocol="openai",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    default_model="chat",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="glm-4.6",
            max_tokens=8192,
            default_temperature=0.7,
        )
    },
    capabilities=ProviderCapabilities(streaming=True, tools=True, max_context_tokens=200000),
)

ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    protocol="anthropic",
    base_url="https://api.anthropic.com",
    default_model="chat",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="claude-sonnet-4-5",
            max_tokens=4096,
            default_temperature=None,
        ),
        "fast": ModelConfig(
            logical_name="fast",
            provider_model="claude-haiku-4-5",
            max_tokens=4096,
            default_temperature=None,
        ),
    },
    capabilities=ProviderCapabilities(streaming=True, tools=True, max_context_tokens=200000),
    options={"api_version": "2023-06-01"},
)


PROVIDER_PRESETS: Dict[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "kimi": KIMI_CONFIG,
    "glm": GLM_CONFIG,
    "anthropic": ANTHROPIC_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取预置 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_PRESETS.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
