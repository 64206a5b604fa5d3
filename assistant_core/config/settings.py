"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：构造参数 > 环境变量 > .env > config.yaml。

核心层不读取环境变量或文件，由 resolve_provider_config 把配置
转换成核心层消费的 ProviderConfig / BackoffPolicy / ToolDispatchPolicy。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from assistant_core.agents.orchestrator import ToolDispatchPolicy
from assistant_core.caller.retry import BackoffPolicy
from assistant_core.domain.exceptions import ValidationError
from assistant_core.providers.registry import PROVIDER_PRESETS, ProviderConfig, get_provider_config


CONFIG_FILE_ENV = "ASSISTANT_CONFIG_FILE"


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv(CONFIG_FILE_ENV)
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.append(Path.cwd() / "config.yaml")

    seen: set = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        if not path.exists():
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
            continue
        if isinstance(data, dict):
            return data
        warnings.warn(f"Config file {path} is not a mapping, ignored")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="anthropic",
        description="默认使用的 Provider 名称，例如 anthropic、openai、kimi、glm",
    )
    default_model: str = Field(
        default="chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型；未登记的名字原样透传",
    )
    default_mode: str = Field(default="general", description="对话模式：general / dev / bash")

    # Anthropic
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: Optional[str] = Field(default=None, description="Anthropic API 基础URL")
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: Optional[str] = Field(default=None, description="OpenAI API 基础URL")
    # Kimi
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: Optional[str] = Field(default=None, description="Kimi API 基础URL")
    # GLM / BigModel
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: Optional[str] = Field(default=None, description="GLM API 基础URL")

    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    provider_max_concurrency: int = Field(default=4, ge=1, description="单个 Provider 的最大并发请求数")
    provider_min_interval: float = Field(default=0.0, ge=0.0, description="同一 Provider 两次请求的最小间隔（秒）")

    # ---- 重试 ----
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_jitter: float = Field(default=0.2, ge=0.0, le=1.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)
    retry_max_attempts: int = Field(default=4, ge=1)
    retry_max_elapsed: float = Field(default=60.0, ge=0.0)

    # ---- 工具 ----
    max_tool_rounds: int = Field(
        default=20,
        ge=1,
        le=20,
        description="单轮对话内工具调用最大轮数（硬上限 20）",
    )
    tool_dispatch_mode: Literal["sequential", "parallel"] = Field(default="sequential")
    tool_max_concurrency: int = Field(default=4, ge=1)
    tool_errors_fatal: bool = Field(default=False, description="工具执行失败是否终止本轮对话")

    # ---- 日志与存储 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("anthropic_api_key", "openai_api_key", "kimi_api_key", "glm_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


def resolve_provider_config(settings: Settings, name: Optional[str] = None) -> ProviderConfig:
    """把配置解析为核心层使用的 ProviderConfig（含凭据）。

    Raises:
        ValidationError: Provider 未知（UNKNOWN_PROVIDER）或缺少 API Key（MISSING_API_KEY）。
    """

    provider_name = (name or settings.default_provider).lower()
    try:
        preset = get_provider_config(provider_name)
    except KeyError:
        raise ValidationError(
            code="UNKNOWN_PROVIDER",
            message=f"unknown provider {provider_name!r}, choose from: {', '.join(PROVIDER_PRESETS)}",
        ) from None
    api_key = getattr(settings, f"{preset.name}_api_key", None)
    if not api_key:
        raise ValidationError(
            code="MISSING_API_KEY",
            message=f"API key for provider {preset.name!r} is not configured ({preset.name.upper()}_API_KEY)",
        )
    options = dict(preset.options)
    if preset.protocol == "anthropic":
        options["api_version"] = settings.anthropic_version
    return preset.with_overrides(
        api_key=api_key,
        base_url=getattr(settings, f"{preset.name}_base_url", None),
        timeout=settings.http_timeout,
        max_concurrency=settings.provider_max_concurrency,
        min_interval=settings.provider_min_interval,
        options=options,
    )


def backoff_policy(settings: Settings) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=settings.retry_base_delay,
        multiplier=settings.retry_multiplier,
        jitter=settings.retry_jitter,
        max_delay=settings.retry_max_delay,
        max_attempts=settings.retry_max_attempts,
        max_elapsed=settings.retry_max_elapsed,
    )


def dispatch_policy(settings: Settings) -> ToolDispatchPolicy:
    return ToolDispatchPolicy(
        mode=settings.tool_dispatch_mode,
        max_concurrency=settings.tool_max_concurrency,
        fatal_errors=settings.tool_errors_fatal,
    )


def load_settings(**overrides: Any) -> Settings:
    """创建 Settings；overrides 优先级最高（例如命令行参数）。"""

    return Settings(**{k: v for k, v in overrides.items() if v is not None})
