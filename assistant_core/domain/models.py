"""统一的对话与结果数据模型。

本模块定义了 Assistant 内部在不同 Provider 之间共享的标准数据结构：

- TextPart / ToolCallPart / ToolResultPart: 一条消息中的内容片段。
- Turn: 一条对话消息（system/user/assistant/tool），由若干片段组成。
- Conversation: 有序的 Turn 列表，只由 Orchestrator 追加。
- ChatRequest: 发给底层 LLM Provider 的完整请求，构造后不可变。
- AssembledMessage: 从流式事件折叠出的最终回答。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Sequence, Tuple, Union
from uuid import uuid4

from assistant_core.domain.exceptions import MalformedToolCallError, ValidationError

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from assistant_core.tools.definitions import ToolDef


# LLM 消息角色类型
Role = Literal["system", "user", "assistant", "tool"]
ROLES = ("system", "user", "assistant", "tool")

# 归一化后的结束原因
FinishReason = Literal[
    "stop",
    "length",
    "tool_calls",
    "stop_sequence",
    "content_filter",
    "error",
    "canceled",
]


@dataclass(frozen=True)
class TextPart:
    """纯文本片段。"""

    text: str


@dataclass(frozen=True)
class ToolCallPart:
    """模型发起的一次工具调用。

    - arguments: 解析后的结构化参数；解析失败时为 None。
    - raw_arguments: 模型给出的原始参数字符串，保留用于排查与回放。
    - error: 参数解析失败时附带的 MalformedToolCallError，只影响本次调用。
    """

    id: str
    name: str
    arguments: Optional[Dict[str, Any]] = None
    raw_arguments: str = ""
    error: Optional[MalformedToolCallError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.arguments is not None


@dataclass(frozen=True)
class ToolResultPart:
    """工具执行结果，call_id 关联之前的 ToolCallPart。"""

    call_id: str
    payload: Any
    is_error: bool = False

    @property
    def content(self) -> str:
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, ensure_ascii=False, default=str)


ContentPart = Union[TextPart, ToolCallPart, ToolResultPart]


@dataclass(frozen=True)
class Turn:
    """对话中的一条消息。

    - role: 消息角色，不能为空。
    - parts: 有序的内容片段；纯工具调用的消息允许为空文本。
    - meta: Provider 相关的附加元数据，原样透传，不做修改。
    """

    role: Role
    parts: Tuple[ContentPart, ...] = ()
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.role:
            raise ValidationError(code="EMPTY_ROLE", message="turn role must not be empty")
        if self.role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"unknown role: {self.role!r}")
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))

    @classmethod
    def user(cls, text: str, **meta: Any) -> "Turn":
        return cls(role="user", parts=(TextPart(text),), meta=dict(meta))

    @classmethod
    def system(cls, text: str) -> "Turn":
        return cls(role="system", parts=(TextPart(text),))

    @classmethod
    def assistant(cls, text: str, tool_calls: Sequence[ToolCallPart] = ()) -> "Turn":
        parts: List[ContentPart] = []
        if text:
            parts.append(TextPart(text))
        parts.extend(tool_calls)
        return cls(role="assistant", parts=tuple(parts))

    @classmethod
    def tool(cls, results: Sequence[ToolResultPart]) -> "Turn":
        return cls(role="tool", parts=tuple(results))

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> List[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> List[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]


@dataclass
class Conversation:
    """有序的 Turn 序列。

    不强制角色交替（交给各 Provider 处理），但保证：
    - 每条 Turn 有合法角色；
    - ToolResult 引用的 call_id 必须出现在此前某条 ToolCall 中。
    """

    turns: List[Turn] = field(default_factory=list)
    id: str = field(default_factory=lambda: f"c-{uuid4().hex}")
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        existing = list(self.turns)
        self.turns = []
        for turn in existing:
            self.append(turn)

    def append(self, turn: Turn) -> None:
        known = self.tool_call_ids()
        for result in turn.tool_results:
            if result.call_id not in known:
                raise ValidationError(
                    code="UNKNOWN_TOOL_CALL",
                    message=f"tool result references unknown call id {result.call_id!r}",
                )
        self.turns.append(turn)

    def extend(self, turns: Sequence[Turn]) -> None:
        for turn in turns:
            self.append(turn)

    def tool_call_ids(self) -> set:
        return {call.id for turn in self.turns for call in turn.tool_calls}

    def snapshot(self) -> Tuple[Turn, ...]:
        return tuple(self.turns)

    def system_prompt(self) -> str:
        return "\n\n".join(t.text for t in self.turns if t.role == "system" and t.text)

    def __len__(self) -> int:
        return len(self.turns)


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的聊天请求。

    Orchestrator 基于 Conversation 快照生成 ChatRequest，再交给 Caller。
    重试时复用同一个 ChatRequest，不会重新构造。
    """

    provider: str  # 逻辑 Provider 名，如 "anthropic"
    model: str  # 逻辑模型名或厂商模型 ID（由 registry 映射）
    turns: Tuple[Turn, ...]
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Tuple["ToolDef", ...] = ()
    tool_choice: Literal["auto", "none", "required"] = "auto"
    stream: bool = True
    stop_sequences: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.turns, tuple):
            object.__setattr__(self, "turns", tuple(self.turns))
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))
        if not isinstance(self.stop_sequences, tuple):
            object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))

    @property
    def requires_tools(self) -> bool:
        if self.tools:
            return True
        return any(t.tool_calls or t.tool_results for t in self.turns)


@dataclass(frozen=True)
class Usage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def merge(self, other: Optional["Usage"]) -> "Usage":
        # 流式过程中厂商会多次上报，取各字段的最新非零值
        if other is None:
            return self
        return Usage(
            input_tokens=other.input_tokens or self.input_tokens,
            output_tokens=other.output_tokens or self.output_tokens,
        )


@dataclass(frozen=True)
class AssembledMessage:
    """一次请求折叠出的完整回答。

    - turn: 重建出的 assistant Turn（可能只包含部分内容）。
    - finish_reason: 结束原因；出错/取消时分别为 "error"/"canceled"。
    - usage: 可选的 token 使用统计。
    """

    turn: Turn
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None
    provider: str = ""
    model: str = ""

    @property
    def text(self) -> str:
        return self.turn.text

    @property
    def tool_calls(self) -> List[ToolCallPart]:
        return self.turn.tool_calls

    @property
    def malformed_tool_calls(self) -> List[ToolCallPart]:
        return [c for c in self.turn.tool_calls if c.error is not None]

    def unresolved_tool_calls(self, conversation: Optional[Conversation] = None) -> List[ToolCallPart]:
        """尚未有对应 ToolResult 的工具调用。"""

        resolved = set()
        if conversation is not None:
            resolved = {r.call_id for t in conversation.turns for r in t.tool_results}
        return [c for c in self.turn.tool_calls if c.id not in resolved]
