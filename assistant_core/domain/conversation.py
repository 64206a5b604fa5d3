"""会话持久化协议与序列化。

核心层只接收一个待恢复的 Conversation 并返回更新后的 Conversation，
不直接读写任何存储介质；存储由实现 ConversationStore 的外部组件负责。
这里提供 Conversation <-> dict 的转换，供 JSON 等存储实现复用。
"""

from typing import Any, Dict, List, Protocol

from assistant_core.domain.exceptions import ValidationError
from assistant_core.domain.models import (
    ContentPart,
    Conversation,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Turn,
)


class ConversationStore(Protocol):
    def save(self, conversation: Conversation) -> None:
        ...

    def load(self, conversation_id: str) -> Conversation:
        ...

    def list_ids(self) -> List[str]:
        ...

    def delete(self, conversation_id: str) -> None:
        ...


def part_to_dict(part: ContentPart) -> Dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ToolCallPart):
        data: Dict[str, Any] = {
            "type": "tool_call",
            "id": part.id,
            "name": part.name,
            "arguments": part.arguments,
            "raw_arguments": part.raw_arguments,
        }
        if part.error is not None:
            data["error"] = part.error.message
        return data
    return {
        "type": "tool_result",
        "call_id": part.call_id,
        "payload": part.payload,
        "is_error": part.is_error,
    }


def part_from_dict(data: Dict[str, Any]) -> ContentPart:
    kind = data.get("type")
    if kind == "text":
        return TextPart(text=data.get("text") or "")
    if kind == "tool_call":
        # 解析错误只作为历史信息保留，恢复后不再携带异常对象
        return ToolCallPart(
            id=data["id"],
            name=data.get("name") or "",
            arguments=data.get("arguments"),
            raw_arguments=data.get("raw_arguments") or "",
        )
    if kind == "tool_result":
        return ToolResultPart(
            call_id=data["call_id"],
            payload=data.get("payload"),
            is_error=bool(data.get("is_error")),
        )
    raise ValidationError(code="INVALID_PART", message=f"unknown content part type: {kind!r}")


def conversation_to_dict(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id,
        "meta": conversation.meta,
        "turns": [
            {
                "role": turn.role,
                "parts": [part_to_dict(p) for p in turn.parts],
                "meta": turn.meta,
            }
            for turn in conversation.turns
        ],
    }


def conversation_from_dict(data: Dict[str, Any]) -> Conversation:
    turns = [
        Turn(
            role=item.get("role") or "",
            parts=tuple(part_from_dict(p) for p in item.get("parts") or []),
            meta=item.get("meta") or {},
        )
        for item in data.get("turns") or []
    ]
    return Conversation(turns=turns, id=data["id"], meta=data.get("meta") or {})
