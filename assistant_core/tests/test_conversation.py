import pytest

from assistant_core.domain.conversation import conversation_from_dict, conversation_to_dict
from assistant_core.domain.exceptions import ValidationError
from assistant_core.domain.models import (
    ChatRequest,
    Conversation,
    ToolCallPart,
    ToolResultPart,
    Turn,
    Usage,
)


def test_turn_requires_valid_role():
    with pytest.raises(ValidationError) as exc:
        Turn(role="")
    assert exc.value.code == "EMPTY_ROLE"
    with pytest.raises(ValidationError) as exc:
        Turn(role="robot")
    assert exc.value.code == "INVALID_ROLE"


def test_tool_call_only_turn_may_have_empty_text():
    turn = Turn.assistant("", [ToolCallPart(id="c1", name="read_file", arguments={"path": "a"})])
    assert turn.text == ""
    assert [c.id for c in turn.tool_calls] == ["c1"]


def test_tool_result_must_reference_prior_call():
    conv = Conversation()
    conv.append(Turn.user("hi"))
    with pytest.raises(ValidationError) as exc:
        conv.append(Turn.tool([ToolResultPart(call_id="missing", payload="x")]))
    assert exc.value.code == "UNKNOWN_TOOL_CALL"

    conv.append(Turn.assistant("", [ToolCallPart(id="c1", name="t", arguments={})]))
    conv.append(Turn.tool([ToolResultPart(call_id="c1", payload={"ok": True})]))
    assert len(conv) == 3


def test_request_is_immutable_snapshot():
    conv = Conversation(turns=[Turn.user("hi")])
    req = ChatRequest(provider="openai", model="chat", turns=conv.snapshot())
    conv.append(Turn.assistant("hello"))
    assert len(req.turns) == 1
    with pytest.raises(Exception):
        req.model = "other"


def test_usage_merge_keeps_latest_non_zero():
    usage = Usage(input_tokens=10).merge(Usage(output_tokens=3))
    assert usage.input_tokens == 10
    assert usage.output_tokens == 3
    assert usage.total_tokens == 13


def test_conversation_dict_roundtrip_keeps_parts_and_meta():
    conv = Conversation(meta={"mode": "dev"})
    conv.append(Turn.system("be brief"))
    conv.append(Turn.user("list files", source="cli"))
    conv.append(Turn.assistant("", [ToolCallPart(id="c1", name="ls", arguments={"dir": "."}, raw_arguments='{"dir": "."}')]))
    conv.append(Turn.tool([ToolResultPart(call_id="c1", payload=["a.py"], is_error=False)]))

    restored = conversation_from_dict(conversation_to_dict(conv))

    assert restored.id == conv.id
    assert restored.meta == {"mode": "dev"}
    assert [t.role for t in restored.turns] == ["system", "user", "assistant", "tool"]
    assert restored.turns[1].meta == {"source": "cli"}
    assert restored.turns[2].tool_calls[0].arguments == {"dir": "."}
    assert restored.turns[3].tool_results[0].payload == ["a.py"]
