import asyncio
import threading

import pytest

from assistant_core.domain.exceptions import MalformedToolCallError, ToolExecutionError
from assistant_core.domain.models import ToolCallPart
from assistant_core.tools.definitions import ToolDef, ToolParam
from assistant_core.tools.executor import ToolExecutor


def test_parameters_schema():
    tool = ToolDef(
        name="search_code",
        description="Search code",
        params={
            "query": ToolParam(name="query", description="Text to find", required=True),
            "max_results": ToolParam(name="max_results", description="", required=False, schema={"type": "integer"}),
        },
    )
    assert tool.parameters_schema() == {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Text to find"},
            "max_results": {"type": "integer"},
        },
        "required": ["query"],
    }


def test_definitions_only_for_registered_tools():
    te = ToolExecutor(definitions=[ToolDef(name="a", description=""), ToolDef(name="b", description="")])
    te.register("b", lambda args: None)
    assert [d.name for d in te.definitions()] == ["b"]
    assert "b" in te
    assert "a" not in te


@pytest.mark.asyncio
async def test_sync_tool_runs_off_the_event_loop():
    loop_thread = threading.get_ident()
    threads = []

    def read_file(args):
        threads.append(threading.get_ident())
        return {"path": args["path"], "content": "hello"}

    te = ToolExecutor({"read_file": read_file})
    result = await te.execute(ToolCallPart(id="1", name="read_file", arguments={"path": "a.txt"}))
    assert result.call_id == "1"
    assert not result.is_error
    assert result.payload["content"] == "hello"
    assert threads and threads[0] != loop_thread


@pytest.mark.asyncio
async def test_async_tool_is_awaited():
    async def wait_a_bit(args):
        await asyncio.sleep(0)
        return args["n"] * 2

    te = ToolExecutor()
    te.register("double", wait_a_bit)
    result = await te.execute(ToolCallPart(id="2", name="double", arguments={"n": 21}))
    assert result.payload == 42
    assert result.content == "42"


@pytest.mark.asyncio
async def test_unregistered_tool():
    with pytest.raises(ToolExecutionError) as exc:
        await ToolExecutor().execute(ToolCallPart(id="3", name="missing", arguments={}))
    assert exc.value.code == "TOOL_ERROR"
    assert exc.value.tool_name == "missing"
    assert exc.value.call_id == "3"


@pytest.mark.asyncio
async def test_malformed_call_is_rejected_without_running():
    ran = []
    te = ToolExecutor({"t": lambda args: ran.append(args)})
    call = ToolCallPart(
        id="4",
        name="t",
        raw_arguments='{"a":',
        error=MalformedToolCallError("bad json", call_id="4"),
    )
    with pytest.raises(ToolExecutionError) as exc:
        await te.execute(call)
    assert "bad json" in exc.value.message
    assert ran == []


@pytest.mark.asyncio
async def test_tool_exception_is_wrapped():
    def broken(args):
        raise KeyError("path")

    te = ToolExecutor({"broken": broken})
    with pytest.raises(ToolExecutionError) as exc:
        await te.execute(ToolCallPart(id="5", name="broken", arguments={}))
    assert isinstance(exc.value.__cause__, KeyError)
    assert "broken" in exc.value.message
