import io
import json
import re
import subprocess

import pytest

from assistant_core.cli import build_parser, main
from assistant_core.config.settings import Settings


@pytest.fixture
def settings(clean_env):
    return Settings(
        default_provider="openai",
        openai_api_key="sk-test-1234567890",
        log_dir=str(clean_env / "logs"),
        storage_root=str(clean_env / ".storage"),
    )


def _run(argv, settings, caller=None, stdin=""):
    out, err = io.StringIO(), io.StringIO()
    code = main(argv, settings=settings, caller=caller, stdin=io.StringIO(stdin), stdout=out, stderr=err)
    return code, out.getvalue(), err.getvalue()


def test_streams_reply_to_stdout(settings, clean_env, fast_caller, make_response, text_chunks):
    caller, transport = fast_caller([make_response(200, chunks=text_chunks("Hello", ", CLI"))])
    code, out, err = _run(["say", "hi"], settings, caller)

    assert code == 0
    assert out == "Hello, CLI\n"
    assert err == ""
    assert transport.payloads[0].json_body["messages"][-1] == {"role": "user", "content": "say hi"}
    log_lines = (clean_env / "logs" / "assistant.log").read_text(encoding="utf-8").splitlines()
    assert any(json.loads(line)["msg"] == "Turn completed" for line in log_lines)


def test_prompt_from_stdin(settings, fast_caller, make_response, text_chunks):
    caller, transport = fast_caller([make_response(200, chunks=text_chunks("ok"))])
    code, out, _ = _run([], settings, caller, stdin="  piped question \n")
    assert code == 0
    assert transport.payloads[0].json_body["messages"][-1]["content"] == "piped question"


def test_options_reach_the_request(settings, fast_caller, make_response, text_chunks):
    body = json.dumps({"choices": [{"message": {"content": "whole"}, "finish_reason": "stop"}]}).encode()
    caller, transport = fast_caller([make_response(200, body=body)])
    code, out, _ = _run(["-m", "gpt-4.1", "-t", "0.2", "--max-tokens", "64", "--no-stream", "hi"], settings, caller)

    assert code == 0
    assert out == "whole\n"
    sent = transport.payloads[0].json_body
    assert sent["model"] == "gpt-4.1"
    assert sent["temperature"] == 0.2
    assert sent["max_tokens"] == 64
    assert sent["stream"] is False


def test_provider_error_exit_code(settings, fast_caller, make_response):
    body = json.dumps({"error": {"message": "Incorrect API key provided", "code": "invalid_api_key"}}).encode()
    caller, _ = fast_caller([make_response(401, body=body)])
    code, _, err = _run(["hi"], settings, caller)
    assert code == 1
    assert "[AUTH_ERROR]" in err


def test_missing_api_key(clean_env, fast_caller):
    settings = Settings(default_provider="glm", log_dir=str(clean_env / "logs"))
    caller, _ = fast_caller([])
    code, _, err = _run(["hi"], settings, caller)
    assert code == 2
    assert "MISSING_API_KEY" in err


def test_save_list_and_resume(settings, fast_caller, make_response, text_chunks):
    caller, transport = fast_caller(
        [make_response(200, chunks=text_chunks("first answer")), make_response(200, chunks=text_chunks("second"))]
    )
    code, _, err = _run(["--save", "first question"], settings, caller)
    assert code == 0
    conversation_id = re.search(r"\[conversation (\S+)\]", err).group(1)

    code, out, _ = _run(["--list"], settings)
    assert code == 0
    assert out.split() == [conversation_id]

    code, out, _ = _run(["-c", conversation_id, "follow up"], settings, caller)
    assert code == 0
    assert out == "second\n"
    messages = transport.payloads[1].json_body["messages"]
    assert [m["content"] for m in messages] == ["first question", "first answer", "follow up"]


def test_unknown_conversation(settings, fast_caller):
    caller, _ = fast_caller([])
    code, _, err = _run(["-c", "c-nope", "hi"], settings, caller)
    assert code == 2
    assert "CONVERSATION_NOT_FOUND" in err


def test_no_prompt_is_a_usage_error(settings):
    with pytest.raises(SystemExit) as exc:
        _run([], settings, stdin="")
    assert exc.value.code == 2


def test_parser_rejects_unknown_mode():
    parser = build_parser()
    assert parser.parse_args(["--mode", "bash", "ls"]).mode == "bash"
    with pytest.raises(SystemExit):
        parser.parse_args(["--mode", "poetry", "hi"])


def _code_reply(fast_caller, make_response, text_chunks):
    return fast_caller([make_response(200, chunks=text_chunks("Try:\n```bash\nls -la\nwc -l notes.txt\n```"))])


def test_execute_runs_the_chosen_command(settings, fast_caller, make_response, text_chunks, monkeypatch):
    ran = []

    def fake_run_shell(command):
        ran.append(command)
        return subprocess.CompletedProcess(["bash"], 3, stdout="12 notes.txt\n", stderr="")

    monkeypatch.setattr("assistant_core.cli.run_shell", fake_run_shell)
    caller, _ = _code_reply(fast_caller, make_response, text_chunks)
    code, out, err = _run(["--execute", "count lines"], settings, caller, stdin="2\n")

    assert ran == ["wc -l notes.txt"]
    assert code == 3
    assert out.endswith("12 notes.txt\n")
    assert "  1) ls -la" in err
    assert "  2) wc -l notes.txt" in err


@pytest.mark.parametrize("answer", ["0\n", "\n", "9\n", "yes\n"])
def test_execute_declined(settings, fast_caller, make_response, text_chunks, monkeypatch, answer):
    monkeypatch.setattr("assistant_core.cli.run_shell", lambda command: pytest.fail("should not run"))
    caller, _ = _code_reply(fast_caller, make_response, text_chunks)
    code, _, err = _run(["-x", "count lines"], settings, caller, stdin=answer)
    assert code == 0
    assert "Execute?" in err


def test_execute_without_code_blocks_does_not_ask(settings, fast_caller, make_response, text_chunks):
    caller, _ = fast_caller([make_response(200, chunks=text_chunks("nothing to run"))])
    code, _, err = _run(["-x", "hi"], settings, caller, stdin="1\n")
    assert code == 0
    assert "Execute?" not in err
