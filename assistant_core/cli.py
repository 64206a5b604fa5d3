"""命令行入口：把一轮对话的流式文本输出到终端。"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional, Sequence, TextIO, Tuple

from assistant_core.agents.modes import MODES
from assistant_core.agents.orchestrator import AssistantOrchestrator
from assistant_core.api.service import build_orchestrator, default_store, stream_chat
from assistant_core.caller.client import Caller
from assistant_core.config.settings import Settings, load_settings
from assistant_core.domain.events import RetryScheduled, TextDelta
from assistant_core.domain.exceptions import BusinessError
from assistant_core.infrastructure.logging.logger import setup_logger
from assistant_core.tools.shell import run_shell, shell_commands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="assistant-core", description="Chat with a hosted LLM from the terminal")
    parser.add_argument("prompt", nargs="*", help="Prompt text; read from stdin when omitted")
    parser.add_argument("-p", "--provider", help="Provider name, e.g. anthropic, openai, kimi, glm")
    parser.add_argument("-m", "--model", help="Logical model name or provider model id")
    parser.add_argument("--mode", choices=MODES, help="Conversation mode")
    parser.add_argument("-t", "--temperature", type=float, help="Sampling temperature")
    parser.add_argument("--max-tokens", type=int, help="Maximum tokens to generate")
    parser.add_argument("--no-stream", action="store_true", help="Wait for the full response instead of streaming")
    parser.add_argument("-c", "--conversation", help="Resume a stored conversation by id")
    parser.add_argument("--save", action="store_true", help="Store the conversation after the reply")
    parser.add_argument("--list", action="store_true", help="List stored conversation ids and exit")
    parser.add_argument(
        "-x", "--execute", action="store_true", help="Offer to run a shell command from the reply after it finishes"
    )
    return parser


def _read_prompt(args: argparse.Namespace, stdin: TextIO) -> str:
    if args.prompt:
        return " ".join(args.prompt)
    if stdin.isatty():
        return ""
    return stdin.read().strip()


async def _chat(
    orchestrator: AssistantOrchestrator,
    prompt: str,
    store,
    stdout: TextIO,
    stderr: TextIO,
) -> Tuple[int, str]:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        pass

    exit_code = 0
    reply = ""
    try:
        async for event in stream_chat(prompt, store=store, orchestrator=orchestrator):
            if event.kind == "response":
                if isinstance(event.event, TextDelta):
                    stdout.write(event.event.text)
                    stdout.flush()
                elif isinstance(event.event, RetryScheduled):
                    # 之前输出的部分内容作废
                    stderr.write(f"\n[retrying in {event.event.delay:.1f}s: {event.event.error.message}]\n")
            elif event.kind == "tool_result" and event.tool_result is not None and event.tool_result.is_error:
                stderr.write(f"\n[tool error] {event.tool_result.content}\n")
            elif event.kind == "outcome" and event.outcome is not None:
                outcome = event.outcome
                reply = outcome.text
                stdout.write("\n")
                if outcome.canceled:
                    stderr.write("[canceled]\n")
                    exit_code = 130
                elif outcome.error is not None:
                    stderr.write(f"error: [{outcome.error.code}] {outcome.error.message}\n")
                    exit_code = 1
                if store is not None:
                    stderr.write(f"[conversation {outcome.conversation.id}]\n")
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    return exit_code, reply


def _choose_command(commands: List[str], stdin: TextIO, stderr: TextIO) -> Optional[str]:
    """列出候选命令并读取选择；0、空输入或输入结束表示不执行。"""

    stderr.write("Execute?\n  0) None\n")
    for number, command in enumerate(commands, start=1):
        stderr.write(f"  {number}) {command}\n")
    stderr.write("> ")
    stderr.flush()
    answer = stdin.readline().strip()
    if not answer.isdigit() or not 0 < int(answer) <= len(commands):
        return None
    return commands[int(answer) - 1]


def _offer_execution(commands: List[str], stdin: TextIO, stdout: TextIO, stderr: TextIO) -> int:
    if not commands:
        return 0
    command = _choose_command(commands, stdin, stderr)
    if command is None:
        return 0
    try:
        completed = run_shell(command)
    except BusinessError as exc:
        stderr.write(f"error: [{exc.code}] {exc.message}\n")
        return 1
    stdout.write(completed.stdout)
    stderr.write(completed.stderr)
    return completed.returncode


def main(
    argv: Optional[Sequence[str]] = None,
    settings: Optional[Settings] = None,
    caller: Optional[Caller] = None,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = settings or load_settings()
    except ValueError as exc:
        stderr.write(f"error: invalid configuration: {exc}\n")
        return 2
    setup_logger(settings.log_dir, settings.log_level, settings.log_redact_content)

    store = default_store(settings) if (args.conversation or args.save or args.list) else None
    if args.list:
        for conversation_id in store.list_ids():
            stdout.write(conversation_id + "\n")
        return 0

    prompt = _read_prompt(args, stdin)
    if not prompt:
        parser.error("no prompt provided")

    try:
        conversation = store.load(args.conversation) if args.conversation else None
        orchestrator = build_orchestrator(
            settings=settings,
            provider=args.provider,
            model=args.model,
            mode=args.mode,
            temperature=args.temperature,
            max_tokens=args.max_tokens,
            stream=not args.no_stream,
            conversation=conversation,
            caller=caller,
        )
    except BusinessError as exc:
        stderr.write(f"error: [{exc.code}] {exc.message}\n")
        return 2

    try:
        exit_code, reply = asyncio.run(_chat(orchestrator, prompt, store, stdout, stderr))
    except KeyboardInterrupt:
        stderr.write("\n[interrupted]\n")
        return 130
    if args.execute and exit_code == 0:
        return _offer_execution(shell_commands(reply), stdin, stdout, stderr)
    return exit_code
