"""从回答中提取可执行的 shell 命令，并在用户确认后交给 shell 执行。

Markdown 围栏代码块中语言为 bash / sh / zsh 或未标注语言的块视为候选，
每个非空行是一条独立命令。
"""

import subprocess
from dataclasses import dataclass
from typing import List, Optional

from assistant_core.domain.exceptions import BusinessError
from assistant_core.infrastructure.logging.logger import logger

SHELL_LANGS = ("bash", "sh", "zsh")
FENCE = "```"


@dataclass(frozen=True)
class CodeBlock:
    code: str
    lang: Optional[str] = None

    @property
    def is_shell(self) -> bool:
        return self.lang is None or self.lang in SHELL_LANGS

    def lines(self) -> List[str]:
        return [line.rstrip() for line in self.code.split("\n") if line.strip()]


def extract_code_blocks(text: str) -> List[CodeBlock]:
    """按出现顺序提取围栏代码块；末尾未闭合的代码块也计入。"""

    blocks: List[CodeBlock] = []
    lang: Optional[str] = None
    lines: Optional[List[str]] = None
    for line in text.split("\n"):
        if line.startswith(FENCE):
            if lines is None:
                info = line[len(FENCE):].split()
                lang = info[0] if info else None
                lines = []
            else:
                blocks.append(CodeBlock(code="\n".join(lines), lang=lang))
                lines = None
        elif lines is not None:
            lines.append(line)
    if lines is not None:
        blocks.append(CodeBlock(code="\n".join(lines), lang=lang))
    return blocks


def shell_commands(text: str) -> List[str]:
    """回答中可供执行的命令列表（按出现顺序）。"""

    commands: List[str] = []
    for block in extract_code_blocks(text):
        if block.is_shell:
            commands.extend(block.lines())
    return commands


def run_shell(command: str, shell: str = "bash", timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """把命令通过 stdin 交给 shell 执行，返回捕获了输出的 CompletedProcess。"""

    try:
        completed = subprocess.run(
            [shell],
            input=command + "\n",
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise BusinessError(code="SHELL_NOT_FOUND", message=f"shell {shell!r} is not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise BusinessError(code="SHELL_TIMEOUT", message=f"command timed out after {timeout}s") from exc
    logger.info(
        "Shell command executed",
        extra={"extra": {"shell": shell, "command": command, "returncode": completed.returncode}},
    )
    return completed
