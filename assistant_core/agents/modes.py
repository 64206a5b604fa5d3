"""对话模式。

- general: 不附加任何种子消息。
- dev: 软件开发助手，附带一组“回答要简短”的示范往返。
- bash: 只输出 shell 命令。

种子消息在新会话开始时写入 Conversation，之后与普通消息一样发送。
"""

import os
import platform
from typing import List, Literal, Optional

from assistant_core.domain.models import Turn
from assistant_core.prompts import load_system_prompt


Mode = Literal["general", "dev", "bash"]
MODES = ("general", "dev", "bash")

DEV_PRIMING = (
    "Your responses must be short and concise. Do not include explanations unless asked.",
    "Understood.",
)


def parse_mode(value: Optional[str]) -> Mode:
    """未知模式回退为 general。"""

    name = (value or "").strip().lower()
    if name in MODES:
        return name  # type: ignore[return-value]
    return "general"


def seed_turns(mode: str, os_name: Optional[str] = None, shell: Optional[str] = None) -> List[Turn]:
    mode = parse_mode(mode)
    if mode == "general":
        return []
    system = load_system_prompt(
        mode,
        os=os_name or platform.system().lower() or "unknown",
        shell=shell or os.environ.get("SHELL") or "Unknown",
    )
    turns = [Turn.system(system)] if system else []
    if mode == "dev":
        turns.append(Turn.user(DEV_PRIMING[0]))
        turns.append(Turn.assistant(DEV_PRIMING[1]))
    return turns
