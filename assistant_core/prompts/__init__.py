"""系统提示词加载工具。

每种对话模式对应 prompts 目录下的一个 <mode>.md 文件，
文件中的 {os}、{shell} 占位符在加载时替换为当前环境信息。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def prompt_path(mode: str) -> Path:
    return PROMPTS_DIR / f"{mode}.md"


def load_system_prompt(mode: str, **variables: str) -> str:
    """根据模式加载系统提示词文本；没有对应文件的模式返回空字符串。"""

    fname = prompt_path(mode)
    if not fname.exists():
        return ""
    text = fname.read_text(encoding="utf-8").strip()
    for key, value in variables.items():
        # 只替换已知占位符，提示词中的其它花括号原样保留
        text = text.replace("{" + key + "}", value)
    return text
