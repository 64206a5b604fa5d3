import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

# 核心层统一使用的 logger；导入时不安装任何 handler，由 setup_logger 配置
logger = logging.getLogger("assistant_core")

LOG_FILE_NAME = "assistant.log"
# 开启脱敏时，这些字段只保留前 REDACT_LIMIT 个字符
REDACT_FIELDS = ("text", "content", "raw", "body", "arguments")
REDACT_LIMIT = 64


class JsonFormatter(logging.Formatter):
    """每条日志输出一行 JSON：ts / level / name / msg + extra 字段。"""

    def __init__(self, redact: bool = False):
        super().__init__()
        self.redact = redact

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self.redact:
            msg = (msg or "")[:REDACT_LIMIT]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                if self.redact and key in REDACT_FIELDS and isinstance(value, str):
                    value = value[:REDACT_LIMIT]
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(
    log_dir: Union[str, Path] = "logs",
    level: Union[int, str] = logging.INFO,
    redact: bool = False,
    filename: Optional[str] = None,
) -> logging.Logger:
    """为 assistant_core logger 安装 JSON 文件 handler（重复调用不会重复安装）。"""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)
    target = Path(log_dir) / (filename or LOG_FILE_NAME)
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target.resolve():
            handler.setLevel(level)
            handler.setFormatter(JsonFormatter(redact=redact))
            return logger
    target.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(target, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(JsonFormatter(redact=redact))
    logger.addHandler(fh)
    return logger
