import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Union
from uuid import uuid4

from assistant_core.domain.conversation import ConversationStore, conversation_from_dict, conversation_to_dict
from assistant_core.domain.exceptions import BusinessError
from assistant_core.domain.models import Conversation


class JsonConversationStore(ConversationStore):
    """每个会话保存为 <root>/conversations/<id>.json，写入先落临时文件再原子替换。"""

    def __init__(self, root: Union[str, Path, None] = None):
        self._root = Path(root or ".storage").resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def save(self, conversation: Conversation) -> None:
        data = conversation_to_dict(conversation)
        data["updated_at"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        path = self._path(conversation.id)
        tmp_path = self._conv_root / f"{conversation.id}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def load(self, conversation_id: str) -> Conversation:
        path = self._path(conversation_id)
        if not path.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return conversation_from_dict(data)
        except BusinessError:
            raise
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def list_ids(self) -> List[str]:
        paths = sorted(self._conv_root.glob("*.json"), key=lambda p: p.stat().st_mtime)
        return [p.stem for p in paths]

    def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        if not path.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            path.unlink()
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _path(self, conversation_id: str) -> Path:
        if not conversation_id or "/" in conversation_id or "\\" in conversation_id or conversation_id.startswith("."):
            raise BusinessError(code="INVALID_CONVERSATION_ID", message=repr(conversation_id))
        return self._conv_root / f"{conversation_id}.json"
