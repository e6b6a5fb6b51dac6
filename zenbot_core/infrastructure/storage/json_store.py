import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from zenbot_core.config.settings import settings
from zenbot_core.domain.conversation import SessionStore
from zenbot_core.domain.exceptions import StoreError
from zenbot_core.infrastructure.logging.logger import logger

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class JsonSessionStore(SessionStore):
    """以 JSON 文件保存会话快照，每个 key 一个文件。

    写入采用临时文件 + os.replace，避免写到一半的文件被读到。
    读取失败或内容损坏时视为“没有存储”，只记录 warning。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._session_root = self._root / "sessions"
        self._session_root.mkdir(parents=True, exist_ok=True)

    def save(self, key: str, blob: Dict[str, Any]) -> None:
        path = self._path(key)
        tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(blob, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to load stored session", extra={"extra": {"key": key, "error": str(e)}})
            return None
        return data if isinstance(data, dict) else None

    def clear(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e))

    def _path(self, key: str) -> Path:
        if not key:
            raise StoreError(code="INVALID_KEY", message="storage key must not be empty")
        return self._session_root / f"{_SAFE_KEY.sub('_', key)}.json"
