import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import quote

from ..models import Message
from ..settings import get_settings

logger = logging.getLogger(__name__)


def _history_to_dict(project_id: str, messages: List[Message]) -> Dict[str, Any]:
    """Serialize a project's message log to a JSON-serializable dict."""
    return {
        "project_id": project_id,
        "messages": [m.to_dict() for m in messages],
    }


def _dict_to_history(data: Dict[str, Any]) -> List[Message]:
    """Build the message list from a stored dict."""
    return [Message.from_dict(m) for m in data.get("messages", [])]


def dumps_history(project_id: str, messages: List[Message]) -> str:
    return json.dumps(_history_to_dict(project_id, messages))


def loads_history(raw: str) -> List[Message]:
    return _dict_to_history(json.loads(raw))


class HistoryStore(ABC):
    """Where a project's message log lives between process runs."""

    @abstractmethod
    async def load(self, project_id: str) -> List[Message] | None:
        """Return the stored messages, or None if nothing is stored."""

    @abstractmethod
    async def save(self, project_id: str, messages: List[Message]) -> bool:
        """Replace the stored log with ``messages``. Returns True on success."""

    @abstractmethod
    async def delete(self, project_id: str) -> bool:
        """Remove the stored log. Returns True if it is gone afterwards."""

    async def close(self) -> None:
        return None


class InMemoryHistoryStore(HistoryStore):
    """Keeps serialized logs in a dict; history lasts as long as the process."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def load(self, project_id: str) -> List[Message] | None:
        raw = self._data.get(project_id)
        if raw is None:
            return None
        return loads_history(raw)

    async def save(self, project_id: str, messages: List[Message]) -> bool:
        self._data[project_id] = dumps_history(project_id, messages)
        return True

    async def delete(self, project_id: str) -> bool:
        self._data.pop(project_id, None)
        return True


class FileHistoryStore(HistoryStore):
    """One JSON file per project under ``base_dir``."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    def path_for(self, project_id: str) -> Path:
        return self.base_dir / f"{quote(project_id, safe='')}.json"

    def _read(self, path: Path) -> str | None:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(path)

    async def load(self, project_id: str) -> List[Message] | None:
        path = self.path_for(project_id)
        raw = await asyncio.to_thread(self._read, path)
        if raw is None:
            return None
        try:
            return loads_history(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid history file %s: %s", path, e)
            return None

    async def save(self, project_id: str, messages: List[Message]) -> bool:
        path = self.path_for(project_id)
        payload = dumps_history(project_id, messages)
        try:
            await asyncio.to_thread(self._write, path, payload)
        except OSError as e:
            logger.warning("Writing history %s failed: %s", path, e)
            return False
        return True

    async def delete(self, project_id: str) -> bool:
        path = self.path_for(project_id)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            logger.warning("Deleting history %s failed: %s", path, e)
            return False
        return True


async def get_history_store_async() -> HistoryStore | None:
    """Pick the configured history store.

    Redis when ``redis_url`` is set and reachable, otherwise a file store when
    ``history_dir`` is set, otherwise None (history is not persisted).
    """
    settings = get_settings()
    if settings.redis_url and settings.redis_url.strip():
        from .redis import RedisHistoryStore, RedisError

        store = RedisHistoryStore(settings.redis_url.strip(), ttl_seconds=settings.context_ttl_seconds)
        try:
            await store.connect()
            return store
        except (RedisError, ConnectionError, TimeoutError) as e:
            logger.warning("History store unavailable (Redis): %s", e)
    if settings.history_dir is not None:
        return FileHistoryStore(settings.history_dir)
    return None
