import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from codesession.models import Message, ToolCall
from codesession.services.history import (
    FileHistoryStore,
    InMemoryHistoryStore,
    dumps_history,
    get_history_store_async,
    loads_history,
)
from codesession.services.redis import RedisHistoryStore


@pytest.fixture
def conversation() -> list[Message]:
    return [
        Message(role="user", content="add a footer"),
        Message(
            role="assistant",
            content="",
            reasoning_content="need to read the layout first",
            tool_calls=[ToolCall(id="c1", name="read_file", arguments='{"path": "index.html"}')],
        ),
        Message(role="tool", content="<html></html>", tool_call_id="c1"),
        Message(role="assistant", content="Done."),
    ]


@pytest.fixture
def mock_redis() -> MagicMock:
    """Mock Redis client with async methods."""
    m = MagicMock()
    m.get = AsyncMock(return_value=None)
    m.set = AsyncMock(return_value=True)
    m.setex = AsyncMock(return_value=True)
    m.delete = AsyncMock(return_value=1)
    m.ping = AsyncMock(return_value=True)
    m.aclose = AsyncMock(return_value=None)
    return m


def test_serialization_keeps_every_field(conversation: list[Message]) -> None:
    """dumps/loads keep reasoning, tool calls and tool_call_id."""
    raw = dumps_history("p1", conversation)
    data = json.loads(raw)
    assert data["project_id"] == "p1"
    assert data["messages"][1]["tool_calls"][0]["function"]["name"] == "read_file"
    assert loads_history(raw) == conversation


@pytest.mark.asyncio
async def test_in_memory_store(conversation: list[Message]) -> None:
    """In-memory store saves, loads and deletes."""
    store = InMemoryHistoryStore()
    assert await store.load("p1") is None
    assert await store.save("p1", conversation) is True
    assert await store.load("p1") == conversation
    assert await store.delete("p1") is True
    assert await store.load("p1") is None


@pytest.mark.asyncio
async def test_file_store_round_trip(tmp_path: Path, conversation: list[Message]) -> None:
    """File store writes one JSON file per project."""
    store = FileHistoryStore(tmp_path / "history")
    assert await store.load("org/site") is None

    assert await store.save("org/site", conversation) is True
    path = store.path_for("org/site")
    assert path.parent == tmp_path / "history"
    assert path.name == "org%2Fsite.json"
    assert await store.load("org/site") == conversation

    assert await store.delete("org/site") is True
    assert not path.exists()
    assert await store.delete("org/site") is True


@pytest.mark.asyncio
async def test_file_store_invalid_file(tmp_path: Path) -> None:
    """load returns None for a corrupt file."""
    store = FileHistoryStore(tmp_path)
    store.path_for("p1").write_text("not json", encoding="utf-8")
    assert await store.load("p1") is None


@pytest.mark.asyncio
async def test_redis_load_missing(mock_redis: MagicMock) -> None:
    """load returns None when key is missing."""
    store = RedisHistoryStore("redis://localhost:6379/0")
    store._client = mock_redis
    assert await store.load("p1") is None
    mock_redis.get.assert_called_once_with("history:p1")


@pytest.mark.asyncio
async def test_redis_load_present(mock_redis: MagicMock, conversation: list[Message]) -> None:
    """load returns the messages when key exists."""
    mock_redis.get.return_value = dumps_history("p1", conversation)
    store = RedisHistoryStore("redis://localhost:6379/0")
    store._client = mock_redis
    assert await store.load("p1") == conversation


@pytest.mark.asyncio
async def test_redis_load_invalid_json(mock_redis: MagicMock) -> None:
    """load returns None on invalid JSON."""
    mock_redis.get.return_value = "not json"
    store = RedisHistoryStore("redis://localhost:6379/0")
    store._client = mock_redis
    assert await store.load("p1") is None


@pytest.mark.asyncio
async def test_redis_load_connection_error(mock_redis: MagicMock) -> None:
    """load returns None when Redis is down."""
    mock_redis.get.side_effect = RedisConnectionError("down")
    store = RedisHistoryStore("redis://localhost:6379/0")
    store._client = mock_redis
    assert await store.load("p1") is None


@pytest.mark.asyncio
async def test_redis_save_with_ttl(mock_redis: MagicMock, conversation: list[Message]) -> None:
    """save with ttl_seconds calls setex()."""
    store = RedisHistoryStore("redis://localhost:6379/0", ttl_seconds=3600)
    store._client = mock_redis
    assert await store.save("p1", conversation) is True
    key, ttl, payload = mock_redis.setex.call_args.args
    assert key == "history:p1"
    assert ttl == 3600
    assert loads_history(payload) == conversation
    mock_redis.set.assert_not_called()


@pytest.mark.asyncio
async def test_redis_save_without_ttl(mock_redis: MagicMock) -> None:
    """save without ttl calls set()."""
    store = RedisHistoryStore("redis://localhost:6379/0")
    store._client = mock_redis
    assert await store.save("p1", []) is True
    mock_redis.set.assert_called_once()
    mock_redis.setex.assert_not_called()


@pytest.mark.asyncio
async def test_redis_save_failure(mock_redis: MagicMock) -> None:
    """save returns False on Redis errors."""
    mock_redis.set.side_effect = RedisConnectionError("down")
    store = RedisHistoryStore("redis://localhost:6379/0")
    store._client = mock_redis
    assert await store.save("p1", []) is False


@pytest.mark.asyncio
async def test_redis_delete(mock_redis: MagicMock) -> None:
    """delete removes the history key."""
    store = RedisHistoryStore("redis://localhost:6379/0")
    store._client = mock_redis
    assert await store.delete("p1") is True
    mock_redis.delete.assert_called_once_with("history:p1")


@pytest.mark.asyncio
async def test_redis_not_connected() -> None:
    """Without a client every operation fails softly."""
    store = RedisHistoryStore("redis://localhost:6379/0")
    assert store.client is None
    assert await store.load("p1") is None
    assert await store.save("p1", []) is False
    assert await store.delete("p1") is False


@pytest.mark.asyncio
async def test_redis_connect_and_close(mock_redis: MagicMock) -> None:
    """connect is idempotent and close releases the client."""
    with patch("codesession.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        store = RedisHistoryStore("redis://user:pw@localhost:6379/0")
        await store.connect()
        await store.connect()
        redis_cls.from_url.assert_called_once_with("redis://user:pw@localhost:6379/0", decode_responses=True)
        assert store.client is mock_redis
        await store.close()
        mock_redis.aclose.assert_awaited_once()
        assert store.client is None


@pytest.mark.asyncio
async def test_redis_connect_failure_resets_client(mock_redis: MagicMock) -> None:
    """A failed ping leaves no client behind."""
    mock_redis.ping.side_effect = RedisConnectionError("refused")
    with patch("codesession.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        store = RedisHistoryStore("redis://localhost:6379/0")
        with pytest.raises(RedisConnectionError):
            await store.connect()
    assert store.client is None


@pytest.mark.asyncio
async def test_get_history_store_none_configured() -> None:
    """No Redis URL and no directory means no store."""
    with patch("codesession.services.history.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url=None, history_dir=None)
        assert await get_history_store_async() is None


@pytest.mark.asyncio
async def test_get_history_store_file(tmp_path: Path) -> None:
    """history_dir selects the file store."""
    with patch("codesession.services.history.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url="", history_dir=tmp_path)
        store = await get_history_store_async()
    assert isinstance(store, FileHistoryStore)
    assert store.base_dir == tmp_path


@pytest.mark.asyncio
async def test_get_history_store_falls_back_when_redis_down(tmp_path: Path) -> None:
    """An unreachable Redis falls back to the file store."""
    with patch("codesession.services.history.get_settings") as get_settings, patch(
        "codesession.services.redis.RedisHistoryStore.connect",
        AsyncMock(side_effect=RedisConnectionError("refused")),
    ):
        get_settings.return_value = MagicMock(
            redis_url="redis://localhost:6379/0", history_dir=tmp_path, context_ttl_seconds=60
        )
        store = await get_history_store_async()
    assert isinstance(store, FileHistoryStore)


@pytest.mark.asyncio
async def test_get_history_store_redis() -> None:
    """A reachable Redis is preferred."""
    with patch("codesession.services.history.get_settings") as get_settings, patch(
        "codesession.services.redis.RedisHistoryStore.connect", AsyncMock(return_value=None)
    ):
        get_settings.return_value = MagicMock(
            redis_url="redis://localhost:6379/0", history_dir=None, context_ttl_seconds=60
        )
        store = await get_history_store_async()
    assert isinstance(store, RedisHistoryStore)
