import asyncio
import logging
from typing import Any, Dict, List, Mapping, Set

from ..errors import GenerationInProgress, SessionNotReady
from ..events import EventBus, MessageAdded
from ..models import Message, Session
from ..services.history import HistoryStore

logger = logging.getLogger(__name__)


class SessionStore:
    """Owns the table of project id -> Session.

    Sessions are created on first load and restored from the history store.
    Concurrent first loads of the same project share one in-flight task, so
    exactly one Session is ever constructed per project id. Writes to the
    history store are scheduled in the background and chained per project,
    so the stored log always ends up as the latest in-memory state.
    """

    def __init__(
        self,
        bus: EventBus,
        history: HistoryStore | None = None,
        require_persistence: bool = False,
    ) -> None:
        self._bus = bus
        self._history = history
        self._require_persistence = require_persistence
        self._sessions: Dict[str, Session] = {}
        self._loading: Dict[str, "asyncio.Task[Session]"] = {}
        self._last_write: Dict[str, "asyncio.Task[None]"] = {}
        self._pending_writes: Set["asyncio.Task[None]"] = set()

    @property
    def history(self) -> HistoryStore | None:
        return self._history

    def get_session(self, project_id: str) -> Session | None:
        return self._sessions.get(project_id)

    def project_ids(self) -> List[str]:
        return list(self._sessions)

    async def load_session(
        self,
        project_id: str,
        tools: Mapping[str, Any] | None = None,
        custom_tools: Mapping[str, Any] | None = None,
    ) -> Session:
        """Return the cached Session or construct and restore a new one.

        On a cache hit ``tools`` and ``custom_tools`` are ignored: identity is
        keyed by ``project_id`` alone.
        """
        session = self._sessions.get(project_id)
        if session is not None:
            return session

        task = self._loading.get(project_id)
        if task is None:
            task = asyncio.ensure_future(self._create(project_id, tools or {}, custom_tools or {}))
            self._loading[project_id] = task
        return await asyncio.shield(task)

    async def _create(
        self,
        project_id: str,
        tools: Mapping[str, Any],
        custom_tools: Mapping[str, Any],
    ) -> Session:
        try:
            messages = await self._restore(project_id)
            session = Session(
                project_id=project_id,
                messages=messages,
                tools=dict(tools),
                custom_tools=dict(custom_tools),
            )
            self._sessions[project_id] = session
            logger.info("Loaded session %s with %d messages", project_id, len(messages))
            return session
        finally:
            self._loading.pop(project_id, None)

    async def _restore(self, project_id: str) -> List[Message]:
        if self._history is None:
            return []
        try:
            messages = await self._history.load(project_id)
        except Exception as e:
            logger.warning("Reading history for %s failed, starting empty: %s", project_id, e)
            return []
        return list(messages or [])

    async def add_message(
        self, project_id: str, message: Message | Dict[str, Any]
    ) -> Message:
        """Append a caller-supplied message, loading the session if needed.

        While a generation holds the session the message is queued and
        committed by the generation at its next safe point (after a tool
        result batch, or when it ends). ``messageAdded`` is emitted right away
        in both cases.

        Raises:
            SessionNotReady: persistence is required but there is no history
                store. The message has been appended in memory regardless.
        """
        session = await self.load_session(project_id)
        if isinstance(message, dict):
            message = Message.from_dict(message)
        stored = message.copy()
        if session.is_idle:
            self.append(session, stored)
        else:
            logger.info(
                "Session %s is %s; queueing %s message",
                project_id, session.generation_state.value, stored.role,
            )
            session.pending_messages.append(stored)
            self._bus.emit(MessageAdded(project_id=project_id, message=stored))
        if self._require_persistence and self._history is None:
            raise SessionNotReady(
                f'Message for project "{project_id}" was not persisted: no history store configured'
            )
        return stored

    def append(self, session: Session, message: Message) -> None:
        """Append to ``session.messages``, schedule a write and emit messageAdded."""
        session.messages.append(message)
        self.persist(session)
        self._bus.emit(MessageAdded(project_id=session.project_id, message=message))

    def commit_pending(self, session: Session) -> int:
        """Move queued caller messages into the log. Returns how many moved.

        messageAdded was already emitted when they were queued.
        """
        if not session.pending_messages:
            return 0
        pending, session.pending_messages = session.pending_messages, []
        session.messages.extend(pending)
        self.persist(session)
        return len(pending)

    def persist(self, session: Session) -> None:
        if self._history is None:
            return
        project_id = session.project_id
        snapshot = list(session.messages)
        previous = self._last_write.get(project_id)
        task = asyncio.ensure_future(self._write(previous, project_id, snapshot))
        self._last_write[project_id] = task
        self._pending_writes.add(task)
        task.add_done_callback(lambda t: self._write_done(project_id, t))

    async def _write(
        self,
        previous: "asyncio.Task[None] | None",
        project_id: str,
        messages: List[Message],
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            ok = await self._history.save(project_id, messages)
        except Exception:
            logger.exception("Persisting history for %s failed", project_id)
            return
        if not ok:
            logger.warning("History store did not persist %s", project_id)

    def _write_done(self, project_id: str, task: "asyncio.Task[None]") -> None:
        self._pending_writes.discard(task)
        if self._last_write.get(project_id) is task:
            del self._last_write[project_id]

    async def flush(self) -> None:
        """Wait for every scheduled history write to finish."""
        while self._pending_writes:
            await asyncio.wait(list(self._pending_writes))

    def evict_session(self, project_id: str) -> bool:
        """Drop a session from memory. Its stored history is kept.

        Raises:
            GenerationInProgress: the session is generating.
        """
        session = self._sessions.get(project_id)
        if session is None:
            return False
        if not session.is_idle:
            raise GenerationInProgress(project_id)
        del self._sessions[project_id]
        logger.info("Evicted session %s", project_id)
        return True
