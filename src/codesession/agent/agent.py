import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping

from ..errors import GenerationInProgress, MaxIterationsExceeded
from ..events import EventBus, EventType, GenerationFailed, GenerationFinished, Listener, Subscription
from ..models import (
    SYSTEM_ROLE,
    TOOL_ROLE,
    GenerationState,
    Message,
    Session,
    ToolCall,
    ToolResult,
)
from ..services.history import HistoryStore
from ..settings import Settings, get_settings
from .accumulator import StreamAccumulator
from .providers import ProviderRegistry, ResolvedModel
from .sessions import SessionStore
from .tools import run_tool, tool_schemas
from .transport import OpenAITransport, ProviderTransport

logger = logging.getLogger(__name__)

CANCELLED_TOOL_RESULT = "Error: Tool execution cancelled"


class _Cancelled(Exception):
    """Raised inside the loop once the lease's cancellation signal is set."""


_EXHAUSTED = object()


async def _next_delta(stream: Any) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


@dataclass
class GenerationLease:
    """Exclusive hold on one session for the duration of a generation."""

    project_id: str
    model: ResolvedModel
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    iterations: int = 0


class SessionManager:
    """Public API of the session engine and driver of the agent loop.

    One generation runs per session at a time; the session's
    ``generation_state`` is the lock. A generation loops
    request -> stream -> execute tools until the model answers without tool
    calls, the iteration cap is hit, the transport fails or it is cancelled.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        transport: ProviderTransport,
        history: HistoryStore | None = None,
        bus: EventBus | None = None,
        max_iterations: int = 25,
        system_prompt: str | None = None,
        require_persistence: bool = False,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.bus = bus or EventBus()
        self.registry = registry
        self.transport = transport
        self.store = SessionStore(self.bus, history, require_persistence=require_persistence)
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt
        self._leases: Dict[str, GenerationLease] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        history: HistoryStore | None = None,
        transport: ProviderTransport | None = None,
    ) -> "SessionManager":
        settings = settings or get_settings()
        return cls(
            registry=ProviderRegistry.from_settings(settings),
            transport=transport or OpenAITransport(timeout=settings.request_timeout_seconds),
            history=history,
            max_iterations=settings.max_iterations,
            system_prompt=settings.system_prompt or None,
            require_persistence=settings.require_persistence,
        )

    # --- events -----------------------------------------------------------

    def on(self, event_type: EventType, listener: Listener) -> None:
        self.bus.on(event_type, listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        self.bus.off(event_type, listener)

    def subscribe(self, project_id: str) -> Subscription:
        return self.bus.subscribe(project_id)

    # --- sessions ---------------------------------------------------------

    async def load_session(
        self,
        project_id: str,
        tools: Mapping[str, Any] | None = None,
        custom_tools: Mapping[str, Any] | None = None,
    ) -> Session:
        return await self.store.load_session(project_id, tools, custom_tools)

    def get_session(self, project_id: str) -> Session | None:
        return self.store.get_session(project_id)

    async def add_message(self, project_id: str, message: Message | Dict[str, Any]) -> Message:
        return await self.store.add_message(project_id, message)

    def evict_session(self, project_id: str) -> bool:
        return self.store.evict_session(project_id)

    async def flush(self) -> None:
        await self.store.flush()

    # --- generation -------------------------------------------------------

    def _set_state(self, session: Session, state: GenerationState) -> None:
        logger.debug(
            "Session %s: %s -> %s", session.project_id, session.generation_state.value, state.value
        )
        session.generation_state = state

    async def start_generation(self, project_id: str, provider_model_id: str) -> Message | None:
        """Run the agent loop until the model gives a final answer.

        Args:
            project_id: Session to generate for; loaded if not in memory.
            provider_model_id: ``"<provider id>/<model id>"``.

        Returns:
            Message: the final assistant message, or None if the generation
                was cancelled.

        Raises:
            GenerationInProgress: another generation holds this session.
            ProviderNotFound, ModelNotFound: the identifier does not resolve;
                the conversation is untouched.
            TransportError: the provider call failed mid-generation.
            MaxIterationsExceeded: the model kept requesting tools.
        """
        session = await self.store.load_session(project_id)
        if not session.is_idle:
            raise GenerationInProgress(project_id)
        resolved = self.registry.resolve(provider_model_id)

        lease = GenerationLease(project_id=project_id, model=resolved)
        self._leases[project_id] = lease
        self._set_state(session, GenerationState.REQUESTING)
        logger.info("Generation started for %s with %s", project_id, provider_model_id)

        final: Message | None = None
        failure: Exception | None = None
        try:
            final = await self._run(session, lease)
        except _Cancelled:
            logger.info("Generation cancelled for %s", project_id)
        except Exception as e:
            self._set_state(session, GenerationState.FAILED)
            logger.warning("Generation failed for %s: %s", project_id, e)
            failure = e
        finally:
            session.streaming_message = None
            self.store.commit_pending(session)
            self._set_state(session, GenerationState.IDLE)
            self._leases.pop(project_id, None)
            lease.finished.set()

        if failure is not None:
            self.bus.emit(
                GenerationFailed(
                    project_id=project_id,
                    error=str(failure),
                    error_type=type(failure).__name__,
                )
            )
            raise failure
        if final is not None:
            self.bus.emit(
                GenerationFinished(project_id=project_id, message=final, iterations=lease.iterations)
            )
        return final

    async def cancel_generation(self, project_id: str) -> bool:
        """Abort the running generation and wait until the session is idle.

        The partial draft is discarded. Returns False when nothing was running.
        """
        session = self.store.get_session(project_id)
        lease = self._leases.get(project_id)
        if session is None or lease is None or session.is_idle:
            return False
        if not lease.cancelled.is_set():
            self._set_state(session, GenerationState.CANCELLING)
            session.streaming_message = None
            lease.cancelled.set()
        await lease.finished.wait()
        return True

    async def _run(self, session: Session, lease: GenerationLease) -> Message:
        schemas = tool_schemas(session.all_tools())
        while True:
            if lease.iterations >= self.max_iterations:
                raise MaxIterationsExceeded(session.project_id, self.max_iterations)
            lease.iterations += 1
            self._set_state(session, GenerationState.REQUESTING)

            draft = await self._stream_turn(session, lease, schemas)
            if not draft.tool_calls:
                session.streaming_message = None
                self.store.append(session, draft)
                self._set_state(session, GenerationState.COMPLETED)
                return draft

            self.store.append(session, draft)
            self._set_state(session, GenerationState.EXECUTING_TOOLS)
            await self._execute_tool_calls(session, lease, draft.tool_calls)
            self.store.commit_pending(session)
            session.streaming_message = None

    def _request_messages(self, session: Session) -> List[Message]:
        messages = list(session.messages)
        if self.system_prompt:
            messages.insert(0, Message(role=SYSTEM_ROLE, content=self.system_prompt))
        return messages

    async def _stream_turn(
        self, session: Session, lease: GenerationLease, schemas: List[Dict[str, Any]]
    ) -> Message:
        accumulator = StreamAccumulator(session.project_id, self.bus)
        stream = self.transport.stream(
            lease.model.provider,
            lease.model.model_id,
            self._request_messages(session),
            schemas,
        )
        try:
            while True:
                delta = await self._guard(lease, _next_delta(stream))
                if delta is _EXHAUSTED:
                    break
                if session.generation_state is GenerationState.REQUESTING:
                    self._set_state(session, GenerationState.STREAMING)
                    session.streaming_message = accumulator.draft
                accumulator.apply(delta)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        logger.debug("Stream for %s finished after %d chunks", session.project_id, accumulator.chunks)
        return accumulator.snapshot()

    async def _execute_tool_calls(
        self, session: Session, lease: GenerationLease, calls: List[ToolCall]
    ) -> None:
        for position, call in enumerate(calls):
            try:
                result = await self._execute_tool(session, lease, call)
            except _Cancelled:
                # every tool call still gets an answer so the log stays replayable
                for pending in calls[position:]:
                    self._append_tool_result(session, pending, ToolResult(CANCELLED_TOOL_RESULT, is_error=True))
                raise
            self._append_tool_result(session, call, result)

    def _append_tool_result(self, session: Session, call: ToolCall, result: ToolResult) -> None:
        self.store.append(
            session,
            Message(role=TOOL_ROLE, content=result.content, tool_call_id=call.id),
        )

    async def _execute_tool(self, session: Session, lease: GenerationLease, call: ToolCall) -> ToolResult:
        tool = session.find_tool(call.name)
        if tool is None:
            logger.error("Tool %s not found for session %s", call.name, session.project_id)
            return ToolResult(content=f'Error: Tool "{call.name}" not found', is_error=True)

        try:
            args = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError as e:
            logger.error("Invalid tool arguments for %s: %s", call.name, e)
            return ToolResult(content=f"Error: invalid arguments - {e}", is_error=True)
        if not isinstance(args, dict):
            return ToolResult(content="Error: invalid arguments - expected a JSON object", is_error=True)

        logger.info("Executing tool %s for session %s", call.name, session.project_id)
        try:
            return await self._guard(lease, run_tool(tool, args))
        except _Cancelled:
            raise
        except Exception as e:
            logger.error("Error executing tool %s: %s", call.name, e)
            return ToolResult(content=f"Error: {e}", is_error=True)

    async def _guard(self, lease: GenerationLease, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the lease is cancelled first.

        On cancellation the in-flight operation is cancelled and ``_Cancelled``
        is raised.
        """
        if lease.cancelled.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise _Cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(lease.cancelled.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait([task])

        if lease.cancelled.is_set():
            if not task.cancelled():
                task.exception()
            raise _Cancelled()
        return task.result()


_MANAGER: SessionManager | None = None


def get_session_manager() -> SessionManager:
    """Process-wide manager built from settings, without history persistence.

    The server replaces it at startup with one bound to the configured
    history store (see ``set_session_manager``).
    """
    global _MANAGER
    if _MANAGER is None:
        _MANAGER = SessionManager.from_settings()
    return _MANAGER


def set_session_manager(manager: SessionManager | None) -> None:
    global _MANAGER
    _MANAGER = manager
