import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from codesession.agent.agent import SessionManager  # noqa: E402
from codesession.agent.providers import ProviderRegistry  # noqa: E402
from codesession.agent.transport import ProviderTransport  # noqa: E402
from codesession.models import Message, Provider, StreamDelta, ToolCallDelta  # noqa: E402

BLOCK = "block"

Turn = Sequence[StreamDelta | Exception | str]


class ScriptedTransport(ProviderTransport):
    """Replays scripted turns; records every request it receives.

    A turn is a list of StreamDelta items. An Exception item is raised at
    that point of the stream; the ``BLOCK`` marker waits forever (until the
    read is cancelled).
    """

    def __init__(self, turns: List[Turn] | Callable[[int], Turn]) -> None:
        self._turns = turns
        self.requests: List[Dict[str, Any]] = []
        self.closed_streams = 0

    def _turn(self, index: int) -> Turn:
        if callable(self._turns):
            return self._turns(index)
        if index < len(self._turns):
            return self._turns[index]
        return [StreamDelta(content="(script exhausted)")]

    async def stream(self, provider, model_id, messages, tool_schemas):
        index = len(self.requests)
        self.requests.append(
            {
                "provider": provider.id,
                "model": model_id,
                "messages": [m.copy() for m in messages],
                "tools": tool_schemas,
            }
        )
        try:
            for item in self._turn(index):
                await asyncio.sleep(0)
                if isinstance(item, Exception):
                    raise item
                if item == BLOCK:
                    await asyncio.Event().wait()
                yield item
        finally:
            self.closed_streams += 1


def text(content: str = "", reasoning: str = "") -> StreamDelta:
    return StreamDelta(content=content, reasoning=reasoning)


def call(call_id: str, name: str = "", arguments: str = "") -> StreamDelta:
    return StreamDelta(tool_calls=[ToolCallDelta(id=call_id, name=name, arguments=arguments)])


@pytest.fixture
def provider() -> Provider:
    return Provider(id="test-provider", base_url="https://api.test.com", api_key="test-key")


@pytest.fixture
def registry(provider: Provider) -> ProviderRegistry:
    return ProviderRegistry([provider])


@pytest.fixture
def make_manager(registry: ProviderRegistry) -> Callable[..., SessionManager]:
    """Build a SessionManager around a ScriptedTransport."""

    def _make(
        turns: List[Turn] | Callable[[int], Turn] | None = None,
        history: Any = None,
        max_iterations: int = 25,
        system_prompt: str | None = None,
        require_persistence: bool = False,
    ) -> SessionManager:
        return SessionManager(
            registry=registry,
            transport=ScriptedTransport(turns or []),
            history=history,
            max_iterations=max_iterations,
            system_prompt=system_prompt,
            require_persistence=require_persistence,
        )

    return _make


@pytest.fixture
def user_message() -> Message:
    return Message(role="user", content="hi")
