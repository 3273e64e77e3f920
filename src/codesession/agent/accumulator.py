from typing import Dict, List

from ..events import EventBus, StreamingUpdate
from ..models import ASSISTANT_ROLE, Message, StreamDelta, ToolCall


class StreamAccumulator:
    """Merges streamed deltas into one draft assistant message.

    Content and reasoning are concatenated. Tool-call fragments are merged by
    id in arrival order, so a call may show up as a name first and receive
    its arguments in later fragments. After every delta a full snapshot is
    published as ``streamingUpdate``. Duplicate deltas are not filtered.
    """

    def __init__(self, project_id: str, bus: EventBus) -> None:
        self.project_id = project_id
        self._bus = bus
        self.draft = Message(role=ASSISTANT_ROLE, content="")
        self._calls_by_id: Dict[str, ToolCall] = {}
        self.chunks = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.draft.tool_calls)

    def apply(self, delta: StreamDelta) -> Message:
        """Fold ``delta`` into the draft and emit the new snapshot."""
        draft = self.draft
        if delta.content:
            draft.content += delta.content
        if delta.reasoning:
            draft.reasoning_content = (draft.reasoning_content or "") + delta.reasoning

        for fragment in delta.tool_calls:
            call = self._calls_by_id.get(fragment.id)
            if call is None:
                call = ToolCall(id=fragment.id)
                self._calls_by_id[fragment.id] = call
                if draft.tool_calls is None:
                    draft.tool_calls = []
                draft.tool_calls.append(call)
            if fragment.name:
                call.name += fragment.name
            if fragment.arguments:
                call.arguments += fragment.arguments

        self.chunks += 1
        self._bus.emit(
            StreamingUpdate(
                project_id=self.project_id,
                content=draft.content,
                reasoning_content=draft.reasoning_content,
                tool_calls=self._tool_calls_snapshot(),
            )
        )
        return draft

    def _tool_calls_snapshot(self) -> List[ToolCall] | None:
        if not self.draft.tool_calls:
            return None
        return [ToolCall(id=tc.id, name=tc.name, arguments=tc.arguments) for tc in self.draft.tool_calls]

    def snapshot(self) -> Message:
        """Detached copy of the draft, safe to commit to a conversation."""
        return self.draft.copy()
