from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

SYSTEM_ROLE = "system"
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
TOOL_ROLE = "tool"
ROLES = (SYSTEM_ROLE, USER_ROLE, ASSISTANT_ROLE, TOOL_ROLE)


class GenerationState(str, Enum):
    """Where a session's agent loop currently is."""

    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ToolCall:
    """A model-requested tool invocation. ``arguments`` is the raw JSON text."""

    id: str
    name: str = ""
    arguments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        function = data.get("function") or {}
        return cls(
            id=str(data.get("id", "")),
            name=function.get("name", data.get("name", "")) or "",
            arguments=function.get("arguments", data.get("arguments", "")) or "",
        )


@dataclass
class ToolResult:
    """Outcome of a tool execution as it is shown to the model."""

    content: str
    is_error: bool = False


@dataclass
class Message:
    """A single conversation message (OpenAI chat shape)."""

    role: str
    content: str = ""
    reasoning_content: str | None = None
    tool_calls: List[ToolCall] | None = None
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def copy(self) -> "Message":
        """Return a detached copy; tool calls are copied too."""
        tool_calls = None
        if self.tool_calls is not None:
            tool_calls = [
                ToolCall(id=tc.id, name=tc.name, arguments=tc.arguments)
                for tc in self.tool_calls
            ]
        return Message(
            role=self.role,
            content=self.content,
            reasoning_content=self.reasoning_content,
            tool_calls=tool_calls,
            tool_call_id=self.tool_call_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the wire/persistence shape, omitting unset fields."""
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.reasoning_content is not None:
            data["reasoning_content"] = self.reasoning_content
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        tool_calls = data.get("tool_calls")
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            reasoning_content=data.get("reasoning_content"),
            tool_calls=[ToolCall.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass
class Provider:
    """A configured model provider endpoint."""

    id: str
    base_url: str
    api_key: str = ""
    models: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallDelta:
    """One streamed fragment of a tool call, correlated by ``id``."""

    id: str
    name: str = ""
    arguments: str = ""


@dataclass
class StreamDelta:
    """One incremental chunk of model output."""

    content: str = ""
    reasoning: str = ""
    tool_calls: List[ToolCallDelta] = field(default_factory=list)


@dataclass
class Session:
    """Per-project conversation state plus generation status."""

    project_id: str
    messages: List[Message] = field(default_factory=list)
    streaming_message: Message | None = None
    generation_state: GenerationState = GenerationState.IDLE
    tools: Dict[str, Any] = field(default_factory=dict)
    custom_tools: Dict[str, Any] = field(default_factory=dict)
    # caller messages that arrived while a generation held the session
    pending_messages: List[Message] = field(default_factory=list)

    @property
    def is_idle(self) -> bool:
        return self.generation_state is GenerationState.IDLE

    def find_tool(self, name: str) -> Any:
        """Look up a tool by name; custom tools shadow built-in ones."""
        if name in self.custom_tools:
            return self.custom_tools[name]
        return self.tools.get(name)

    def all_tools(self) -> Dict[str, Any]:
        return {**self.tools, **self.custom_tools}
