import inspect
import logging
import os
import shlex
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Mapping

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from ..errors import ToolExecutionError
from ..models import ToolResult

logger = logging.getLogger(__name__)

ToolOutput = ToolResult | str

EMPTY_PARAMETERS: Dict[str, Any] = {"type": "object", "properties": {}}


class Tool(ABC):
    """A capability the model can call by name.

    Anything with a ``description`` and an ``execute(args)`` method works as a
    tool; ``execute`` may be sync or async and may return a ``ToolResult`` or
    a plain string. ``parameters`` is the JSON schema of ``args``.
    """

    description: str = ""
    parameters: Dict[str, Any] | None = None

    @abstractmethod
    def execute(self, args: Dict[str, Any]) -> ToolOutput | Awaitable[ToolOutput]:
        """Run the tool with the decoded JSON arguments of a tool call."""


class FunctionTool(Tool):
    """Wraps a Python callable; ``args`` are passed as keyword arguments."""

    def __init__(
        self,
        func: Callable[..., Any],
        description: str | None = None,
        parameters: Dict[str, Any] | None = None,
    ) -> None:
        self.func = func
        self.description = description or inspect.getdoc(func) or ""
        self.parameters = parameters or EMPTY_PARAMETERS

    async def execute(self, args: Dict[str, Any]) -> ToolOutput:
        result = self.func(**args)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ToolResult):
            return result
        return "" if result is None else str(result)


class McpTool(Tool):
    """A tool served by an MCP stdio server.

    Each call opens a short-lived stdio session, the same way tools are
    listed at startup.
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: Dict[str, Any] | None,
        server_params: StdioServerParameters,
        server_name: str = "",
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = parameters or EMPTY_PARAMETERS
        self.server_params = server_params
        self.server_name = server_name or server_params.command

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        logger.info("Calling MCP tool %s on server %s", self.name, self.server_name)
        try:
            async with stdio_client(self.server_params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    result = await session.call_tool(self.name, args)
        except (OSError, ConnectionError, TimeoutError) as e:
            raise ToolExecutionError(
                f"MCP server {self.server_name} failed running {self.name}: {e}"
            ) from e

        texts = [getattr(item, "text", "") or "" for item in result.content or []]
        return ToolResult(content="\n".join(t for t in texts if t), is_error=bool(result.isError))


def _server_params(cmd: str) -> StdioServerParameters | None:
    parts = shlex.split(cmd)
    if not parts:
        return None
    return StdioServerParameters(command=parts[0], args=parts[1:], env=dict(os.environ))


async def load_mcp_tools(cmds: List[str]) -> Dict[str, McpTool]:
    """Start each MCP server once, list its tools and wrap them as ``McpTool``.

    Servers that cannot be reached are skipped with a warning.

    Args:
        cmds: stdio commands, one per server (``"python server.py"``).

    Returns:
        Dict[str, McpTool]: tools keyed by name; a later server wins on clash.
    """
    tools: Dict[str, McpTool] = {}
    for cmd in cmds:
        params = _server_params(cmd)
        if params is None:
            logger.warning("Empty MCP server command; skipping")
            continue
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    listed = await session.list_tools()
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.warning("Failed to connect to MCP server '%s': %s", cmd, e)
            continue

        for info in listed.tools:
            tools[info.name] = McpTool(
                name=info.name,
                description=info.description or "",
                parameters=info.inputSchema,
                server_params=params,
                server_name=cmd,
            )
        logger.info("Loaded %d tools from MCP server '%s'", len(listed.tools), cmd)
    return tools


def parse_mcp_cmds(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [cmd.strip() for cmd in raw.split(";") if cmd.strip()]


def tool_schema(name: str, tool: Any) -> Dict[str, Any]:
    """OpenAI function-tool schema for one tool."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": getattr(tool, "description", "") or "",
            "parameters": getattr(tool, "parameters", None) or EMPTY_PARAMETERS,
        },
    }


def tool_schemas(tools: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return [tool_schema(name, tool) for name, tool in tools.items()]


async def run_tool(tool: Any, args: Dict[str, Any]) -> ToolResult:
    """Execute ``tool`` and wrap a plain string result into a ``ToolResult``."""
    result = tool.execute(args)
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, ToolResult):
        return result
    return ToolResult(content="" if result is None else str(result))
