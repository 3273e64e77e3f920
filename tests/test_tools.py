from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from codesession.agent.tools import (
    EMPTY_PARAMETERS,
    FunctionTool,
    McpTool,
    Tool,
    load_mcp_tools,
    parse_mcp_cmds,
    run_tool,
    tool_schema,
    tool_schemas,
)
from codesession.errors import ToolExecutionError
from codesession.models import ToolResult


def read_file(path: str) -> str:
    """Read a file from the project."""
    return f"contents of {path}"


def test_function_tool_uses_docstring_and_schema() -> None:
    """FunctionTool takes its description from the docstring."""
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "File path"}},
        "required": ["path"],
    }
    tool = FunctionTool(read_file, parameters=parameters)
    assert tool.description == "Read a file from the project."
    assert tool_schema("read_file", tool) == {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a file from the project.",
            "parameters": parameters,
        },
    }


def test_tool_schemas_default_parameters() -> None:
    """Tools without parameters get an empty object schema."""
    duck = SimpleNamespace(description="Build the project", execute=lambda args: "ok")
    schemas = tool_schemas({"build_project": duck})
    assert schemas[0]["function"]["parameters"] == EMPTY_PARAMETERS
    assert schemas[0]["function"]["description"] == "Build the project"


@pytest.mark.asyncio
async def test_function_tool_executes_sync_and_async() -> None:
    """FunctionTool runs plain and coroutine functions."""
    async def typecheck() -> ToolResult:
        return ToolResult(content="No type errors found.")

    assert await FunctionTool(read_file).execute({"path": "a.txt"}) == "contents of a.txt"
    assert (await FunctionTool(typecheck).execute({})).content == "No type errors found."
    assert await FunctionTool(lambda: None).execute({}) == ""


@pytest.mark.asyncio
async def test_run_tool_wraps_plain_strings() -> None:
    """run_tool wraps string results in ToolResult."""
    sync_tool = SimpleNamespace(execute=lambda args: f"got {args['x']}")
    result = await run_tool(sync_tool, {"x": 1})
    assert result == ToolResult(content="got 1")

    async_tool = SimpleNamespace(execute=AsyncMock(return_value=ToolResult("built", is_error=False)))
    assert (await run_tool(async_tool, {})).content == "built"


@pytest.mark.asyncio
async def test_run_tool_propagates_errors() -> None:
    """run_tool lets tool exceptions through."""
    def fail(args):
        raise ToolExecutionError("tsconfig.json missing")

    with pytest.raises(ToolExecutionError):
        await run_tool(SimpleNamespace(execute=fail), {})


def test_parse_mcp_cmds() -> None:
    """MCP_SERVER_CMDS splits on semicolons."""
    assert parse_mcp_cmds(None) == []
    assert parse_mcp_cmds("") == []
    assert parse_mcp_cmds("python fs.py ; node git.js;") == ["python fs.py", "node git.js"]


def _fake_mcp(session: MagicMock):
    @asynccontextmanager
    async def fake_stdio_client(params):
        yield ("read", "write")

    @asynccontextmanager
    async def fake_client_session(read, write):
        yield session

    return fake_stdio_client, fake_client_session


@pytest.mark.asyncio
async def test_load_mcp_tools_lists_and_wraps() -> None:
    """Listed MCP tools become McpTool instances."""
    session = MagicMock()
    session.initialize = AsyncMock()
    session.list_tools = AsyncMock(
        return_value=SimpleNamespace(
            tools=[
                SimpleNamespace(
                    name="read_file",
                    description="Read a file",
                    inputSchema={"type": "object", "properties": {"path": {"type": "string"}}},
                )
            ]
        )
    )
    stdio, client_session = _fake_mcp(session)
    with patch("codesession.agent.tools.stdio_client", stdio), patch(
        "codesession.agent.tools.ClientSession", client_session
    ):
        tools = await load_mcp_tools(["python fs_server.py --root /tmp", "   "])

    assert list(tools) == ["read_file"]
    tool = tools["read_file"]
    assert isinstance(tool, McpTool)
    assert tool.server_params.command == "python"
    assert tool.server_params.args == ["fs_server.py", "--root", "/tmp"]
    assert tool.parameters["properties"]["path"]["type"] == "string"


@pytest.mark.asyncio
async def test_load_mcp_tools_skips_unreachable_servers() -> None:
    """Unreachable MCP servers are skipped."""
    @asynccontextmanager
    async def broken(params):
        raise OSError("no such file")
        yield

    with patch("codesession.agent.tools.stdio_client", broken):
        assert await load_mcp_tools(["missing-binary"]) == {}


@pytest.mark.asyncio
async def test_mcp_tool_execute() -> None:
    """McpTool joins text contents of the call result."""
    session = MagicMock()
    session.initialize = AsyncMock()
    session.call_tool = AsyncMock(
        return_value=SimpleNamespace(
            content=[SimpleNamespace(text="line 1"), SimpleNamespace(text="line 2")],
            isError=False,
        )
    )
    stdio, client_session = _fake_mcp(session)
    tool = McpTool(
        name="read_file",
        description="Read a file",
        parameters=None,
        server_params=MagicMock(command="python"),
    )
    with patch("codesession.agent.tools.stdio_client", stdio), patch(
        "codesession.agent.tools.ClientSession", client_session
    ):
        result = await tool.execute({"path": "a.txt"})

    session.call_tool.assert_awaited_once_with("read_file", {"path": "a.txt"})
    assert result == ToolResult(content="line 1\nline 2", is_error=False)


@pytest.mark.asyncio
async def test_mcp_tool_connection_failure() -> None:
    """A dead MCP server raises ToolExecutionError."""
    @asynccontextmanager
    async def broken(params):
        raise ConnectionError("server exited")
        yield

    tool = McpTool("ls", "", None, server_params=MagicMock(command="node"))
    with patch("codesession.agent.tools.stdio_client", broken):
        with pytest.raises(ToolExecutionError, match="server exited"):
            await tool.execute({})


def test_tool_requires_execute() -> None:
    """Tool is abstract; subclasses must implement execute."""

    class Incomplete(Tool):
        description = "does nothing"

    with pytest.raises(TypeError):
        Tool()
    with pytest.raises(TypeError):
        Incomplete()

    class Echo(Tool):
        def execute(self, args):
            return str(args)

    assert Echo().execute({"a": 1}) == "{'a': 1}"
