"""Agent package for the codesession engine.

This package exposes the session manager (public API and agent loop) while
keeping provider resolution, streaming accumulation, tools and transport in
separate modules.
"""

from .agent import SessionManager, get_session_manager, set_session_manager
from .providers import ProviderRegistry, ResolvedModel
from .tools import FunctionTool, McpTool, Tool, load_mcp_tools
from .transport import OpenAITransport, ProviderTransport

__all__ = [
    "FunctionTool",
    "McpTool",
    "OpenAITransport",
    "ProviderRegistry",
    "ProviderTransport",
    "ResolvedModel",
    "SessionManager",
    "Tool",
    "get_session_manager",
    "load_mcp_tools",
    "set_session_manager",
]
