"""
Tool system for schedCore.

Tools are the named operations the model may request during a run. Read tools
query the message store; the write tool sends through the delivery sink and
is gated by the management allow-list.

Usage:
    from sched_core.tools import ToolRegistry, ManagementAllowList, build_group_tools

    registry = ToolRegistry(permissions=ManagementAllowList(source, fallback=["Ops"]))
    for tool in build_group_tools(store, sink):
        registry.register(tool)
"""

from .base import (
    NOT_AUTHORIZED,
    BaseTool,
    ToolContext,
    ToolDefinition,
    ToolParameter,
    ToolRegistry,
    ToolRequest,
    ToolResult,
)
from .group_tools import (
    GetGroupByNameTool,
    GetMessagesByDateTool,
    GetRecentMessagesTool,
    SearchGroupsTool,
    SearchMessagesInGroupTool,
    SendMessageToGroupTool,
    build_group_tools,
)
from .permissions import ManagementAllowList

__all__ = [
    "NOT_AUTHORIZED",
    "BaseTool",
    "ToolContext",
    "ToolDefinition",
    "ToolParameter",
    "ToolRegistry",
    "ToolRequest",
    "ToolResult",
    "GetGroupByNameTool",
    "GetMessagesByDateTool",
    "GetRecentMessagesTool",
    "SearchGroupsTool",
    "SearchMessagesInGroupTool",
    "SendMessageToGroupTool",
    "build_group_tools",
    "ManagementAllowList",
]
