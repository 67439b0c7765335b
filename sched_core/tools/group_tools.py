"""
GROUP_TOOLS
===========

Tools over the group/message store, plus the one write tool.

Read tools (always permitted):
    search_groups             Find groups by (partial) name
    get_group_by_name         Resolve one group: exact match, then partial
    search_messages_in_group  Text and date-range search inside a group
    get_recent_messages       Last N hours of a group
    get_messages_by_date      One calendar day, optionally one group

Write tool (management origins only):
    send_message_to_group     Send text to a group through the delivery sink

"Not found" outcomes are returned as ``success: false`` results so the model
can react; only real faults raise.
"""

import datetime as dt
from typing import Callable, List, Optional

from pydantic import Field, model_validator

from ..delivery import DeliverySink
from ..models import utcnow
from ..storage.base import Group, Message, MessageStore
from .base import BaseTool, ToolContext, ToolDefinition, ToolParameter, ToolRequest, ToolResult


def _group_summary(group: Group) -> dict:
    return {"id": group.id, "name": group.name, "message_count": group.message_count}


def _messages(messages: List[Message]) -> List[dict]:
    return [m.to_dict() for m in messages]


# ============================================================================
# REQUEST MODELS
# ============================================================================

class SearchGroupsRequest(ToolRequest):
    search_term: Optional[str] = None


class GetGroupByNameRequest(ToolRequest):
    group_name: str = Field(min_length=1)


class SearchMessagesRequest(ToolRequest):
    group_id: str = Field(min_length=1)
    search_query: Optional[str] = None
    date_start: Optional[dt.date] = None
    date_end: Optional[dt.date] = None
    limit: int = Field(default=100, ge=1, le=500)

    @model_validator(mode="after")
    def _check_range(self):
        if self.date_start and self.date_end and self.date_start > self.date_end:
            raise ValueError("date_start must not be after date_end")
        return self


class GetRecentMessagesRequest(ToolRequest):
    group_id: str = Field(min_length=1)
    hours: int = Field(default=24, ge=1, le=720)
    limit: int = Field(default=50, ge=1, le=500)


class GetMessagesByDateRequest(ToolRequest):
    date: dt.date
    group_id: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=500)


class SendMessageRequest(ToolRequest):
    group_name: str = Field(min_length=1)
    message: str = Field(min_length=1)


# ============================================================================
# READ TOOLS
# ============================================================================

class _StoreTool(BaseTool):

    def __init__(self, store: MessageStore):
        self.store = store

    def _missing_group(self, group_id: str) -> ToolResult:
        return ToolResult.fail(f"Group not found: {group_id}")


class SearchGroupsTool(_StoreTool):
    request_model = SearchGroupsRequest

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="search_groups",
            description=(
                "List groups whose name contains the search term. "
                "Call without a term to list all groups. Returns id, name and message count."
            ),
            parameters=[
                ToolParameter(
                    name="search_term",
                    type="string",
                    description="Part of the group name (case-insensitive)",
                    required=False,
                ),
            ],
        )

    def execute(self, request: SearchGroupsRequest, context: ToolContext) -> ToolResult:
        groups = self.store.search_groups(request.search_term)
        return ToolResult.ok(groups=[_group_summary(g) for g in groups], count=len(groups))


class GetGroupByNameTool(_StoreTool):
    request_model = GetGroupByNameRequest

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="get_group_by_name",
            description=(
                "Resolve a group by name. Tries an exact match first, then a partial match. "
                "Use the returned id with the message tools."
            ),
            parameters=[
                ToolParameter(name="group_name", type="string", description="Group name"),
            ],
        )

    def execute(self, request: GetGroupByNameRequest, context: ToolContext) -> ToolResult:
        group = self.store.find_group_by_name(request.group_name)
        if group is None:
            return ToolResult.fail(f"Group not found: {request.group_name}")
        exact = group.name.casefold() == request.group_name.casefold()
        return ToolResult.ok(group=_group_summary(group), exact_match=exact)


class SearchMessagesInGroupTool(_StoreTool):
    request_model = SearchMessagesRequest

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="search_messages_in_group",
            description=(
                "Search messages in one group by text and/or date range. "
                "Results are newest first."
            ),
            parameters=[
                ToolParameter(name="group_id", type="string", description="Group id"),
                ToolParameter(
                    name="search_query", type="string",
                    description="Text to look for (case-insensitive)", required=False,
                ),
                ToolParameter(
                    name="date_start", type="string",
                    description="First day to include, YYYY-MM-DD", required=False,
                ),
                ToolParameter(
                    name="date_end", type="string",
                    description="Last day to include, YYYY-MM-DD", required=False,
                ),
                ToolParameter(
                    name="limit", type="integer",
                    description="Maximum messages to return (1-500)", required=False, default=100,
                ),
            ],
        )

    def execute(self, request: SearchMessagesRequest, context: ToolContext) -> ToolResult:
        group = self.store.get_group(request.group_id)
        if group is None:
            return self._missing_group(request.group_id)
        messages = self.store.search_messages(
            request.group_id,
            query=request.search_query,
            date_start=request.date_start,
            date_end=request.date_end,
            limit=request.limit,
        )
        return ToolResult.ok(
            group=_group_summary(group), messages=_messages(messages), count=len(messages)
        )


class GetRecentMessagesTool(_StoreTool):
    request_model = GetRecentMessagesRequest

    def __init__(self, store: MessageStore, clock: Callable[[], dt.datetime] = utcnow):
        super().__init__(store)
        self._clock = clock

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="get_recent_messages",
            description="Messages from one group within the last N hours, newest first.",
            parameters=[
                ToolParameter(name="group_id", type="string", description="Group id"),
                ToolParameter(
                    name="hours", type="integer",
                    description="How far back to look (1-720)", required=False, default=24,
                ),
                ToolParameter(
                    name="limit", type="integer",
                    description="Maximum messages to return (1-500)", required=False, default=50,
                ),
            ],
        )

    def execute(self, request: GetRecentMessagesRequest, context: ToolContext) -> ToolResult:
        group = self.store.get_group(request.group_id)
        if group is None:
            return self._missing_group(request.group_id)
        since = self._clock() - dt.timedelta(hours=request.hours)
        messages = self.store.get_recent_messages(request.group_id, since, request.limit)
        return ToolResult.ok(
            group=_group_summary(group),
            hours=request.hours,
            messages=_messages(messages),
            count=len(messages),
        )


class GetMessagesByDateTool(_StoreTool):
    request_model = GetMessagesByDateRequest

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="get_messages_by_date",
            description="All messages from one calendar day (UTC), optionally limited to one group.",
            parameters=[
                ToolParameter(name="date", type="string", description="Day in YYYY-MM-DD format"),
                ToolParameter(
                    name="group_id", type="string",
                    description="Restrict to this group id", required=False,
                ),
                ToolParameter(
                    name="limit", type="integer",
                    description="Maximum messages to return (1-500)", required=False, default=100,
                ),
            ],
        )

    def execute(self, request: GetMessagesByDateRequest, context: ToolContext) -> ToolResult:
        if request.group_id and self.store.get_group(request.group_id) is None:
            return self._missing_group(request.group_id)
        messages = self.store.get_messages_by_date(request.date, request.group_id, request.limit)
        return ToolResult.ok(
            date=request.date.isoformat(), messages=_messages(messages), count=len(messages)
        )


# ============================================================================
# WRITE TOOL
# ============================================================================

class SendMessageToGroupTool(_StoreTool):
    request_model = SendMessageRequest
    requires_authorization = True

    def __init__(self, store: MessageStore, sink: DeliverySink):
        super().__init__(store)
        self.sink = sink

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="send_message_to_group",
            description=(
                "Send a message to a group by name. Only permitted when the run "
                "originates from a management group."
            ),
            parameters=[
                ToolParameter(name="group_name", type="string", description="Target group name"),
                ToolParameter(name="message", type="string", description="Message text"),
            ],
            writes=True,
        )

    def execute(self, request: SendMessageRequest, context: ToolContext) -> ToolResult:
        group = self.store.find_group_by_name(request.group_name)
        if group is None:
            return ToolResult.fail(f"Group not found: {request.group_name}")
        if not self.sink.send(group.name, request.message):
            return ToolResult.fail(f"Delivery to {group.name} failed", group=group.name)
        return ToolResult.ok(sent_to=group.name, characters=len(request.message))


def build_group_tools(store: MessageStore, sink: DeliverySink) -> List[BaseTool]:
    """The standard catalog, in the order it is shown to the model."""
    return [
        SearchGroupsTool(store),
        GetGroupByNameTool(store),
        SearchMessagesInGroupTool(store),
        GetRecentMessagesTool(store),
        GetMessagesByDateTool(store),
        SendMessageToGroupTool(store, sink),
    ]
