"""Test doubles and builders shared across the suite."""

import itertools
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from sched_core.delivery import DeliverySink
from sched_core.llm import LLMResponse, LLMUsage, ToolCall
from sched_core.models import ScheduledTask

_call_ids = itertools.count(1)


def text_reply(text: str, tokens: int = 10) -> LLMResponse:
    return LLMResponse(content=text, usage=LLMUsage(tokens, tokens))


def tool_reply(*calls, text: str = "") -> LLMResponse:
    """Reply requesting tools; each call is ``(name, parameters)``."""
    return LLMResponse(
        content=text,
        tool_calls=[
            ToolCall(id=f"call_{next(_call_ids)}", name=name, parameters=dict(params))
            for name, params in calls
        ],
        usage=LLMUsage(20, 5),
    )


class ScriptedLLM:
    """Returns queued replies (or calls a function) and records every request."""

    provider = "scripted"

    def __init__(
        self,
        replies: Union[List[LLMResponse], Callable[[int, List[Dict]], LLMResponse], None] = None,
        model: str = "gpt-4o-mini",
    ):
        self.model = model
        self._replies = replies if replies is not None else [text_reply("done")]
        self.calls: List[Dict] = []

    def complete_with_tools(self, messages, tools=None, max_tokens=None) -> LLMResponse:
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "tools": list(tools or []),
            "max_tokens": max_tokens,
        })
        if callable(self._replies):
            return self._replies(len(self.calls), messages)
        if not self._replies:
            raise AssertionError("ScriptedLLM ran out of replies")
        return self._replies.pop(0)


class RecordingSink(DeliverySink):

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: List[tuple] = []

    def send(self, destination: str, text: str) -> bool:
        self.sent.append((destination, text))
        return self.succeed


def make_task(
    task_id: str = "1",
    trigger: str = "0 16 * * *",
    last_execution: Optional[datetime] = None,
    **kwargs,
) -> ScheduledTask:
    defaults = {
        "name": f"Task {task_id}",
        "subjects": ["AI Group"],
        "destination": "Ops",
    }
    defaults.update(kwargs)
    return ScheduledTask(id=task_id, trigger=trigger, last_execution=last_execution, **defaults)


NOW = datetime(2025, 3, 12, 16, 0, 10, tzinfo=timezone.utc)  # a Wednesday
