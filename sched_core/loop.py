"""
AGENT_LOOP
==========

Bounded, tool-augmented conversation with the model.

Execution Cycle
---------------
::

    1. messages = [system prompt, user instruction]
    2. Call the model with the tool catalog
    3. If the reply requests tool calls:
       → Invoke each via ToolRegistry.invoke()
       → Append one "tool" message per call, keyed by the call id
       → Count one tool round, go to 2
    4. If the reply has no tool calls: return its text

Stops at whichever comes first: a reply without tool calls, ``max_rounds``
tool rounds (default 10), or cancellation. Hitting the round cap is not an
error: the best text seen so far is returned with status ``"max_rounds"``.

Error Policy
------------
- Tool-side failures (unknown tool, invalid arguments, tool exception,
  timeout, refusal) are serialized into the tool message so the model can
  react. They never abort the loop.
- ``ModelInvocationError`` from the client propagates to the caller.

Usage::

    loop = AgentLoop(llm_client, registry, max_rounds=10)
    result = loop.run("Summarize today's messages in AI Group", context=ToolContext(...))
    print(result.status, result.final_response)
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Literal, Optional

from .errors import ToolExecutionError
from .llm import LLMResponse, ToolCall, assistant_message, tool_message
from .observability import current_session_id, estimate_cost
from .tools.base import ToolContext, ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 10

DEFAULT_SYSTEM_PROMPT = (
    "You are an assistant that reports on group chat activity on a schedule. "
    "Use the available tools to look up groups and read their messages before answering; "
    "never invent messages. Resolve group names with get_group_by_name or search_groups, "
    "then read messages with the message tools. "
    "When a tool returns success=false, take the error into account and continue. "
    "Answer with a concise, well-structured report in the language of the messages."
)


# ============================================================================
# CANCELLATION
# ============================================================================

class CancellationToken:
    """Explicit cancel flag plus an optional monotonic deadline."""

    def __init__(self, deadline: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.deadline = deadline
        self._clock = clock
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> "CancellationToken":
        deadline = clock() + seconds if seconds else None
        return cls(deadline=deadline, clock=clock)

    def cancel(self, reason: str = "Execution cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self.deadline is not None and self._clock() >= self.deadline:
            return "Execution deadline exceeded"
        return None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(self.deadline - self._clock(), 0.0)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class TokenUsage:
    """Token usage tracking."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens
        )

    def to_dict(self) -> Dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total": self.total
        }


@dataclass
class ToolCallRecord:
    """Record of a tool call."""
    id: str
    name: str
    parameters: Dict
    result: Dict
    success: bool
    duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "parameters": self.parameters,
            "result": self.result,
            "success": self.success,
            "duration_ms": self.duration_ms,
        }


@dataclass
class Round:
    """One model call plus the tool calls it requested."""
    number: int
    timestamp: str
    llm_text: str
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "number": self.number,
            "timestamp": self.timestamp,
            "llm_text": self.llm_text,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "tokens_used": self.tokens_used.to_dict(),
            "duration_ms": self.duration_ms,
        }


@dataclass
class LoopResult:
    """Result of an agent loop run."""
    status: Literal["completed", "max_rounds", "cancelled"]
    rounds: List[Round]
    final_response: str
    tool_rounds: int = 0
    error: Optional[str] = None
    total_duration_ms: int = 0
    total_tokens: TokenUsage = field(default_factory=TokenUsage)
    tools_called: List[str] = field(default_factory=list)
    model: Optional[str] = None
    estimated_cost: Optional[float] = None

    @property
    def tools_used(self) -> List[str]:
        """Distinct tool names, in first-use order."""
        return list(dict.fromkeys(self.tools_called))

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "rounds": [r.to_dict() for r in self.rounds],
            "final_response": self.final_response,
            "tool_rounds": self.tool_rounds,
            "error": self.error,
            "total_duration_ms": self.total_duration_ms,
            "total_tokens": self.total_tokens.to_dict(),
            "tools_called": self.tools_called,
            "model": self.model,
            "estimated_cost": self.estimated_cost,
        }


# ============================================================================
# AGENT LOOP
# ============================================================================

class AgentLoop:
    """
    Model ⇄ tools exchange with a hard cap on tool rounds.

    The conversation state lives only inside one ``run`` call.
    """

    def __init__(
        self,
        llm_client,
        tool_registry: ToolRegistry,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_tokens: Optional[int] = None,
    ):
        """
        Args:
            llm_client: Client with ``complete_with_tools(messages, tools, max_tokens)``
            tool_registry: Registry used to invoke requested tools
            max_rounds: Maximum tool rounds before returning the best text
            system_prompt: System message for every run
            max_tokens: Per-call completion limit (None = client default)
        """
        if max_rounds < 0:
            raise ValueError("max_rounds must be >= 0")
        self.llm_client = llm_client
        self.tool_registry = tool_registry
        self.max_rounds = max_rounds
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens

    # ====================================================================
    # SHARED HELPERS
    # ====================================================================

    def _build_result(self, status: str, state: dict, final_response: str,
                      error: Optional[str] = None) -> LoopResult:
        total: TokenUsage = state["total_tokens"]
        model = getattr(self.llm_client, "model", None)
        return LoopResult(
            status=status,
            rounds=state["rounds"],
            final_response=final_response,
            tool_rounds=state["tool_rounds"],
            error=error,
            total_duration_ms=int((time.time() - state["start_time"]) * 1000),
            total_tokens=total,
            tools_called=state["tools_called"],
            model=model,
            estimated_cost=estimate_cost(model, total.input_tokens, total.output_tokens),
        )

    def _best_text(self, state: dict) -> str:
        if state["last_text"]:
            return state["last_text"]
        names = ", ".join(dict.fromkeys(state["tools_called"])) or "none"
        return (
            f"No final answer was produced after {state['tool_rounds']} tool round(s). "
            f"Tools used: {names}."
        )

    def _check_cancellation(self, cancel_token: Optional[CancellationToken],
                            state: dict) -> Optional[LoopResult]:
        if cancel_token is None or not cancel_token.cancelled:
            return None
        reason = cancel_token.reason or "Execution cancelled"
        logger.warning("[%s] Agent loop cancelled: %s", current_session_id(), reason)
        return self._build_result("cancelled", state, self._best_text(state), error=reason)

    def _invoke_tool(self, call: ToolCall, context: ToolContext,
                     cancel_token: Optional[CancellationToken]) -> ToolCallRecord:
        """Run one tool call; every failure becomes a ``success: false`` payload."""
        start = time.perf_counter()
        if call.parse_error:
            payload = {"success": False, "error": f"Invalid arguments: {call.parse_error}"}
        else:
            timeout = None
            remaining = cancel_token.remaining() if cancel_token else None
            if remaining is not None and remaining < self.tool_registry.default_timeout:
                timeout = max(remaining, 0.01)
            try:
                result = self.tool_registry.invoke(call.name, call.parameters, context, timeout=timeout)
                payload = result.to_dict()
            except ToolExecutionError as e:
                logger.warning("[%s] Tool %s failed: %s", current_session_id(), call.name, e.message)
                payload = e.to_dict()
            except Exception as e:
                logger.error("[%s] Tool %s raised unexpectedly", current_session_id(), call.name, exc_info=True)
                payload = {"success": False, "error": f"{type(e).__name__}: {e}"}

        return ToolCallRecord(
            id=call.id,
            name=call.name,
            parameters=call.parameters,
            result=payload,
            success=bool(payload.get("success")),
            duration_ms=round((time.perf_counter() - start) * 1000),
        )

    # ====================================================================
    # RUN
    # ====================================================================

    def run(
        self,
        instruction: str,
        tool_catalog: Optional[List[ToolDefinition]] = None,
        context: Optional[ToolContext] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LoopResult:
        """
        Run the loop for one instruction.

        Args:
            instruction: User instruction for this run
            tool_catalog: Definitions shown to the model (None = full registry)
            context: Invocation context passed to every tool
            cancel_token: Checked before every model call and tool call

        Returns:
            LoopResult whose ``final_response`` is never empty

        Raises:
            ModelInvocationError: transport failure talking to the model
        """
        catalog = self.tool_registry.list() if tool_catalog is None else tool_catalog
        context = context or ToolContext()
        session = current_session_id()

        state = {
            "rounds": [],
            "tool_rounds": 0,
            "tools_called": [],
            "total_tokens": TokenUsage(),
            "start_time": time.time(),
            "last_text": "",
        }
        messages: List[Dict] = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": instruction},
        ]

        while True:
            cancelled = self._check_cancellation(cancel_token, state)
            if cancelled:
                return cancelled

            round_start = time.perf_counter()
            response: LLMResponse = self.llm_client.complete_with_tools(
                messages=messages, tools=catalog, max_tokens=self.max_tokens,
            )
            usage = TokenUsage(response.usage.input_tokens, response.usage.output_tokens)
            state["total_tokens"] = state["total_tokens"].add(usage)
            if response.content and response.content.strip():
                state["last_text"] = response.content

            current = Round(
                number=len(state["rounds"]) + 1,
                timestamp=datetime.now(timezone.utc).isoformat(),
                llm_text=response.content or "",
                tokens_used=usage,
            )
            state["rounds"].append(current)

            if not response.tool_calls:
                current.duration_ms = round((time.perf_counter() - round_start) * 1000)
                logger.info(
                    "[%s] Completed after %d tool round(s), %d tokens",
                    session, state["tool_rounds"], state["total_tokens"].total,
                )
                return self._build_result("completed", state, self._best_text(state))

            if state["tool_rounds"] >= self.max_rounds:
                current.duration_ms = round((time.perf_counter() - round_start) * 1000)
                logger.warning(
                    "[%s] Tool round cap (%d) reached; returning best available text",
                    session, self.max_rounds,
                )
                return self._build_result("max_rounds", state, self._best_text(state))

            logger.info(
                "[%s] Round %d: %d tool call(s): %s",
                session, current.number, len(response.tool_calls),
                ", ".join(c.name for c in response.tool_calls),
            )
            messages.append(assistant_message(response))
            for call in response.tool_calls:
                cancelled = self._check_cancellation(cancel_token, state)
                if cancelled:
                    return cancelled
                record = self._invoke_tool(call, context, cancel_token)
                current.tool_calls.append(record)
                state["tools_called"].append(call.name)
                messages.append(tool_message(call.id, json.dumps(record.result, ensure_ascii=False, default=str)))

            state["tool_rounds"] += 1
            current.duration_ms = round((time.perf_counter() - round_start) * 1000)
            logger.debug("[%s] Round %d took %dms", session, current.number, current.duration_ms)
