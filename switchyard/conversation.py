"""Conversation state owned by a single planner, and history truncation."""

import enum
from dataclasses import dataclass, field

from .budget import estimate_tokens
from .report import AgentError

SPLICE_MARKER = (
    "[context truncated: older tool calls and results were removed to fit the context window]"
)
COMPACT_THRESHOLD = 1000


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InvalidTransitionError(AgentError):
    kind = "invalid_transition"


@dataclass
class ConversationState:
    """Messages and bookkeeping for one task. Never shared between planners."""

    messages: list[dict] = field(default_factory=list)
    cumulative_prompt_tokens: int = 0
    turn_count: int = 0
    status: ConversationStatus = ConversationStatus.ACTIVE
    error_kind: str | None = None
    error_message: str | None = None
    usage: dict = field(
        default_factory=lambda: {"prompt_tokens": 0, "completion_tokens": 0}
    )

    @property
    def is_active(self) -> bool:
        return self.status is ConversationStatus.ACTIVE

    def append(self, message: dict) -> None:
        if not self.is_active:
            raise InvalidTransitionError(
                f"cannot append to a {self.status.value} conversation"
            )
        self.messages.append(message)

    def replace_messages(self, messages: list[dict]) -> None:
        if not self.is_active:
            raise InvalidTransitionError(
                f"cannot rewrite a {self.status.value} conversation"
            )
        self.messages[:] = messages

    def next_turn(self) -> int:
        self.turn_count += 1
        return self.turn_count

    def record_usage(self, usage: dict) -> None:
        for key in ("prompt_tokens", "completion_tokens"):
            value = usage.get(key)
            if isinstance(value, int):
                self.usage[key] = self.usage.get(key, 0) + value

    def finish(
        self,
        status: ConversationStatus,
        *,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Move to a terminal status. Only active conversations can finish."""
        if status is ConversationStatus.ACTIVE:
            raise InvalidTransitionError("active is not a terminal status")
        if not self.is_active:
            raise InvalidTransitionError(
                f"conversation already {self.status.value}, cannot become {status.value}"
            )
        self.status = status
        self.error_kind = error_kind
        self.error_message = error_message

    def last_assistant_text(self) -> str | None:
        for m in reversed(self.messages):
            if m.get("role") == "assistant" and m.get("content"):
                return m["content"]
        return None


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


def group_into_turns(messages: list[dict]) -> list[list[dict]]:
    """Group messages into atomic turns.

    A turn is one of:
    - A single message (system, user, or assistant without tool_calls)
    - An assistant message with tool_calls + all its matching tool results
    """
    turns = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        tool_calls = msg.get("tool_calls")
        if msg.get("role") == "assistant" and tool_calls:
            turn = [msg]
            tc_ids = {tc["id"] for tc in tool_calls}
            j = i + 1
            while j < len(messages):
                next_msg = messages[j]
                if (
                    next_msg.get("role") == "tool"
                    and next_msg.get("tool_call_id") in tc_ids
                ):
                    turn.append(next_msg)
                    j += 1
                else:
                    break
            turns.append(turn)
            i = j
        else:
            turns.append([msg])
            i += 1
    return turns


def compact_messages(messages: list[dict]) -> list[dict]:
    """Shorten large tool results outside the two most recent turns.

    Returns a new list; the input messages are not modified.
    """
    turns = group_into_turns(messages)
    cutoff = max(0, len(turns) - 2)
    result = []
    for index, turn in enumerate(turns):
        for msg in turn:
            content = msg.get("content")
            if (
                index < cutoff
                and msg.get("role") == "tool"
                and isinstance(content, str)
                and len(content) > COMPACT_THRESHOLD
            ):
                msg = {
                    **msg,
                    "content": f"[compacted, originally {len(content)} chars]",
                }
            result.append(msg)
    return result


def _leading_count(turns: list[list[dict]]) -> int:
    count = 0
    for turn in turns:
        if _is_marker(turn):
            break
        if turn[0].get("role") in ("system", "user"):
            count += 1
        else:
            break
    return count


def _is_marker(turn: list[dict]) -> bool:
    return len(turn) == 1 and turn[0].get("content") == SPLICE_MARKER


def drop_oldest_turn(messages: list[dict]) -> list[dict] | None:
    """Drop the oldest turn between the leading block and the most recent turn.

    The leading system/user block and the final turn are always kept. A
    splice marker stands in for what was removed. Returns None when nothing
    is left to drop.
    """
    turns = group_into_turns(messages)
    leading = _leading_count(turns)
    middle = turns[leading:-1] if len(turns) > leading else []
    if middle and _is_marker(middle[0]):
        dropped = middle[1:]
    else:
        dropped = middle
    if not dropped:
        return None

    kept = turns[:leading] + [[{"role": "user", "content": SPLICE_MARKER}]]
    kept += dropped[1:]
    kept.append(turns[-1])
    return [msg for turn in kept for msg in turn]


def truncate_history(
    messages: list[dict], tools: list | None, target_tokens: int
) -> tuple[list[dict], list[str]]:
    """Shrink the history until it is estimated to fit target_tokens.

    Large older tool results are compacted first, then whole turns are dropped
    oldest-first. Returns the new messages and the strategies that changed
    anything.
    """
    strategies = []
    before = estimate_tokens(messages, tools)
    result = compact_messages(messages)
    if estimate_tokens(result, tools) < before:
        strategies.append("compact_messages")

    dropped = False
    while estimate_tokens(result, tools) > target_tokens:
        shorter = drop_oldest_turn(result)
        if shorter is None:
            break
        result = shorter
        dropped = True
    if dropped:
        strategies.append("drop_oldest_turns")
    return result, strategies
