"""Prompt cache hints.

Stable request prefixes (system prompt, tool definitions, and the part of the
history already sent on a previous turn) are marked as cacheable. Hints are
carried next to the messages, never inside them, so a provider that ignores
them sends exactly what it would have sent without them.
"""

import enum
from dataclasses import dataclass, replace

CACHE_CONTROL = {"type": "ephemeral"}


class CacheScope(str, enum.Enum):
    SYSTEM_PROMPT = "system-prompt"
    TOOL_DEFINITIONS = "tool-definitions"
    HISTORY_PREFIX = "history-prefix"


@dataclass(frozen=True)
class CacheSegment:
    """Points at a message of the outgoing request by index; holds no content."""

    scope: CacheScope
    message_index: int | None = None


def plan_cache_segments(
    messages: list, tools: list | None = None, frozen_prefix: int | None = None
) -> tuple[CacheSegment, ...]:
    """Pick the cacheable prefix segments of a request.

    frozen_prefix is the number of leading messages that were already sent
    unchanged on a previous turn of the same conversation.
    """
    segments = []
    has_system = bool(messages) and messages[0].get("role") == "system"
    if has_system:
        segments.append(CacheSegment(CacheScope.SYSTEM_PROMPT, 0))
    if tools:
        segments.append(CacheSegment(CacheScope.TOOL_DEFINITIONS))
    if frozen_prefix:
        last = min(frozen_prefix, len(messages)) - 1
        if last > (0 if has_system else -1):
            segments.append(CacheSegment(CacheScope.HISTORY_PREFIX, last))
    return tuple(segments)


def annotate(request, descriptor, *, frozen_prefix: int | None = None):
    """Return the request with cache hints attached when the model supports caching."""
    if not descriptor.supports_cache:
        return request
    hints = plan_cache_segments(request.messages, request.tools, frozen_prefix)
    return replace(request, cache_hints=hints)


def _mark_message(message: dict) -> dict:
    content = message.get("content")
    if isinstance(content, str) and content:
        blocks = [{"type": "text", "text": content, "cache_control": CACHE_CONTROL}]
    elif isinstance(content, list) and content:
        blocks = [dict(block) for block in content]
        blocks[-1]["cache_control"] = CACHE_CONTROL
    else:
        return message
    return {**message, "content": blocks}


def render_cache_markers(
    messages: list, tools: list | None, hints
) -> tuple[list, list | None]:
    """Render hints as vendor cache_control markers on copies of messages and tools."""
    out_messages = list(messages)
    out_tools = list(tools) if tools else tools
    for segment in hints:
        if segment.scope is CacheScope.TOOL_DEFINITIONS:
            if out_tools:
                out_tools[-1] = {**out_tools[-1], "cache_control": CACHE_CONTROL}
            continue
        index = segment.message_index
        if index is not None and 0 <= index < len(out_messages):
            out_messages[index] = _mark_message(out_messages[index])
    return out_messages, out_tools
