"""Token accounting and output-budget resolution.

Nothing in here performs I/O; every function returns the same value for the
same inputs.
"""

import json

import tiktoken

from .providers import ContextOverflowError, ModelDescriptor

DEFAULT_CONTEXT_WINDOW = 128_000
DEFAULT_SAFETY_MARGIN = 2_000

_encoder = tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        if isinstance(content, list):
            content = "".join(
                block.get("text", "") for block in content if isinstance(block, dict)
            )
        for tc in m.get("tool_calls", None) or []:
            fn = tc.get("function", {})
            content += (fn.get("name", "") or "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def context_ceiling(descriptor: ModelDescriptor, override: int | None) -> int:
    """The context window a request is planned against."""
    if override is not None:
        return override
    if descriptor.context_window_tokens is not None:
        return descriptor.context_window_tokens
    return DEFAULT_CONTEXT_WINDOW


def resolve_max_tokens(
    descriptor: ModelDescriptor,
    override: int | None,
    current_prompt_tokens: int,
    safety_margin: int = DEFAULT_SAFETY_MARGIN,
) -> int:
    """Return the output budget left after the prompt and safety margin.

    Raises ContextOverflowError instead of ever returning zero or less.
    """
    if current_prompt_tokens < 0:
        raise ValueError(f"prompt token count cannot be negative: {current_prompt_tokens}")
    ceiling = context_ceiling(descriptor, override)
    available = ceiling - current_prompt_tokens - safety_margin
    if available <= 0:
        raise ContextOverflowError(
            f"prompt of ~{current_prompt_tokens} tokens leaves no room for output "
            f"in a {ceiling}-token window (safety margin {safety_margin})"
        )
    return available


def requested_output_tokens(
    descriptor: ModelDescriptor,
    override: int | None,
    current_prompt_tokens: int,
    max_output_tokens: int,
    safety_margin: int = DEFAULT_SAFETY_MARGIN,
) -> int:
    """Clamp the configured output size to what the window and model allow."""
    available = resolve_max_tokens(
        descriptor, override, current_prompt_tokens, safety_margin
    )
    requested = min(available, max_output_tokens)
    if descriptor.max_output_tokens is not None:
        requested = min(requested, descriptor.max_output_tokens)
    return requested
