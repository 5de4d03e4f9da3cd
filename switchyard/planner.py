"""The agent loop.

One Planner drives one conversation: prompt the model, run whatever tools it
asks for, feed the results back, and repeat until the model answers without
tool calls or something terminal happens (iteration cap, fatal error,
cancellation). Every network call and tool run is awaited through a
cancellation-aware wrapper, so cancel() takes effect at the next suspension
point.
"""

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass, field

from . import fmt
from .budget import (
    DEFAULT_SAFETY_MARGIN,
    context_ceiling,
    estimate_tokens,
    requested_output_tokens,
)
from .cache import annotate
from .conversation import ConversationState, ConversationStatus, truncate_history
from .providers import CompletionRequest, ContextOverflowError, RawToolCall
from .report import AgentError
from .retry import DispatchStep, FallbackController
from .tools import ToolCall, ToolExecutionError, ToolResult

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_TOOL_FAILURES = 3
MAX_CORRECTIVE_ATTEMPTS = 2
MIN_OUTPUT_TOKENS = 256
MAX_ARG_LOG = 500
DEFAULT_TOOL_TIMEOUT = 120.0

CONTINUE_NUDGE = (
    "Your response was cut off. Please use the provided tools to complete "
    "the task step by step."
)


class PlannerState(str, enum.Enum):
    IDLE = "idle"
    PROMPTING = "prompting"
    AWAITING_RESPONSE = "awaiting-response"
    PARSING_TOOL_CALLS = "parsing-tool-calls"
    EXECUTING_TOOLS = "executing-tools"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlannerAborted(AgentError):
    ITERATION_CAP = "iteration-cap-exceeded"
    CANCELLED = "cancelled"

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason
        self.kind = reason


class MalformedToolCallError(AgentError):
    kind = "malformed_tool_call"

    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems))
        self.problems = problems


@dataclass
class PlannerOutcome:
    status: ConversationStatus
    answer: str | None
    turns: int
    error_kind: str | None = None
    error_message: str | None = None
    state: ConversationState | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status is ConversationStatus.COMPLETED


def parse_tool_calls(raw_calls: list[RawToolCall], turn: int = 0) -> list[ToolCall]:
    """Turn raw tool calls into ToolCalls with decoded arguments.

    Calls without an id get a synthetic one. Raises MalformedToolCallError
    listing every problem if any call lacks a name or carries arguments that
    are not a JSON object.
    """
    calls = []
    problems = []
    for i, raw in enumerate(raw_calls):
        call_id = raw.id or f"call_{turn}_{i}"
        if not raw.name:
            problems.append(f"tool call #{i + 1} has no function name")
            continue
        text = raw.arguments if raw.arguments else "{}"
        try:
            arguments = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            problems.append(f"invalid JSON in arguments for {raw.name!r}: {e}")
            continue
        if not isinstance(arguments, dict):
            problems.append(
                f"arguments for {raw.name!r} must be a JSON object, "
                f"got {type(arguments).__name__}"
            )
            continue
        calls.append(ToolCall(id=call_id, name=raw.name, arguments=arguments))
    if problems:
        raise MalformedToolCallError(problems)
    return calls


def _canonical_error(error: str) -> str:
    """Extract a stable error fingerprint for repeat detection."""
    return error.split("\n", 1)[0]


class Planner:
    def __init__(
        self,
        registry,
        executor=None,
        *,
        tools: list | None = None,
        max_turns: int = 100,
        max_output_tokens: int = 32768,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        stream: bool = False,
        safety_margin: int = DEFAULT_SAFETY_MARGIN,
        retry_policy=None,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT,
        tool_concurrency: int = 1,
        max_tool_failures: int = MAX_CONSECUTIVE_TOOL_FAILURES,
        preferences=None,
        cache_history: bool = True,
        report=None,
        verbose: bool = False,
        sleep=asyncio.sleep,
        on_delta=None,
        cancel_event: asyncio.Event | None = None,
    ):
        if max_turns < 1:
            raise ValueError(f"max_turns must be at least 1, got {max_turns}")
        if tool_concurrency < 1:
            raise ValueError(f"tool_concurrency must be at least 1, got {tool_concurrency}")
        self.registry = registry
        self.executor = executor
        if tools is None and executor is not None:
            tools = executor.schemas()
        self.tools = tools or None
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.stream = stream
        self.safety_margin = safety_margin
        self.tool_timeout = tool_timeout
        self.tool_concurrency = tool_concurrency
        self.max_tool_failures = max_tool_failures
        self.preferences = preferences or registry.preferences
        self.cache_history = cache_history
        self.report = report
        self.verbose = verbose
        self.on_delta = on_delta
        self.controller = FallbackController(
            registry, retry_policy, sleep=sleep, report=report, verbose=verbose
        )

        self.state = ConversationState()
        self.phase = PlannerState.IDLE
        self._cancel = cancel_event or asyncio.Event()
        self._frozen_prefix: int | None = None
        self._consecutive_errors: dict[str, tuple[str, int]] = {}
        self._consecutive_failures = 0
        self._malformed_streak = 0

    def cancel(self) -> None:
        """Request cancellation; honored at the next suspension point."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # -- Public entry point ---------------------------------------------------

    async def run(self, task: str | None = None, *, system_prompt: str | None = None) -> PlannerOutcome:
        """Drive the conversation to a terminal status and return the outcome.

        task and system_prompt seed an empty conversation; callers that have
        already filled planner.state.messages may omit both.
        """
        if self.phase is not PlannerState.IDLE:
            raise AgentError(f"planner already ran (state: {self.phase.value})")
        if system_prompt:
            self.state.append({"role": "system", "content": system_prompt})
        if task is not None:
            self.state.append({"role": "user", "content": task})
        if not self.state.messages:
            raise AgentError("nothing to do: no task and no messages")

        try:
            answer = await self._loop()
        except PlannerAborted as e:
            if e.reason == PlannerAborted.CANCELLED:
                return self._finish(ConversationStatus.CANCELLED, e)
            return self._finish(ConversationStatus.FAILED, e)
        except asyncio.CancelledError:
            self._finish(
                ConversationStatus.CANCELLED,
                PlannerAborted(PlannerAborted.CANCELLED, "task was cancelled"),
            )
            raise
        except AgentError as e:
            return self._finish(ConversationStatus.FAILED, e)

        self.phase = PlannerState.COMPLETED
        self.state.finish(ConversationStatus.COMPLETED)
        if self.verbose:
            fmt.completion(self.state.turn_count, "completed")
        return PlannerOutcome(
            status=ConversationStatus.COMPLETED,
            answer=answer,
            turns=self.state.turn_count,
            state=self.state,
        )

    def _finish(self, status: ConversationStatus, error: AgentError) -> PlannerOutcome:
        self.phase = (
            PlannerState.CANCELLED
            if status is ConversationStatus.CANCELLED
            else PlannerState.FAILED
        )
        kind = getattr(error, "kind", "agent_error")
        logger.debug("conversation %s: %s: %s", status.value, kind, error)
        self.state.finish(status, error_kind=kind, error_message=str(error))
        if self.verbose:
            fmt.completion(self.state.turn_count, status.value)
        return PlannerOutcome(
            status=status,
            answer=self.state.last_assistant_text(),
            turns=self.state.turn_count,
            error_kind=kind,
            error_message=str(error),
            state=self.state,
        )

    # -- Loop -----------------------------------------------------------------

    async def _loop(self) -> str:
        while True:
            self._check_cancelled()
            if self.state.turn_count >= self.max_turns:
                raise PlannerAborted(
                    PlannerAborted.ITERATION_CAP,
                    f"reached the limit of {self.max_turns} turns without finishing",
                )
            turn = self.state.next_turn()
            self.phase = PlannerState.PROMPTING
            response = await self._prompt(turn)

            self.phase = PlannerState.PARSING_TOOL_CALLS
            if response.content and self.verbose and (
                response.tool_calls or response.finish_reason == "length"
            ):
                fmt.assistant_text(response.content)

            if not response.tool_calls:
                self.state.append({"role": "assistant", "content": response.content or ""})
                if response.finish_reason == "length":
                    if self.report:
                        self.report.record_truncated_response(turn)
                    if self.verbose:
                        fmt.info(
                            "Response truncated (finish_reason=length), prompting continuation."
                        )
                    self.state.append({"role": "user", "content": CONTINUE_NUDGE})
                    continue
                return response.content or ""

            try:
                calls = parse_tool_calls(response.tool_calls, turn)
            except MalformedToolCallError as e:
                self._handle_malformed(turn, response, e)
                continue
            self._malformed_streak = 0

            self.state.append(_assistant_message(response.content, calls))
            self.phase = PlannerState.EXECUTING_TOOLS
            results = await self._run_tools(calls, turn)
            self._after_tools(turn, calls, results)

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise PlannerAborted(PlannerAborted.CANCELLED, "task was cancelled")

    async def _await_cancellable(self, coro):
        """Await coro unless cancellation fires first, in which case it is cancelled."""
        task = asyncio.ensure_future(coro)
        if self._cancel.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise PlannerAborted(PlannerAborted.CANCELLED, "task was cancelled")
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled() and self._cancel.is_set():
            raise PlannerAborted(PlannerAborted.CANCELLED, "task was cancelled")
        return task.result()

    # -- Prompting ------------------------------------------------------------

    def _prepare(self, provider) -> CompletionRequest:
        """Build this step's request for one provider, budgeted against its window."""
        descriptor = provider.describe()
        try:
            max_tokens = requested_output_tokens(
                descriptor,
                provider.context_override,
                self.state.cumulative_prompt_tokens,
                self.max_output_tokens,
                self.safety_margin,
            )
        except ContextOverflowError as e:
            e.provider_id = provider.provider_id
            raise
        if self.verbose and max_tokens != self.max_output_tokens:
            fmt.info(
                f"Output tokens clamped for {provider.provider_id}: "
                f"{self.max_output_tokens} -> {max_tokens} "
                f"(prompt=~{self.state.cumulative_prompt_tokens})"
            )
        request = CompletionRequest(
            messages=list(self.state.messages),
            max_output_tokens=max_tokens,
            tools=self.tools,
            temperature=self.temperature,
            top_p=self.top_p,
            seed=self.seed,
            stream=self.stream,
        )
        frozen = self._frozen_prefix if self.cache_history else None
        return annotate(request, descriptor, frozen_prefix=frozen)

    async def _prompt(self, turn: int):
        """One request/response exchange, truncating history once on overflow."""
        truncated = False
        step = DispatchStep()
        while True:
            token_est = estimate_tokens(self.state.messages, self.tools)
            self.state.cumulative_prompt_tokens = token_est
            if self.verbose:
                fmt.turn_header(turn, self.max_turns, token_est)
            sent = len(self.state.messages)
            self.phase = PlannerState.AWAITING_RESPONSE
            try:
                response = await self._await_cancellable(
                    self.controller.dispatch(
                        self._prepare,
                        preferences=self.preferences,
                        on_delta=self.on_delta,
                        turn=turn,
                        token_est=token_est,
                        step=step,
                    )
                )
            except ContextOverflowError as e:
                if truncated:
                    raise ContextOverflowError(
                        f"context window exceeded even after truncation: {e}",
                        provider_id=e.provider_id,
                    ) from e
                truncated = True
                self._truncate(turn, e)
                continue
            self.state.record_usage(response.usage)
            self._frozen_prefix = sent
            return response

    def _truncate(self, turn: int, error: ContextOverflowError) -> None:
        provider = (
            self.registry.get(error.provider_id)
            if error.provider_id in self.registry.ids()
            else self.registry.get(self.preferences.entries[0].provider_id)
        )
        ceiling = context_ceiling(provider.describe(), provider.context_override)
        before = estimate_tokens(self.state.messages, self.tools)
        target = ceiling - self.safety_margin - MIN_OUTPUT_TOKENS
        if before <= target:
            # The backend counts more tokens than our estimate does.
            target = before * 3 // 4

        if self.verbose:
            fmt.warning("context window exceeded, truncating history...")
        messages, strategies = truncate_history(self.state.messages, self.tools, target)
        if not strategies:
            raise error
        self.state.replace_messages(messages)
        self._frozen_prefix = None
        after = estimate_tokens(messages, self.tools)
        if self.report:
            for strategy in strategies:
                self.report.record_compaction(turn, strategy, before, after)
        if self.verbose:
            fmt.context_stats("Context after truncation", after)

    # -- Tool calls -----------------------------------------------------------

    def _handle_malformed(self, turn: int, response, error: MalformedToolCallError) -> None:
        self._malformed_streak += 1
        if self.report:
            self.report.record_malformed_tool_call(turn, str(error))
        if self.verbose:
            fmt.tool_error("(malformed)", str(error))
        self.state.append(
            {"role": "assistant", "content": response.content or "(malformed tool call)"}
        )
        if self._malformed_streak > MAX_CORRECTIVE_ATTEMPTS:
            raise error
        self.state.append(
            {
                "role": "user",
                "content": (
                    "error: your last response contained malformed tool calls and none "
                    "of them were run:\n- "
                    + "\n- ".join(error.problems)
                    + "\nIssue the tool calls again with a function name and JSON object arguments."
                ),
            }
        )

    async def _run_tools(self, calls: list[ToolCall], turn: int) -> list[ToolResult]:
        results: list[ToolResult | None] = [None] * len(calls)
        if self.executor is None:
            return [ToolResult.failure(c, "no tools are available") for c in calls]

        semaphore = asyncio.Semaphore(self.tool_concurrency)

        async def run_one(index: int, call: ToolCall) -> None:
            async with semaphore:
                if self._cancel.is_set():
                    return
                results[index] = await self._execute_one(call, turn)

        tasks = [asyncio.ensure_future(run_one(i, c)) for i, c in enumerate(calls)]
        try:
            await self._await_cancellable(asyncio.gather(*tasks))
            self._check_cancelled()
        except PlannerAborted:
            # Keep whatever finished; the rest were skipped.
            for result in results:
                if result is not None:
                    self.state.append(result.to_message())
            raise
        finally:
            # A fatal tool error leaves siblings running under gather.
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return results

    async def _execute_one(self, call: ToolCall, turn: int) -> ToolResult:
        if self.verbose:
            pretty = json.dumps(call.arguments, indent=2)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(call.name, pretty)

        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.executor.execute(call), timeout=self.tool_timeout
            )
        except asyncio.TimeoutError:
            result = ToolResult.failure(
                call, f"tool {call.name!r} timed out after {self.tool_timeout:g}s"
            )
        except ToolExecutionError as e:
            if e.fatal:
                raise
            result = ToolResult.failure(call, str(e))
        except Exception as e:
            result = ToolResult.failure(call, f"{type(e).__name__}: {e}")
        elapsed = time.monotonic() - t0

        if self.verbose:
            if result.is_error:
                fmt.tool_error(call.name, result.content)
            else:
                fmt.tool_result(call.name, elapsed, result.content[:500])
        if self.report:
            self.report.record_tool_call(
                turn,
                call.name,
                call.arguments,
                not result.is_error,
                elapsed,
                len(result.content),
                error=result.content if result.is_error else None,
            )
        return result

    def _after_tools(self, turn: int, calls: list[ToolCall], results: list[ToolResult]) -> None:
        interventions = []
        for call, result in zip(calls, results):
            self.state.append(result.to_message())
            if not result.is_error:
                self._consecutive_failures = 0
                self._consecutive_errors.pop(call.name, None)
                continue

            self._consecutive_failures += 1
            canonical = _canonical_error(result.content)
            previous, count = self._consecutive_errors.get(call.name, ("", 0))
            count = count + 1 if canonical == previous else 1
            self._consecutive_errors[call.name] = (canonical, count)
            if count == 2:
                interventions.append(
                    f"IMPORTANT: You have called `{call.name}` {count} times with the same error. "
                    f"The error is: {canonical}\n"
                    "Please carefully re-read the error message and fix your tool call. "
                    "If you cannot use this tool correctly, use a different approach."
                )
                if self.report:
                    self.report.record_guardrail(turn, call.name, "nudge")
                if self.verbose:
                    fmt.guardrail(call.name, count, canonical)

        if self._consecutive_failures >= self.max_tool_failures:
            raise ToolExecutionError(
                f"{self._consecutive_failures} consecutive tool calls failed; "
                f"last error: {_canonical_error(results[-1].content)}",
                fatal=True,
            )
        if interventions:
            self.state.append({"role": "user", "content": "\n\n".join(interventions)})
        if self.verbose:
            fmt.context_stats(
                f"Context after turn {turn}",
                estimate_tokens(self.state.messages, self.tools),
            )


def _assistant_message(content: str | None, calls: list[ToolCall]) -> dict:
    return {
        "role": "assistant",
        "content": content,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.arguments),
                },
            }
            for call in calls
        ],
    }
