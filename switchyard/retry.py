"""Retry with backoff against one provider, then fall back along the preference order."""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from . import fmt
from .providers import ContextOverflowError, ProviderError
from .report import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays cannot be negative")
        if self.multiplier < 1:
            raise ConfigError(f"backoff multiplier must be >= 1, got {self.multiplier}")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows a failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


@dataclass
class RetryBudget:
    """Attempts left against one provider within one planner step."""

    attempts_remaining: int
    attempt: int = 0
    next_delay: float = 0.0
    policy: RetryPolicy = field(default_factory=RetryPolicy, repr=False)

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> "RetryBudget":
        return cls(attempts_remaining=policy.max_attempts, policy=policy)

    @property
    def exhausted(self) -> bool:
        return self.attempts_remaining <= 0

    def consume(self) -> int:
        """Spend one attempt and return its 1-based number."""
        if self.exhausted:
            raise RuntimeError("retry budget already exhausted")
        self.attempts_remaining -= 1
        self.attempt += 1
        return self.attempt

    def refund(self) -> None:
        """Give back the last attempt; used when a failure was not the provider's fault."""
        self.attempts_remaining += 1
        self.attempt -= 1

    def backoff(self, retry_after: float | None = None) -> float:
        """Delay before the next attempt; a server-supplied retry-after wins if longer."""
        delay = self.policy.delay_for(self.attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        self.next_delay = delay
        return delay


class FallbackExhaustedError(ProviderError):
    """Every eligible provider failed. Carries the kind of the last failure."""

    def __init__(self, last_error: ProviderError, tried: list[str]):
        super().__init__(
            f"{last_error} (tried: {', '.join(tried)})",
            provider_id=last_error.provider_id,
        )
        self.kind = last_error.kind
        self.last_error = last_error
        self.tried = tried


@dataclass
class DispatchStep:
    """What one planner step has spent so far.

    The planner passes the same DispatchStep back in when it retries a step
    after truncating history, so exhausted providers stay skipped and retry
    budgets are not refilled.
    """

    exhausted: set[str] = field(default_factory=set)
    budgets: dict[str, RetryBudget] = field(default_factory=dict)
    tried: list[str] = field(default_factory=list)


class FallbackController:
    """Dispatches one completion per planner step across the provider preferences.

    Transient and rate-limited failures are retried against the same provider
    until its budget runs out. A provider that is exhausted (or failed
    fatally) hands over to the next untried entry only when its own entry
    allows fallback. Context overflow always propagates straight to the caller.
    """

    def __init__(self, registry, policy=None, *, sleep=asyncio.sleep, report=None, verbose=False):
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.report = report
        self.verbose = verbose
        self._sleep = sleep

    async def dispatch(
        self, prepare, *, preferences=None, on_delta=None, turn=0, token_est=0, step=None
    ):
        """Run one completion.

        prepare(provider) builds the CompletionRequest for that provider, with
        its output budget resolved against that provider's context window.
        Pass the same ``step`` when re-dispatching within one planner step.
        """
        entries = list(preferences if preferences is not None else self.registry.preferences)
        step = step if step is not None else DispatchStep()
        last_error = None

        for index, entry in enumerate(entries):
            if entry.provider_id in step.exhausted:
                continue
            if entry.provider_id not in step.tried:
                step.tried.append(entry.provider_id)
            provider = self.registry.get(entry.provider_id)
            budget = step.budgets.setdefault(
                entry.provider_id, RetryBudget.from_policy(self.policy)
            )
            try:
                return await self._attempt(provider, prepare, budget, on_delta, turn, token_est)
            except ContextOverflowError:
                raise
            except ProviderError as e:
                last_error = e
                step.exhausted.add(entry.provider_id)

            successor = next(
                (n for n in entries[index + 1 :] if n.provider_id not in step.exhausted), None
            )
            if not entry.allow_fallback or successor is None:
                break
            logger.debug(
                "falling back from %s to %s after %s",
                entry.provider_id,
                successor.provider_id,
                last_error.kind,
            )
            if self.report:
                self.report.record_fallback(
                    turn, entry.provider_id, successor.provider_id, last_error.kind
                )
            if self.verbose:
                fmt.fallback_notice(
                    entry.provider_id, successor.provider_id, last_error.kind
                )

        if last_error is None:
            raise ConfigError("no providers available to dispatch to")
        raise FallbackExhaustedError(last_error, list(step.tried)) from last_error

    async def _attempt(self, provider, prepare, budget, on_delta, turn, token_est):
        request = prepare(provider)
        counters = self.registry.counters(provider.provider_id)

        while True:
            attempt = budget.consume()
            t0 = time.monotonic()
            try:
                with counters.track():
                    response = await provider.complete(request, on_delta=on_delta)
            except ProviderError as e:
                elapsed = time.monotonic() - t0
                counters.record_error(e.kind)
                if self.report:
                    self.report.record_llm_call(
                        turn,
                        elapsed,
                        token_est,
                        e.kind,
                        provider=provider.provider_id,
                        is_retry=attempt > 1,
                        retry_reason="backoff" if attempt > 1 else None,
                    )
                if isinstance(e, ContextOverflowError):
                    # Resolved by truncating history, not by retrying.
                    budget.refund()
                if not e.retryable or budget.exhausted:
                    raise
                delay = budget.backoff(getattr(e, "retry_after", None))
                logger.debug(
                    "%s: %s on attempt %d, retrying in %.1fs",
                    provider.provider_id,
                    e.kind,
                    attempt,
                    delay,
                )
                if self.report:
                    self.report.record_retry(
                        turn, provider.provider_id, attempt, e.kind, delay
                    )
                if self.verbose:
                    fmt.retry_notice(provider.provider_id, e.kind, attempt, delay)
                await self._sleep(delay)
                continue

            elapsed = time.monotonic() - t0
            if self.verbose:
                fmt.llm_timing(elapsed, response.finish_reason, provider.provider_id)
            if self.report:
                self.report.record_llm_call(
                    turn,
                    elapsed,
                    token_est,
                    response.finish_reason,
                    provider=provider.provider_id,
                    is_retry=attempt > 1,
                    retry_reason="backoff" if attempt > 1 else None,
                )
            return response
