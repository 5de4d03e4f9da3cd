"""Public library API for switchyard: Session class and Result dataclass."""

import asyncio
import copy
from dataclasses import dataclass

from .conversation import ConversationStatus
from .planner import PlannerAborted
from .report import ReportCollector


@dataclass
class Result:
    """Result of a session run."""

    answer: str | None
    status: str
    turns: int
    messages: list[dict]
    report: dict | None
    error_kind: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == ConversationStatus.COMPLETED.value

    @property
    def exhausted(self) -> bool:
        return self.error_kind == PlannerAborted.ITERATION_CAP


class Session:
    """Programmatic interface to the switchyard planner.

    Stores configuration as plain attributes. The provider registry is built
    once, on first use, and shared by every run of the session, so several
    arun() calls can be gathered on one event loop. Each run gets its own
    conversation.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str | None = None,
        providers: dict | None = None,
        preferences: dict | None = None,
        max_turns: int = 100,
        max_output_tokens: int = 32768,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        stream: bool = True,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        executor=None,
        no_tools: bool = False,
        tool_concurrency: int = 1,
        tool_timeout: float = 120.0,
        retry_attempts: int = 4,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        verbose: bool = False,
        on_delta=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.providers = providers or {}
        self.preferences = preferences or {}
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.stream = stream
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.executor = executor
        self.no_tools = no_tools
        self.tool_concurrency = tool_concurrency
        self.tool_timeout = tool_timeout
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.verbose = verbose
        self.on_delta = on_delta

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._registry = None
        self._retry_policy = None
        self._system_content: str | None = None

    @property
    def registry(self):
        self._setup()
        return self._registry

    @property
    def system_content(self) -> str | None:
        self._setup()
        return self._system_content

    def _setup(self) -> None:
        """Perform one-time setup: build the registry, executor and system prompt."""
        if self._setup_done:
            return

        from .agent import build_system_prompt, provider_configs_with_override
        from .registry import build_registry
        from .retry import RetryPolicy
        from .tools import builtin_executor

        providers = provider_configs_with_override(
            self.providers, self.preferences, self.provider, self.max_context_tokens
        )
        self._registry = build_registry(
            providers,
            self.preferences,
            selector=self.provider,
            verbose=self.verbose,
        )
        self._retry_policy = RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )
        if self.executor is None and not self.no_tools:
            self.executor = builtin_executor(self.base_dir)
        self._system_content = build_system_prompt(
            system_prompt=self.system_prompt,
            no_system_prompt=self.no_system_prompt,
        )
        self._setup_done = True

    def planner(self, *, report=None, cancel_event=None):
        """Create a fresh Planner bound to this session's registry."""
        self._setup()

        from .planner import Planner

        return Planner(
            self._registry,
            None if self.no_tools else self.executor,
            max_turns=self.max_turns,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            seed=self.seed,
            stream=self.stream,
            retry_policy=self._retry_policy,
            tool_timeout=self.tool_timeout,
            tool_concurrency=self.tool_concurrency,
            report=report,
            verbose=self.verbose,
            on_delta=self.on_delta,
            cancel_event=cancel_event,
        )

    async def arun(self, task: str, *, report: bool = False, cancel_event=None) -> Result:
        """Run one task to completion on the current event loop."""
        from .agent import exit_code_for

        collector = ReportCollector() if report else None
        planner = self.planner(report=collector, cancel_event=cancel_event)
        outcome = await planner.run(task, system_prompt=self.system_content)

        report_dict = None
        if collector:
            primary = self._registry.primary()
            report_dict = collector.build_report(
                task=task,
                model=primary.model_id,
                provider=primary.provider_id,
                settings={
                    "max_turns": self.max_turns,
                    "max_output_tokens": self.max_output_tokens,
                    "max_context_tokens": self.max_context_tokens,
                    "temperature": self.temperature,
                    "top_p": self.top_p,
                    "seed": self.seed,
                    "preferences": self._registry.preferences.ids(),
                },
                outcome=outcome.status.value,
                answer=outcome.answer,
                exit_code=exit_code_for(outcome),
                turns=outcome.turns,
                error_kind=outcome.error_kind,
                error_message=outcome.error_message,
                usage=outcome.state.usage,
            )

        return Result(
            answer=outcome.answer,
            status=outcome.status.value,
            turns=outcome.turns,
            messages=copy.deepcopy(outcome.state.messages),
            report=report_dict,
            error_kind=outcome.error_kind,
            error_message=outcome.error_message,
        )

    def run(self, task: str, *, report: bool = False) -> Result:
        """Single-shot: run a task with fresh state. Each call is independent."""
        return asyncio.run(self.arun(task, report=report))
