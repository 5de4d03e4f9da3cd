"""Command-line entry point: parse flags, layer config, run one task."""

import argparse
import asyncio
import signal
import sys
from datetime import datetime
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from .conversation import ConversationStatus
from .planner import PlannerAborted
from .providers import FAMILY_KINDS
from .registry import parse_selector
from .report import AgentError, ConfigError, ReportCollector

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ITERATION_CAP = 2
EXIT_CANCELLED = 130


def exit_code_for(outcome) -> int:
    """Map a planner outcome onto the process exit code."""
    if outcome.status is ConversationStatus.COMPLETED:
        return EXIT_OK
    if outcome.status is ConversationStatus.CANCELLED:
        return EXIT_CANCELLED
    if outcome.error_kind == PlannerAborted.ITERATION_CAP:
        return EXIT_ITERATION_CAP
    return EXIT_FAILED


def build_system_prompt(
    *, system_prompt: str | None = None, no_system_prompt: bool = False
) -> str | None:
    """Return the system message content, or None when it is disabled."""
    if no_system_prompt:
        return None
    if system_prompt:
        return system_prompt
    content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    now = datetime.now().astimezone()
    return content + f"\n\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"


def _primary_provider_id(providers: dict, preferences: dict, selector: str | None) -> str | None:
    if selector:
        return parse_selector(selector)[0]
    order = (preferences or {}).get("order")
    if order:
        first = order[0]
        return first if isinstance(first, str) else first["provider"]
    return next(iter(providers), None)


def provider_configs_with_override(
    providers: dict,
    preferences: dict,
    selector: str | None,
    max_context_tokens: int | None,
) -> dict:
    """Copy the provider tables, applying a context-window override to the primary provider.

    Unknown selector prefixes are rejected here, before any provider exists.
    """
    providers = {pid: dict(cfg) for pid, cfg in (providers or {}).items()}
    primary = _primary_provider_id(providers, preferences, selector)
    if primary is None:
        raise ConfigError(
            "no provider selected: pass --provider or configure [providers.<id>] tables"
        )
    if primary not in providers and primary not in FAMILY_KINDS:
        known = sorted(set(FAMILY_KINDS) | set(providers))
        raise ConfigError(
            f"unknown provider {primary!r} (expected one of: {', '.join(known)})"
        )
    if max_context_tokens is not None:
        providers.setdefault(primary, {"family": primary})
        providers[primary]["max_context_tokens"] = max_context_tokens
    return providers


def build_parser():
    """Build and return the argument parser.

    Flags that a config file may also set default to _UNSET so that
    apply_config_to_args() can tell "not given" from "given".
    """
    parser = argparse.ArgumentParser(
        prog="switchyard",
        usage="%(prog)s [options] <task>",
        description="An autonomous task agent that routes across multiple LLM providers.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "task", nargs="?", default=None, help="The task for the agent."
    )
    parser.add_argument(
        "--provider",
        default=_UNSET,
        metavar="PROVIDER[.MODEL]",
        help="Primary provider id or family, optionally with a model "
        "(e.g. anthropic, openrouter.anthropic/claude-3.5-sonnet@Anthropic).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Model for the selected provider (same as PROVIDER.MODEL).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Override the primary provider's context window.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 32768).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: provider default).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=_UNSET,
        help="Random seed for reproducible outputs (optional, model support varies).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to include.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations (default: 100).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Base directory for file tools and project config (default: current directory).",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        default=_UNSET,
        help="Request whole responses instead of streaming them.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write <base-dir>/switchyard.toml instead of the global file.",
    )
    return parser


def _handle_init_config(args) -> None:
    if args.project:
        dest = Path(args.base_dir).resolve() / "switchyard.toml"
    else:
        dest = global_config_dir() / "config.toml"
    if dest.exists():
        fmt.error(f"config file already exists: {dest}")
        sys.exit(EXIT_FAILED)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(generate_config(project=args.project), encoding="utf-8")
    print(dest)
    sys.exit(EXIT_OK)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("switchyard")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(EXIT_OK)

    if args.init_config:
        _handle_init_config(args)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(f"failed: {e.kind}: {e}")
        sys.exit(EXIT_FAILED)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if args.task is None:
        parser.error("task is required")
    fmt.init(color=args.color, no_color=args.no_color)

    if (
        args.max_context_tokens is not None
        and args.max_output_tokens > args.max_context_tokens
    ):
        parser.error(
            "--max-output-tokens must be <= --max-context-tokens when both are specified."
        )

    selector = args.provider
    if args.model:
        if selector is None:
            parser.error("--model requires --provider")
        provider_id, selector_model = parse_selector(selector)
        if selector_model is not None:
            parser.error("--model conflicts with the model given in --provider")
        selector = f"{provider_id}.{args.model}"
    args.selector = selector

    report = ReportCollector() if args.report else None

    def _write_report(
        outcome,
        *,
        answer=None,
        exit_code=0,
        turns=0,
        error_kind=None,
        error_message=None,
        usage=None,
        registry=None,
    ):
        if not report:
            return
        primary = registry.primary() if registry is not None else None
        report.finalize(
            task=args.task or "",
            model=primary.model_id if primary else "unknown",
            provider=primary.provider_id if primary else (args.selector or "unknown"),
            settings={
                "temperature": args.temperature,
                "top_p": args.top_p,
                "seed": args.seed,
                "max_turns": args.max_turns,
                "max_output_tokens": args.max_output_tokens,
                "max_context_tokens": args.max_context_tokens,
                "preferences": registry.preferences.ids() if registry else [],
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=turns,
            error_kind=error_kind,
            error_message=error_message,
            usage=usage,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(f"{ConversationStatus.FAILED.value}: {e.kind}: {e}")
        _write_report(
            ConversationStatus.FAILED.value,
            exit_code=EXIT_FAILED,
            error_kind=e.kind,
            error_message=str(e),
        )
        sys.exit(EXIT_FAILED)
    sys.exit(exit_code)


def _run_main(args, report, _write_report) -> int:
    from .session import Session

    session = Session(
        base_dir=args.base_dir,
        provider=args.selector,
        providers=args.providers,
        preferences=args.preferences,
        max_turns=args.max_turns,
        max_output_tokens=args.max_output_tokens,
        max_context_tokens=args.max_context_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        seed=args.seed,
        stream=not args.no_stream,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
        tool_concurrency=args.tool_concurrency,
        tool_timeout=args.tool_timeout,
        retry_attempts=args.retry_attempts,
        retry_base_delay=args.retry_base_delay,
        retry_max_delay=args.retry_max_delay,
        verbose=args.verbose,
    )
    registry = session.registry
    if args.verbose:
        for entry in registry.preferences:
            provider = registry.get(entry.provider_id)
            descriptor = provider.describe()
            fmt.model_info(
                f"{entry.provider_id}: {descriptor.provider_family}/{descriptor.model_id} "
                f"(context={descriptor.context_window_tokens or 'unknown'}, "
                f"cache={descriptor.supports_cache}, fallback={entry.allow_fallback})"
            )

    outcome = asyncio.run(_drive(session, args.task, report))
    exit_code = exit_code_for(outcome)

    if outcome.answer is not None and outcome.status is ConversationStatus.COMPLETED:
        print(outcome.answer)
    elif outcome.status is not ConversationStatus.COMPLETED:
        fmt.error(
            f"{outcome.status.value}: {outcome.error_kind}: {outcome.error_message}"
        )
    _write_report(
        outcome.status.value,
        answer=outcome.answer,
        exit_code=exit_code,
        turns=outcome.turns,
        error_kind=outcome.error_kind,
        error_message=outcome.error_message,
        usage=outcome.state.usage,
        registry=registry,
    )
    return exit_code


async def _drive(session, task, report):
    """Run the planner with Ctrl-C mapped to cooperative cancellation."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on this platform; Ctrl-C raises KeyboardInterrupt.
        installed = False
    try:
        planner = session.planner(report=report, cancel_event=cancel_event)
        return await planner.run(task, system_prompt=session.system_content)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
