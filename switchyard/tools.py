"""Tool calls, tool results and the executor boundary the planner talks to.

The planner only knows the ToolExecutor protocol. FunctionToolExecutor adapts
plain callables to it; builtin_executor() provides read-only file tools
confined to a base directory.
"""

import asyncio
import inspect
import json
import os
from dataclasses import dataclass
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Protocol, runtime_checkable

from .report import AgentError

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100


class ToolExecutionError(AgentError):
    """A tool failed. Recoverable (fed back to the model) unless fatal is set."""

    kind = "tool_error"

    def __init__(self, message: str, *, fatal: bool = False):
        super().__init__(message)
        self.fatal = fatal


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    content: str
    is_error: bool = False

    @classmethod
    def failure(cls, call: ToolCall, message: str) -> "ToolResult":
        if not message.startswith("error:"):
            message = f"error: {message}"
        return cls(call_id=call.id, name=call.name, content=message, is_error=True)

    def to_message(self) -> dict:
        return {"role": "tool", "tool_call_id": self.call_id, "content": self.content}


@runtime_checkable
class ToolExecutor(Protocol):
    def schemas(self) -> list[dict]: ...

    async def execute(self, call: ToolCall) -> ToolResult: ...


class FunctionToolExecutor:
    """Runs registered Python callables as tools.

    Sync callables run in a worker thread so the event loop stays free.
    A string result starting with ``error:`` counts as a failed call, as
    does any exception other than a fatal ToolExecutionError, which
    propagates.
    """

    def __init__(self):
        self._functions: dict = {}
        self._schemas: dict[str, dict] = {}

    def register(self, name: str, fn, *, description: str = "", parameters: dict | None = None):
        if name in self._functions:
            raise ValueError(f"tool {name!r} is already registered")
        self._functions[name] = fn
        self._schemas[name] = {
            "type": "function",
            "function": {
                "name": name,
                "description": description or (inspect.getdoc(fn) or ""),
                "parameters": parameters or {"type": "object", "properties": {}},
            },
        }
        return fn

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    def schemas(self) -> list[dict]:
        return list(self._schemas.values())

    async def execute(self, call: ToolCall) -> ToolResult:
        fn = self._functions.get(call.name)
        if fn is None:
            return ToolResult.failure(
                call,
                f"unknown tool {call.name!r}. Available tools: {', '.join(sorted(self._functions))}",
            )
        try:
            if inspect.iscoroutinefunction(fn):
                result = await fn(**call.arguments)
            else:
                result = await asyncio.to_thread(fn, **call.arguments)
        except ToolExecutionError as e:
            if e.fatal:
                raise
            return ToolResult.failure(call, str(e))
        except Exception as e:
            return ToolResult.failure(call, f"{type(e).__name__}: {e}")

        if not isinstance(result, str):
            result = json.dumps(result, default=str)
        return ToolResult(
            call_id=call.id,
            name=call.name,
            content=result,
            is_error=result.startswith("error:"),
        )


# ---------------------------------------------------------------------------
# Built-in read-only file tools
# ---------------------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path, refusing anything that lands outside base_dir.

    Symlinks are resolved on both sides before the containment check.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if resolved.is_relative_to(base):
        return resolved
    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"error: pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"error: pattern {pattern!r} contains '..', which is not allowed"
    return None


def read_file(file_path: str, base_dir: str, offset: int = 1, limit: int = 2000) -> str:
    """Return numbered lines of a text file, or a listing for a directory."""
    try:
        resolved = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if not resolved.exists():
        return f"error: path does not exist: {file_path}"

    if resolved.is_dir():
        names = []
        total_bytes = 0
        for child in sorted(resolved.iterdir()):
            name = child.name + ("/" if child.is_dir() else "")
            total_bytes += len(name.encode("utf-8")) + 1
            if total_bytes > MAX_OUTPUT_BYTES:
                names.append("[truncated at 50KB]")
                break
            names.append(name)
        return "\n".join(names)

    with open(resolved, "rb") as f:
        if b"\x00" in f.read(BINARY_CHECK_BYTES):
            return f"error: binary file detected: {file_path}"
    try:
        lines = resolved.read_text(encoding="utf-8").splitlines()
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {file_path} as UTF-8: {exc}"

    start = max(offset - 1, 0)
    out = []
    total_bytes = 0
    for number, line in enumerate(lines[start : start + limit], start=start + 1):
        numbered = f"{number}: {line[:MAX_LINE_LENGTH]}"
        total_bytes += len(numbered.encode("utf-8")) + 1
        if total_bytes > MAX_OUTPUT_BYTES:
            break
        out.append(numbered)

    remaining = len(lines) - (start + len(out))
    result = "\n".join(out)
    if remaining > 0:
        result += f"\n[{remaining} more lines, use offset={start + len(out) + 1} to continue]"
    return result


def list_files(pattern: str, base_dir: str, path: str = ".") -> str:
    """List files under path whose relative path matches a glob, newest first."""
    err = _check_pattern(pattern)
    if err:
        return err
    try:
        root = safe_resolve(path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"

    base = Path(base_dir).resolve()
    matched: list[Path] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            filepath = Path(dirpath) / filename
            if not PurePath(filepath.relative_to(root)).full_match(pattern):
                continue
            if not filepath.resolve().is_relative_to(base):
                continue
            matched.append(filepath)

    if not matched:
        return "No files matched the pattern."
    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    truncated = len(matched) > MAX_LIST_RESULTS
    result = "\n".join(str(f.relative_to(base)) for f in matched[:MAX_LIST_RESULTS])
    if truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
            "Use a more specific pattern or path.)"
        )
    return result


READ_FILE_PARAMETERS = {
    "type": "object",
    "properties": {
        "file_path": {
            "type": "string",
            "description": "Path to the file or directory to read.",
        },
        "offset": {
            "type": "integer",
            "description": "1-based line number to start reading from. Defaults to 1.",
            "default": 1,
        },
        "limit": {
            "type": "integer",
            "description": "Maximum number of lines to return. Defaults to 2000.",
            "default": 2000,
        },
    },
    "required": ["file_path"],
}

LIST_FILES_PARAMETERS = {
    "type": "object",
    "properties": {
        "pattern": {
            "type": "string",
            "description": "Glob matched against paths relative to `path`, e.g. '**/*.py'.",
        },
        "path": {
            "type": "string",
            "description": "Directory to search from. Defaults to the base directory.",
            "default": ".",
        },
    },
    "required": ["pattern"],
}


def builtin_executor(base_dir: str) -> FunctionToolExecutor:
    """Executor with read_file and list_files confined to base_dir."""
    executor = FunctionToolExecutor()

    def _read(file_path: str, offset: int = 1, limit: int = 2000) -> str:
        return read_file(file_path, base_dir, offset=offset, limit=limit)

    def _list(pattern: str, path: str = ".") -> str:
        return list_files(pattern, base_dir, path=path)

    executor.register(
        "read_file",
        _read,
        description=(
            "Read the contents of a file or list a directory. "
            "For files, returns lines prefixed with line numbers. "
            "Use offset/limit to paginate."
        ),
        parameters=READ_FILE_PARAMETERS,
    )
    executor.register(
        "list_files",
        _list,
        description=(
            "Recursively list files matching a glob pattern, newest first. "
            "Results are capped at 100 entries."
        ),
        parameters=LIST_FILES_PARAMETERS,
    )
    return executor
