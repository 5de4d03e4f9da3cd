"""LLM backends behind one completion contract.

Every backend family maps onto one of three tagged variants:

- ``direct``: a single fixed vendor. Cache hints become vendor
  ``cache_control`` markers on the hinted message blocks.
- ``routing``: an aggregator (OpenRouter). Upstream vendor preferences travel
  in the request body; fallback between upstreams happens server-side.
- ``generic``: any OpenAI-compatible endpoint. Completion only.

All network I/O goes through ``litellm.acompletion``.
"""

import asyncio
import enum
import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field

from .report import AgentError, ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600.0

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


class ProviderKind(enum.Enum):
    DIRECT = "direct"
    ROUTING = "routing"
    GENERIC = "generic"


FAMILY_KINDS: dict[str, ProviderKind] = {
    "anthropic": ProviderKind.DIRECT,
    "openai": ProviderKind.DIRECT,
    "openrouter": ProviderKind.ROUTING,
    "lmstudio": ProviderKind.GENERIC,
    "huggingface": ProviderKind.GENERIC,
    "generic": ProviderKind.GENERIC,
}

# Environment variable holding the credential when the config names none.
# None means the family runs without a key.
DEFAULT_API_KEY_ENV: dict[str, str | None] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "huggingface": "HF_TOKEN",
    "lmstudio": None,
    "generic": None,
}

DEFAULT_BASE_URLS: dict[str, str] = {
    "lmstudio": "http://127.0.0.1:1234",
}

# Model used when neither the selector nor the config names one.
DEFAULT_MODELS: dict[str, str] = {
    "openrouter": "anthropic/claude-3.5-sonnet",
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProviderError(AgentError):
    """A completion request failed. Fatal unless a subclass says otherwise."""

    kind = "provider_error"
    retryable = False

    def __init__(self, message: str, *, provider_id: str | None = None):
        super().__init__(message)
        self.provider_id = provider_id


class AuthFailedError(ProviderError):
    kind = "auth_failed"


class RateLimitedError(ProviderError):
    kind = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        provider_id: str | None = None,
    ):
        super().__init__(message, provider_id=provider_id)
        self.retry_after = retry_after


class TransientError(ProviderError):
    kind = "transient"
    retryable = True


class ContextOverflowError(ProviderError):
    """Prompt plus requested output does not fit the context window."""

    kind = "context_overflow"


# ---------------------------------------------------------------------------
# Request / response types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelDescriptor:
    provider_family: str
    model_id: str
    context_window_tokens: int | None = None
    max_output_tokens: int | None = None
    supports_cache: bool = False
    supports_streaming: bool = True

    def __post_init__(self):
        if self.context_window_tokens is not None and self.context_window_tokens <= 0:
            raise ConfigError(
                f"{self.provider_family}.{self.model_id}: context window must be "
                f"positive, got {self.context_window_tokens}"
            )
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            raise ConfigError(
                f"{self.provider_family}.{self.model_id}: max output tokens must be "
                f"positive, got {self.max_output_tokens}"
            )


@dataclass(frozen=True)
class CompletionRequest:
    messages: list
    max_output_tokens: int
    tools: list | None = None
    cache_hints: tuple = ()
    temperature: float | None = None
    top_p: float | None = None
    seed: int | None = None
    stream: bool = False


@dataclass
class RawToolCall:
    """A tool call exactly as the backend returned it (arguments still JSON text)."""

    id: str | None
    name: str | None
    arguments: str | None


@dataclass
class CompletionResponse:
    content: str | None
    tool_calls: list[RawToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict = field(default_factory=dict)
    model: str = ""
    provider_id: str = ""


@dataclass(frozen=True)
class RoutingPreferences:
    """Upstream routing metadata forwarded to an aggregator."""

    order: tuple[str, ...] | None = None
    ignore: tuple[str, ...] | None = None
    allow_fallbacks: bool | None = None
    require_parameters: bool | None = None

    def to_body(self) -> dict:
        body: dict = {}
        if self.order:
            body["order"] = list(self.order)
        if self.ignore:
            body["ignore"] = list(self.ignore)
        if self.allow_fallbacks is not None:
            body["allow_fallbacks"] = self.allow_fallbacks
        if self.require_parameters is not None:
            body["require_parameters"] = self.require_parameters
        return body


def parse_routed_model(model_id: str) -> tuple[str, tuple[str, ...] | None]:
    """Split ``vendor/model@UpstreamA,UpstreamB`` into the model and its upstream order."""
    model, sep, vendors = model_id.partition("@")
    if not sep:
        return model_id, None
    order = tuple(v.strip() for v in vendors.split(",") if v.strip())
    return model, order or None


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _retry_after(exc: Exception) -> float | None:
    """Read a server-supplied retry delay in seconds, if any."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        value = headers.get("retry-after")
    except AttributeError:
        return None
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def classify_error(exc: Exception, provider_id: str | None = None) -> ProviderError:
    """Map a backend exception onto the provider error taxonomy."""
    import litellm

    text = str(exc)
    if isinstance(exc, litellm.ContextWindowExceededError):
        return ContextOverflowError(
            f"context window exceeded (typed): {text}", provider_id=provider_id
        )
    if isinstance(exc, (litellm.AuthenticationError, litellm.PermissionDeniedError)):
        return AuthFailedError(f"authentication failed: {text}", provider_id=provider_id)
    if isinstance(exc, litellm.RateLimitError):
        return RateLimitedError(
            f"rate limited: {text}",
            retry_after=_retry_after(exc),
            provider_id=provider_id,
        )
    if isinstance(exc, litellm.BadRequestError):
        if _CONTEXT_OVERFLOW_RE.search(text):
            return ContextOverflowError(
                f"context window exceeded (inferred): {text}", provider_id=provider_id
            )
        return ProviderError(f"request rejected: {text}", provider_id=provider_id)
    if isinstance(
        exc,
        (
            litellm.Timeout,
            litellm.APIConnectionError,
            litellm.InternalServerError,
            litellm.ServiceUnavailableError,
        ),
    ):
        return TransientError(f"transient failure: {text}", provider_id=provider_id)

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        if status in (401, 403):
            return AuthFailedError(
                f"authentication failed: {text}", provider_id=provider_id
            )
        if status == 429:
            return RateLimitedError(
                f"rate limited: {text}",
                retry_after=_retry_after(exc),
                provider_id=provider_id,
            )
        if status == 408 or status >= 500:
            return TransientError(f"transient failure: {text}", provider_id=provider_id)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return TransientError(f"transient failure: {text}", provider_id=provider_id)
    return ProviderError(f"LLM call failed: {text}", provider_id=provider_id)


# ---------------------------------------------------------------------------
# Model metadata
# ---------------------------------------------------------------------------


def model_string(family: str, model_id: str) -> str:
    """Build the LiteLLM model string for a family, avoiding double prefixes."""
    if family == "lmstudio" or family == "generic":
        return f"openai/{model_id}"
    if family == "huggingface":
        return f"huggingface/{model_id.removeprefix('huggingface/')}"
    if family == "openrouter":
        # Only strip the prefix if the user already included the LiteLLM
        # "openrouter/" prefix (i.e. "openrouter/openrouter/auto"). Don't strip
        # org names like "openrouter" in "openrouter/auto".
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        return f"openrouter/{bare_id}"
    if family in ("anthropic", "openai"):
        return f"{family}/{model_id.removeprefix(family + '/')}"
    raise ConfigError(f"unknown provider family {family!r}")


def lookup_model_info(family: str, model_id: str) -> dict:
    """Ask LiteLLM's bundled model map what it knows about a model.

    Returns an empty dict for models LiteLLM has never heard of.
    """
    import litellm

    try:
        info = litellm.get_model_info(model=model_string(family, model_id))
    except Exception as e:
        logger.debug("no model info for %s/%s: %s", family, model_id, e)
        return {}
    return dict(info or {})


def discover_model(base_url: str, verbose: bool = False) -> tuple[str | None, int | None]:
    """Query LM Studio's native API to find the currently loaded LLM."""
    from . import fmt

    url = f"{base_url}/api/v1/models"
    if verbose:
        fmt.model_info(f"Querying {url} for loaded models...")

    try:
        req = urllib.request.Request(url)
        with urllib.request.urlopen(req, timeout=10) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.URLError as e:
        raise ConfigError(f"could not connect to LM Studio at {base_url}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON from {url}: {e}")

    # LM Studio uses "data" (OpenAI-compat) or "models" (native API) as the top-level key
    entries = data.get("data") or data.get("models") or []
    for entry in entries:
        if entry.get("type") == "llm" and entry.get("loaded_instances"):
            instance = entry["loaded_instances"][0]
            context_length = instance.get("config", {}).get("context_length")
            model_key = entry.get("id", entry.get("key"))
            if verbose:
                fmt.model_info(
                    f"Discovered loaded model: {model_key} (context={context_length})"
                )
            return model_key, context_length

    return None, None


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class StreamAccumulator:
    """Buffers streamed deltas until the message boundary.

    Content deltas are concatenated; tool-call deltas are merged by index,
    with argument fragments appended in arrival order.
    """

    def __init__(self):
        self._content: list[str] = []
        self._tool_calls: list[dict] = []
        self.finish_reason: str | None = None
        self.usage: dict = {}

    def add(self, chunk) -> str:
        """Fold one chunk in; return the text delta it carried (may be empty)."""
        usage = getattr(chunk, "usage", None)
        if usage:
            self.usage = _usage_dict(usage)
        text = ""
        for choice in getattr(chunk, "choices", None) or []:
            delta = getattr(choice, "delta", None)
            if getattr(choice, "finish_reason", None):
                self.finish_reason = choice.finish_reason
            if delta is None:
                continue
            content = getattr(delta, "content", None)
            if content:
                self._content.append(content)
                text += content
            for tc in getattr(delta, "tool_calls", None) or []:
                index = getattr(tc, "index", None) or 0
                while len(self._tool_calls) <= index:
                    self._tool_calls.append({"id": None, "name": None, "arguments": ""})
                slot = self._tool_calls[index]
                if getattr(tc, "id", None):
                    slot["id"] = tc.id
                function = getattr(tc, "function", None)
                if function is not None:
                    if getattr(function, "name", None):
                        slot["name"] = function.name
                    if getattr(function, "arguments", None):
                        slot["arguments"] += function.arguments
        return text

    def finish(self, *, model: str, provider_id: str) -> CompletionResponse:
        return CompletionResponse(
            content="".join(self._content) or None,
            tool_calls=[
                RawToolCall(id=tc["id"], name=tc["name"], arguments=tc["arguments"])
                for tc in self._tool_calls
            ],
            finish_reason=self.finish_reason
            or ("tool_calls" if self._tool_calls else "stop"),
            usage=self.usage,
            model=model,
            provider_id=provider_id,
        )


def _usage_dict(usage) -> dict:
    if isinstance(usage, dict):
        source = usage
    else:
        source = {
            key: getattr(usage, key, None)
            for key in ("prompt_tokens", "completion_tokens", "total_tokens")
        }
    return {k: v for k, v in source.items() if isinstance(v, int)}


# ---------------------------------------------------------------------------
# Variant adapters: map a request onto LiteLLM call arguments
# ---------------------------------------------------------------------------


def _base_call(provider: "Provider", request: CompletionRequest) -> dict:
    kwargs = dict(
        model=model_string(provider.family, provider.model_id),
        messages=request.messages,
        max_tokens=request.max_output_tokens,
    )
    if request.tools:
        kwargs["tools"] = request.tools
        kwargs["tool_choice"] = "auto"
    for key, val in [
        ("temperature", request.temperature),
        ("top_p", request.top_p),
        ("seed", request.seed),
    ]:
        if val is not None:
            kwargs[key] = val

    if provider.family == "lmstudio":
        kwargs["api_base"] = f"{provider.base_url}/v1"
        kwargs["api_key"] = "lm-studio"
    elif provider.family == "generic":
        kwargs["api_base"] = provider.base_url
        kwargs["api_key"] = provider.api_key or "none"
    else:
        kwargs["api_key"] = provider.api_key
        if provider.base_url:
            kwargs["api_base"] = provider.base_url
    return kwargs


def _direct_vendor_call(provider: "Provider", request: CompletionRequest) -> dict:
    from .cache import render_cache_markers

    kwargs = _base_call(provider, request)
    if request.cache_hints and provider.descriptor.supports_cache:
        messages, tools = render_cache_markers(
            request.messages, request.tools, request.cache_hints
        )
        kwargs["messages"] = messages
        if tools:
            kwargs["tools"] = tools
    return kwargs


def _routing_aggregator_call(provider: "Provider", request: CompletionRequest) -> dict:
    kwargs = _base_call(provider, request)
    if provider.routing is not None:
        routing = provider.routing.to_body()
        if routing:
            kwargs["extra_body"] = {"provider": routing}
    headers = {}
    if provider.http_referer:
        headers["HTTP-Referer"] = provider.http_referer
    if provider.x_title:
        headers["X-Title"] = provider.x_title
    if headers:
        kwargs["extra_headers"] = headers
    return kwargs


def _generic_call(provider: "Provider", request: CompletionRequest) -> dict:
    return _base_call(provider, request)


_ADAPTERS = {
    ProviderKind.DIRECT: _direct_vendor_call,
    ProviderKind.ROUTING: _routing_aggregator_call,
    ProviderKind.GENERIC: _generic_call,
}


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class Provider:
    """One configured backend. Stateless apart from its configuration."""

    def __init__(
        self,
        provider_id: str,
        descriptor: ModelDescriptor,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        context_override: int | None = None,
        routing: RoutingPreferences | None = None,
        http_referer: str | None = None,
        x_title: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        family = descriptor.provider_family
        if family not in FAMILY_KINDS:
            raise ConfigError(f"unknown provider family {family!r}")
        if context_override is not None and context_override <= 0:
            raise ConfigError(
                f"{provider_id}: max_context_tokens must be positive, got {context_override}"
            )
        self.provider_id = provider_id
        self.descriptor = descriptor
        self.kind = FAMILY_KINDS[family]
        self.api_key = api_key
        self.base_url = base_url or DEFAULT_BASE_URLS.get(family)
        self.context_override = context_override
        self.routing = routing
        self.http_referer = http_referer
        self.x_title = x_title
        self.timeout = timeout

        if family == "generic" and not self.base_url:
            raise ConfigError(f"{provider_id}: generic providers need a base_url")

    def __repr__(self):
        return (
            f"Provider({self.provider_id!r}, kind={self.kind.value}, "
            f"model={self.model_id!r})"
        )

    @property
    def family(self) -> str:
        return self.descriptor.provider_family

    @property
    def model_id(self) -> str:
        return self.descriptor.model_id

    def describe(self) -> ModelDescriptor:
        return self.descriptor

    def build_call(self, request: CompletionRequest) -> dict:
        """Translate a request into LiteLLM keyword arguments for this variant."""
        return _ADAPTERS[self.kind](self, request)

    async def complete(self, request: CompletionRequest, *, on_delta=None) -> CompletionResponse:
        """Execute one completion request.

        Raises a ProviderError subclass on failure. A call that exceeds the
        provider timeout is reported as TransientError.
        """
        import litellm

        litellm.suppress_debug_info = True

        kwargs = self.build_call(request)
        stream = request.stream and self.descriptor.supports_streaming
        logger.debug(
            "%s: %d messages, max_tokens=%d, stream=%s",
            self.provider_id,
            len(request.messages),
            request.max_output_tokens,
            stream,
        )

        try:
            if stream:
                return await asyncio.wait_for(
                    self._stream(litellm, kwargs, on_delta), timeout=self.timeout
                )
            response = await asyncio.wait_for(
                litellm.acompletion(**kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise TransientError(
                f"no response within {self.timeout:.0f}s", provider_id=self.provider_id
            )
        except ProviderError:
            raise
        except Exception as e:
            raise classify_error(e, self.provider_id) from e
        return self._parse(response)

    async def _stream(self, litellm, kwargs: dict, on_delta) -> CompletionResponse:
        response = await litellm.acompletion(
            **kwargs, stream=True, stream_options={"include_usage": True}
        )
        acc = StreamAccumulator()
        async for chunk in response:
            text = acc.add(chunk)
            if text and on_delta is not None:
                on_delta(text)
        logger.debug("%s: stream completed, usage=%s", self.provider_id, acc.usage)
        return acc.finish(model=self.model_id, provider_id=self.provider_id)

    def _parse(self, response) -> CompletionResponse:
        choices = getattr(response, "choices", None)
        if not choices:
            raise TransientError(
                "response contained no choices", provider_id=self.provider_id
            )
        choice = choices[0]
        message = choice.message
        tool_calls = [
            RawToolCall(
                id=getattr(tc, "id", None),
                name=getattr(tc.function, "name", None),
                arguments=getattr(tc.function, "arguments", None),
            )
            for tc in (getattr(message, "tool_calls", None) or [])
        ]
        usage = getattr(response, "usage", None)
        return CompletionResponse(
            content=getattr(message, "content", None),
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
            usage=_usage_dict(usage) if usage else {},
            model=self.model_id,
            provider_id=self.provider_id,
        )
