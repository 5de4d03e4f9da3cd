"""Provider registry: configured providers, fallback order and shared counters.

Built once at startup and passed explicitly to planners. Lookups never
mutate the registry; only the per-provider counters change afterwards, each
behind its own lock.
"""

import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass

from .providers import (
    DEFAULT_API_KEY_ENV,
    DEFAULT_MODELS,
    FAMILY_KINDS,
    ModelDescriptor,
    Provider,
    ProviderKind,
    RoutingPreferences,
    discover_model,
    lookup_model_info,
    parse_routed_model,
)
from .report import ConfigError


@dataclass(frozen=True)
class PreferenceEntry:
    provider_id: str
    allow_fallback: bool = False


class ProviderPreferences:
    """Ordered provider entries; position is fallback priority."""

    def __init__(self, entries, default_fallback: bool = False):
        self.entries: tuple[PreferenceEntry, ...] = tuple(entries)
        self.default_fallback = default_fallback

    def __iter__(self):
        return iter(self.entries)

    def __len__(self):
        return len(self.entries)

    def __repr__(self):
        return f"ProviderPreferences({list(self.entries)!r})"

    def ids(self) -> list[str]:
        return [e.provider_id for e in self.entries]

    def with_primary(self, provider_id: str) -> "ProviderPreferences":
        """Move provider_id to the front, keeping the rest in order.

        A provider missing from the order joins with the default allow_fallback.
        """
        existing = [e for e in self.entries if e.provider_id == provider_id]
        head = existing[0] if existing else PreferenceEntry(provider_id, self.default_fallback)
        rest = [e for e in self.entries if e.provider_id != provider_id]
        return ProviderPreferences([head, *rest], self.default_fallback)


class ProviderCounters:
    """In-flight and outcome counters for one provider, shared across conversations."""

    def __init__(self):
        self._lock = threading.Lock()
        self.in_flight = 0
        self.calls = 0
        self.rate_limited = 0
        self.failures = 0

    @contextmanager
    def track(self):
        with self._lock:
            self.in_flight += 1
            self.calls += 1
        try:
            yield self
        finally:
            with self._lock:
                self.in_flight -= 1

    def record_error(self, kind: str) -> None:
        with self._lock:
            if kind == "rate_limited":
                self.rate_limited += 1
            else:
                self.failures += 1

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "in_flight": self.in_flight,
                "calls": self.calls,
                "rate_limited": self.rate_limited,
                "failures": self.failures,
            }


def parse_selector(selector: str) -> tuple[str, str | None]:
    """Split ``<provider>`` or ``<provider>.<model>`` on the first dot."""
    selector = (selector or "").strip()
    provider_id, sep, model = selector.partition(".")
    if not provider_id:
        raise ConfigError(f"invalid provider selector {selector!r}")
    if sep and not model:
        raise ConfigError(f"provider selector {selector!r} has an empty model")
    return provider_id, (model or None)


class ProviderRegistry:
    def __init__(self, providers: dict[str, Provider], preferences: ProviderPreferences):
        for entry in preferences:
            if entry.provider_id not in providers:
                raise ConfigError(
                    f"preference order names unconfigured provider {entry.provider_id!r}"
                )
        if not len(preferences):
            raise ConfigError("no providers configured")
        self._providers = dict(providers)
        self._preferences = preferences
        self._counters = {pid: ProviderCounters() for pid in self._providers}

    @property
    def preferences(self) -> ProviderPreferences:
        return self._preferences

    def ids(self) -> list[str]:
        return list(self._providers)

    def get(self, provider_id: str) -> Provider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ConfigError(f"unknown provider {provider_id!r}") from None

    def counters(self, provider_id: str) -> ProviderCounters:
        return self._counters[provider_id]

    def primary(self) -> Provider:
        return self.get(self._preferences.entries[0].provider_id)

    def resolve(self, selector: str) -> tuple[Provider, ModelDescriptor]:
        """Resolve a selector against the configured providers."""
        provider_id, model = parse_selector(selector)
        provider = self.get(provider_id)
        if model is not None and model != provider.model_id:
            raise ConfigError(
                f"provider {provider_id!r} is configured for model "
                f"{provider.model_id!r}, not {model!r}"
            )
        return provider, provider.describe()


# ---------------------------------------------------------------------------
# Building from configuration
# ---------------------------------------------------------------------------


def _resolve_api_key(provider_id: str, family: str, cfg: dict, environ) -> str | None:
    env_name = cfg.get("api_key_env", DEFAULT_API_KEY_ENV.get(family))
    if env_name is None:
        return None
    value = environ.get(env_name)
    if not value:
        if family in ("lmstudio", "generic"):
            return None
        raise ConfigError(
            f"provider {provider_id!r}: environment variable {env_name} is not set"
        )
    return value


def build_provider(
    provider_id: str,
    cfg: dict,
    *,
    model_override: str | None = None,
    verbose: bool = False,
    environ=None,
) -> Provider:
    """Construct one Provider from its config table."""
    environ = os.environ if environ is None else environ
    family = cfg.get("family", provider_id)
    if family not in FAMILY_KINDS:
        raise ConfigError(
            f"provider {provider_id!r}: unknown family {family!r} "
            f"(expected one of: {', '.join(sorted(FAMILY_KINDS))})"
        )

    model = model_override or cfg.get("model") or DEFAULT_MODELS.get(family)
    reported_context = None
    base_url = cfg.get("base_url")
    if family == "lmstudio" and not model:
        model, reported_context = discover_model(
            base_url or "http://127.0.0.1:1234", verbose
        )
        if not model:
            raise ConfigError(
                "no loaded LLM found in LM Studio. "
                "Load a model in LM Studio or configure a model."
            )
    if not model:
        raise ConfigError(f"provider {provider_id!r}: no model configured")

    routing = None
    if FAMILY_KINDS[family] is ProviderKind.ROUTING:
        model, selector_order = parse_routed_model(model)
        order = selector_order or cfg.get("upstream_order")
        routing = RoutingPreferences(
            order=tuple(order) if order else None,
            ignore=tuple(cfg["upstream_ignore"]) if cfg.get("upstream_ignore") else None,
            allow_fallbacks=cfg.get("allow_upstream_fallbacks"),
            require_parameters=cfg.get("require_parameters"),
        )
    if family == "huggingface" and "/" not in model.removeprefix("huggingface/"):
        raise ConfigError(
            "HuggingFace model must be in org/model format (e.g. zai-org/GLM-5)"
        )

    info = lookup_model_info(family, model)
    descriptor = ModelDescriptor(
        provider_family=family,
        model_id=model,
        context_window_tokens=reported_context or info.get("max_input_tokens"),
        max_output_tokens=cfg.get("max_output_tokens") or info.get("max_output_tokens"),
        supports_cache=cfg.get(
            "supports_cache",
            FAMILY_KINDS[family] is ProviderKind.DIRECT
            and bool(info.get("supports_prompt_caching", family == "anthropic")),
        ),
        supports_streaming=cfg.get("supports_streaming", True),
    )

    return Provider(
        provider_id,
        descriptor,
        api_key=_resolve_api_key(provider_id, family, cfg, environ),
        base_url=base_url,
        context_override=cfg.get("max_context_tokens"),
        routing=routing,
        http_referer=cfg.get("http_referer"),
        x_title=cfg.get("x_title"),
        timeout=cfg.get("timeout", 600.0),
    )


def parse_preferences(
    preferences_cfg: dict | None, provider_ids: list[str]
) -> ProviderPreferences:
    """Read the [preferences] table; default order is config order."""
    preferences_cfg = preferences_cfg or {}
    default_fallback = preferences_cfg.get("allow_fallback", False)
    order = preferences_cfg.get("order", provider_ids)
    entries = []
    seen = set()
    for item in order:
        if isinstance(item, str):
            entry = PreferenceEntry(item, default_fallback)
        else:
            entry = PreferenceEntry(
                item["provider"], item.get("allow_fallback", default_fallback)
            )
        if entry.provider_id in seen:
            raise ConfigError(
                f"preferences: provider {entry.provider_id!r} listed more than once"
            )
        seen.add(entry.provider_id)
        entries.append(entry)
    return ProviderPreferences(entries, default_fallback)


def build_registry(
    providers_cfg: dict[str, dict] | None,
    preferences_cfg: dict | None = None,
    *,
    selector: str | None = None,
    verbose: bool = False,
    environ=None,
) -> ProviderRegistry:
    """Validate the selector, construct every configured provider, bind preferences.

    A selector naming a known family that has no config table gets one built
    from defaults, so ``openrouter.anthropic/claude-3.5-sonnet`` works without
    a config file.
    """
    providers_cfg = dict(providers_cfg or {})
    selected_id = model_override = None
    if selector:
        selected_id, model_override = parse_selector(selector)
        if selected_id not in providers_cfg:
            if selected_id not in FAMILY_KINDS:
                known = sorted(set(FAMILY_KINDS) | set(providers_cfg))
                raise ConfigError(
                    f"unknown provider {selected_id!r} (expected one of: {', '.join(known)})"
                )
            providers_cfg[selected_id] = {"family": selected_id}

    providers = {}
    for provider_id, cfg in providers_cfg.items():
        providers[provider_id] = build_provider(
            provider_id,
            cfg,
            model_override=model_override if provider_id == selected_id else None,
            verbose=verbose,
            environ=environ,
        )

    preferences = parse_preferences(preferences_cfg, list(providers_cfg))
    if selected_id:
        preferences = preferences.with_primary(selected_id)
    return ProviderRegistry(providers, preferences)
