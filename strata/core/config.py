"""
strata.core.config — Configuration for the strata memory core.

Supports loading from YAML, environment variables, and programmatic
construction.  Model provider functions are built lazily so optional
dependencies (openai, anthropic) are only imported when needed.

Thresholds that the business logic depends on (promotion bar,
conflict-resolution gaps, budget caps) live here rather than in the
algorithms, so deployments can tune them without code changes.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from strata.core.types import ModelResponse

if TYPE_CHECKING:
    from strata.core.types import ModelFunc


def env_float(name: str, fallback: float) -> float:
    """Positive float from the environment, else *fallback*."""
    raw = os.environ.get(name)
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    if value != value or value <= 0:
        return fallback
    return value


def _default_success_thresholds() -> Dict[str, float]:
    base = env_float("STRATA_CREATIVE_SUCCESS_ENGAGEMENT_THRESHOLD", 2.0)
    return {"engagement": base, "reach": base, "leads": base, "saves": base}


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass
class Config:
    """
    Central configuration object.

    Construct directly, via ``Config.from_yaml(path)``, or via
    ``Config.from_data_dir(path)`` for quick bootstrap.
    """

    # -- storage ------------------------------------------------------------
    data_dir: Path = field(default_factory=lambda: Path("./strata_data"))

    # -- decay --------------------------------------------------------------
    # Per-event-type half-life overrides (days), merged over the built-in table.
    decay_half_lives: Dict[str, float] = field(default_factory=dict)
    decay_min_strength: float = 0.05
    # Episodic rows whose composite weight drops below this are skipped
    # by recall (soft exclusion; rows are never deleted).
    recall_min_weight: float = 0.05

    # -- pattern detection --------------------------------------------------
    pattern_lookback_days: int = 30
    pattern_min_occurrences: int = 3
    co_occurrence_lookback_days: int = 60
    co_occurrence_window_hours: float = 48.0
    min_co_occurrences: int = 2
    temporal_day_min_events: int = 3
    temporal_day_peak_share: float = 0.30
    temporal_hour_min_events: int = 5
    temporal_hour_peak_share: float = 0.25
    candidate_min_confidence: float = 0.6
    llm_pattern_min_events: int = 5
    llm_pattern_max_cost_usd: float = 0.01

    # -- consolidation ------------------------------------------------------
    promotion_threshold: float = 0.8
    min_sample_for_strategy: int = 10
    conflict_confidence_gap: float = 0.2
    keep_existing_sample_ratio: float = 3.0
    consolidation_lock_timeout: float = 5.0
    consolidation_min_interval_seconds: float = 0.0
    lock_stale_after_seconds: float = 600.0

    # -- AI governor --------------------------------------------------------
    ai_budget_daily_usd: float = field(
        default_factory=lambda: env_float("STRATA_AI_BUDGET_DAILY_USD", 2.0)
    )
    ai_budget_monthly_usd: float = field(
        default_factory=lambda: env_float("STRATA_AI_BUDGET_MONTHLY_USD", 45.0)
    )
    intent_cache_ttl_seconds: float = 24 * 3600.0
    model_timeout_seconds: float = 30.0
    strict_budget: bool = False
    budget_lock_timeout: float = 2.0
    router_input_usd_per_1m: float = field(
        default_factory=lambda: env_float("STRATA_ROUTER_INPUT_USD_PER_1M", 0.6)
    )
    router_output_usd_per_1m: float = field(
        default_factory=lambda: env_float("STRATA_ROUTER_OUTPUT_USD_PER_1M", 2.4)
    )

    # -- model provider -----------------------------------------------------
    llm_provider: str = "ollama"  # "ollama" | "openai" | "anthropic" | "custom"
    llm_model: str = "llama3.2"
    llm_base_url: str = "http://localhost:11434"
    llm_api_key: Optional[str] = field(
        default_factory=lambda: os.environ.get("STRATA_LLM_API_KEY")
    )
    model_func: Optional[ModelFunc] = field(default=None, repr=False)
    max_tokens: int = 1024

    # -- outcome learning ---------------------------------------------------
    creative_success_thresholds: Dict[str, float] = field(
        default_factory=_default_success_thresholds
    )
    bandit_exploration: float = 0.45

    # -- logging ------------------------------------------------------------
    structured_logging: bool = False
    log_level: str = "INFO"

    # -----------------------------------------------------------------------
    # Derived paths (all relative to data_dir)
    # -----------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        return self.data_dir / "strata.db"

    @property
    def lock_dir(self) -> Path:
        return self.data_dir / "locks"

    # -----------------------------------------------------------------------
    # Construction helpers
    # -----------------------------------------------------------------------

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).resolve()
        self.validate()

    def validate(self) -> None:
        """Raise ``ValueError`` on settings the algorithms cannot run with."""
        for name in (
            "promotion_threshold",
            "candidate_min_confidence",
            "temporal_day_peak_share",
            "temporal_hour_peak_share",
            "decay_min_strength",
            "recall_min_weight",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value!r}")
        for name in (
            "pattern_lookback_days",
            "co_occurrence_lookback_days",
            "co_occurrence_window_hours",
            "ai_budget_daily_usd",
            "ai_budget_monthly_usd",
            "model_timeout_seconds",
            "keep_existing_sample_ratio",
            "lock_stale_after_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value!r}")
        for name in ("pattern_min_occurrences", "min_co_occurrences", "min_sample_for_strategy"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        for event_type, half_life in self.decay_half_lives.items():
            if half_life <= 0:
                raise ValueError(
                    f"decay_half_lives[{event_type!r}] must be positive, got {half_life!r}"
                )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file.

        Any key in the YAML that matches a Config field is applied.
        Unknown keys are silently ignored so the file can carry
        application-level settings alongside strata config.
        """
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as fh:
            raw: Dict[str, Any] = yaml.safe_load(fh) or {}

        # pull the strata section if nested, else use top-level
        data = raw.get("strata", raw)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        if "data_dir" in data:
            data["data_dir"] = Path(data["data_dir"])

        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known and k != "model_func"}

        return cls(**filtered)

    @classmethod
    def from_data_dir(cls, data_dir: str | Path, **overrides: Any) -> "Config":
        """Quick constructor — just point at a data directory."""
        return cls(data_dir=Path(data_dir), **overrides)

    @classmethod
    def from_env(cls, base: Optional["Config"] = None, prefix: str = "STRATA_") -> "Config":
        """Overlay ``STRATA_<FIELD>`` environment variables onto *base*.

        Only scalar fields are read; values are coerced to the type of
        the current value.  Unparsable values raise ``ValueError``.
        """
        base = base if base is not None else cls()
        values: Dict[str, Any] = {}
        for name in cls.__dataclass_fields__:
            if name == "model_func":
                continue
            current = getattr(base, name)
            if isinstance(current, dict):
                values[name] = dict(current)
                continue
            raw = os.environ.get(prefix + name.upper())
            if raw is None:
                values[name] = current
            elif isinstance(current, bool):
                values[name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif isinstance(current, int):
                values[name] = int(raw)
            elif isinstance(current, float):
                values[name] = float(raw)
            elif isinstance(current, Path):
                values[name] = Path(raw)
            else:
                values[name] = raw
        values["model_func"] = base.model_func
        return cls(**values)

    # -----------------------------------------------------------------------
    # Directory bootstrapping
    # -----------------------------------------------------------------------

    def ensure_directories(self) -> None:
        """Create all required directories if they don't exist."""
        for d in (self.data_dir, self.lock_dir):
            d.mkdir(parents=True, exist_ok=True)

    # -----------------------------------------------------------------------
    # Model callable
    # -----------------------------------------------------------------------

    def get_model_func(self) -> ModelFunc:
        """Return a ``(messages, max_tokens) -> ModelResponse`` callable.

        If ``model_func`` was set directly (custom provider), it is
        returned as-is.  Otherwise a function is built from the
        provider / model / url / key settings.
        """
        if self.model_func is not None:
            return self.model_func

        provider = self.llm_provider.lower()

        if provider == "ollama":
            return self._build_ollama_func()
        elif provider == "openai":
            return self._build_openai_func()
        elif provider == "anthropic":
            return self._build_anthropic_func()
        elif provider == "custom":
            raise ValueError(
                "llm_provider is 'custom' but no model_func was provided. "
                "Pass a callable via Config(model_func=my_func)."
            )
        else:
            raise ValueError(f"Unknown llm_provider: {provider!r}")

    # -- provider builders (private) ----------------------------------------

    def _build_ollama_func(self) -> ModelFunc:
        """Build a model callable targeting Ollama's /api/chat."""
        import httpx

        base_url = self.llm_base_url.rstrip("/")
        model = self.llm_model
        # one client, reused connection pool; per-call timeouts are
        # enforced by the governor
        client = httpx.Client(timeout=120.0)

        def ollama_call(messages: List[Dict[str, str]], max_tokens: int) -> ModelResponse:
            started = time.monotonic()
            resp = client.post(
                f"{base_url}/api/chat",
                json={
                    "model": model,
                    "messages": messages,
                    "stream": False,
                    "options": {"num_predict": max_tokens},
                },
            )
            resp.raise_for_status()
            try:
                data = resp.json()
            except ValueError:
                raise ValueError(
                    f"Ollama returned non-JSON response "
                    f"(status {resp.status_code}): {resp.text[:200]}"
                )
            return ModelResponse(
                text=(data.get("message") or {}).get("content", "").strip(),
                provider="ollama",
                model=model,
                input_tokens=int(data.get("prompt_eval_count", 0) or 0),
                output_tokens=int(data.get("eval_count", 0) or 0),
                latency_ms=int((time.monotonic() - started) * 1000),
            )

        return ollama_call

    def _build_openai_func(self) -> ModelFunc:
        """Build a model callable targeting an OpenAI-compatible API."""
        try:
            import openai
        except ImportError:
            raise ImportError(
                "openai is required for the OpenAI provider. "
                "Install it with:  pip install strata[openai]"
            )

        api_key = self.llm_api_key or os.environ.get("OPENAI_API_KEY", "")
        model = self.llm_model
        client_kwargs: Dict[str, Any] = {"api_key": api_key}
        # only pass base_url when it was pointed away from the Ollama default
        if self.llm_base_url and self.llm_base_url != "http://localhost:11434":
            client_kwargs["base_url"] = self.llm_base_url
        client = openai.OpenAI(**client_kwargs)

        def openai_call(messages: List[Dict[str, str]], max_tokens: int) -> ModelResponse:
            started = time.monotonic()
            response = client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
            )
            if not response.choices:
                raise ValueError("OpenAI returned empty choices")
            usage = response.usage
            return ModelResponse(
                text=(response.choices[0].message.content or "").strip(),
                provider="openai",
                model=model,
                input_tokens=(usage.prompt_tokens or 0) if usage else 0,
                output_tokens=(usage.completion_tokens or 0) if usage else 0,
                latency_ms=int((time.monotonic() - started) * 1000),
            )

        return openai_call

    def _build_anthropic_func(self) -> ModelFunc:
        """Build a model callable targeting the Anthropic API."""
        try:
            import anthropic
        except ImportError:
            raise ImportError(
                "anthropic is required for the Anthropic provider. "
                "Install it with:  pip install strata[anthropic]"
            )

        api_key = self.llm_api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        model = self.llm_model
        client = anthropic.Anthropic(api_key=api_key)

        def anthropic_call(messages: List[Dict[str, str]], max_tokens: int) -> ModelResponse:
            started = time.monotonic()
            system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
            kwargs: Dict[str, Any] = {
                "model": model,
                "max_tokens": max_tokens,
                "messages": [m for m in messages if m.get("role") != "system"],
            }
            if system:
                kwargs["system"] = system
            response = client.messages.create(**kwargs)
            parts = [block.text for block in response.content if hasattr(block, "text")]
            usage = getattr(response, "usage", None)
            return ModelResponse(
                text="".join(parts).strip(),
                provider="anthropic",
                model=model,
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
                latency_ms=int((time.monotonic() - started) * 1000),
            )

        return anthropic_call

    # -----------------------------------------------------------------------
    # Serialisation
    # -----------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a plain dict (YAML/JSON-safe, no callables or secrets)."""
        skip = {"model_func", "llm_api_key", "data_dir"}
        out: Dict[str, Any] = {"data_dir": str(self.data_dir)}
        for name in self.__dataclass_fields__:
            if name in skip:
                continue
            value = getattr(self, name)
            out[name] = dict(value) if isinstance(value, dict) else value
        return out
