"""
strata.governor.governor — Guarded model invocation.

``AIGovernor.run`` walks every paid request through one state machine:

    ESTIMATE -> CACHE_LOOKUP -> HIT
                             -> MISS -> BUDGET_CHECK -> DENIED
                                                     -> ALLOWED -> CALL_MODEL
                                                        -> LOG_USAGE -> WRITE_CACHE

Every path ends in exactly one usage-ledger row, and ``run`` never
raises: a denial, a timeout, or a provider error all return the
caller's deterministic fallback, tagged with the reason.

The model call runs on a small shared thread pool so the caller's
timeout can be enforced without trusting the provider client to honour
its own.  A timed-out call keeps running in its worker; only its result
is discarded.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from strata.core.filelock import OrgLock
from strata.core.settings import AIBudgetSettings, OrganizationSettings
from strata.core.types import (
    Err,
    ErrorCode,
    ModelResponse,
    Ok,
    Result,
    require_org,
    to_iso,
    utcnow,
)
from strata.governor.budget import (
    BudgetCaps,
    BudgetDecision,
    decide_paid_ai_access,
    resolve_budget_caps,
    start_of_utc_month,
)
from strata.governor.cache import IntentCacheHit, build_intent_cache_key, with_cache_meta
from strata.governor.ledger import AIUsageEvent
from strata.governor.pricing import ModelPrice, estimate_model_cost_usd, estimate_tokens_messages

if TYPE_CHECKING:
    from strata.core.config import Config
    from strata.core.types import ModelFunc
    from strata.store import MemoryStore

log = logging.getLogger(__name__)

# Model calls are I/O bound; a handful of workers covers concurrent
# requests from one process.
_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="strata-governor")

# Slack on top of the model timeout before a strict-budget lock may be
# treated as orphaned.
LOCK_STALE_MARGIN_SECONDS = 30.0


class GovernorState(str, Enum):
    ESTIMATE = "ESTIMATE"
    CACHE_LOOKUP = "CACHE_LOOKUP"
    HIT = "HIT"
    MISS = "MISS"
    BUDGET_CHECK = "BUDGET_CHECK"
    DENIED = "DENIED"
    ALLOWED = "ALLOWED"
    CALL_MODEL = "CALL_MODEL"
    LOG_USAGE = "LOG_USAGE"
    WRITE_CACHE = "WRITE_CACHE"


@dataclass
class GovernedResult:
    """Outcome of one ``AIGovernor.run``.

    ``response`` is always usable.  ``mode`` is ``"ai"`` when it came
    from the model (fresh or cached) and ``"deterministic"`` when it is
    the fallback; ``error`` explains why the fallback was served, or
    flags a ledger/cache write that failed after a successful call.
    """

    response: Dict
    mode: str
    intent_hash: Optional[str] = None
    cache_hit: bool = False
    budget_fallback: bool = False
    estimated_cost_usd: float = 0.0
    error: Optional[Err] = None
    decision: Optional[BudgetDecision] = None
    model_response: Optional[ModelResponse] = None
    states: List[GovernorState] = field(default_factory=list)

    @property
    def from_model(self) -> bool:
        return self.mode == "ai"

    def to_dict(self) -> Dict:
        return {
            "response": self.response,
            "mode": self.mode,
            "intent_hash": self.intent_hash,
            "cache_hit": self.cache_hit,
            "budget_fallback": self.budget_fallback,
            "estimated_cost_usd": self.estimated_cost_usd,
            "error": self.error.to_dict() if self.error else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "states": [s.value for s in self.states],
        }


def parse_model_text(text: str) -> Dict:
    """JSON object responses are used as-is; anything else becomes ``{"text": ...}``."""
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return {"text": text}
    return parsed if isinstance(parsed, dict) else {"text": text}


def _with_meta(payload: Dict, mode: str, provider: str, model: str) -> Dict:
    out = dict(payload)
    meta = dict(out.get("meta") or {}) if isinstance(out.get("meta"), dict) else {}
    meta.update({"mode": mode, "provider": provider, "model": model, "cached": False})
    out["meta"] = meta
    return out


class AIGovernor:
    """Budget gate, intent cache and usage ledger around one model capability.

    Parameters
    ----------
    store : MemoryStore
        Provides ``usage``, ``intent_cache``, ``settings`` and ``batch()``.
    config : Config
        Budget defaults, cache TTL, timeouts, router pricing, lock dir.
    model_func : ModelFunc, optional
        ``(messages, max_tokens) -> ModelResponse``.  Defaults to
        ``config.get_model_func()``, resolved on first use.
    now : callable, optional
        Clock returning an aware UTC ``datetime``.
    """

    def __init__(
        self,
        store: "MemoryStore",
        config: "Config",
        model_func: Optional["ModelFunc"] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.config = config
        self._model_func = model_func
        self._now = now or utcnow
        self.default_caps = BudgetCaps(
            daily_usd=config.ai_budget_daily_usd,
            monthly_usd=config.ai_budget_monthly_usd,
        )
        self.router_price = ModelPrice(
            config.router_input_usd_per_1m, config.router_output_usd_per_1m
        )

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def estimate_cost(self, model: str, messages: List[Dict[str, str]], max_tokens: int) -> float:
        return estimate_model_cost_usd(
            model,
            estimate_tokens_messages(messages),
            max_tokens,
            router_price=self.router_price,
        )

    def _lock_stale_after(self, timeout_seconds: Optional[float]) -> float:
        timeout = timeout_seconds if timeout_seconds is not None else self.config.model_timeout_seconds
        return max(self.config.lock_stale_after_seconds, timeout + LOCK_STALE_MARGIN_SECONDS)

    def _budget_settings(self, organization_id: str) -> Optional[AIBudgetSettings]:
        try:
            return self.store.settings.get(organization_id).ai_budget
        except sqlite3.Error as exc:
            log.warning("Org settings unavailable for %s, using defaults: %s", organization_id, exc)
            return None

    def decide_paid_ai_access(
        self,
        organization_id: str,
        estimated_additional_cost_usd: float,
        caps: Optional[BudgetCaps] = None,
        settings: Union[AIBudgetSettings, OrganizationSettings, None] = None,
    ) -> Result[BudgetDecision]:
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        if isinstance(settings, OrganizationSettings):
            settings = settings.ai_budget
        if caps is None and settings is None:
            settings = self._budget_settings(organization_id)
        resolved = resolve_budget_caps(self.default_caps, settings, caps)
        return decide_paid_ai_access(
            self.store.usage,
            organization_id,
            estimated_additional_cost_usd,
            resolved,
            now=self._now(),
        )

    def get_intent_cache(
        self, organization_id: str, route_key: str, intent_hash: str
    ) -> Optional[IntentCacheHit]:
        if require_org(organization_id):
            return None
        return self.store.intent_cache.get(
            organization_id, route_key, intent_hash, now=self._now()
        )

    def set_intent_cache(
        self,
        organization_id: str,
        route_key: str,
        intent_hash: str,
        response: Dict,
        provider: str,
        model: str,
        ttl_seconds: Optional[float] = None,
        estimated_cost_usd: float = 0.0,
    ) -> Result[str]:
        """Upsert a cache entry; ``Ok(expires_at)``."""
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        try:
            expires_at = self.store.intent_cache.set(
                organization_id,
                route_key,
                intent_hash,
                response,
                provider,
                model,
                ttl_seconds if ttl_seconds is not None else self.config.intent_cache_ttl_seconds,
                estimated_cost_usd=estimated_cost_usd,
                now=self._now(),
            )
        except sqlite3.Error as exc:
            log.warning("Intent cache write failed for %s/%s: %s", organization_id, route_key, exc)
            return Err(ErrorCode.STORE_UNAVAILABLE, "intent cache write failed", exc)
        return Ok(expires_at)

    def log_ai_usage_event(self, event: AIUsageEvent) -> Result[None]:
        invalid = require_org(event.organization_id)
        if invalid:
            return invalid
        try:
            self.store.usage.log(event)
        except sqlite3.Error as exc:
            log.warning("Usage ledger write failed for %s/%s: %s", event.organization_id, event.route_key, exc)
            return Err(ErrorCode.STORE_UNAVAILABLE, "usage ledger write failed", exc)
        return Ok(None)

    def budget_status(self, organization_id: str) -> Result[Dict[str, Any]]:
        """Current caps, spend and per-route month-to-date summary."""
        decision = self.decide_paid_ai_access(organization_id, 0.0)
        if not decision.ok:
            return decision
        try:
            summary = self.store.usage.summary(organization_id, start_of_utc_month(self._now()))
        except sqlite3.Error as exc:
            return Err(ErrorCode.STORE_UNAVAILABLE, "usage ledger unavailable", exc)
        return Ok({"decision": decision.value.to_dict(), "month": summary})

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def run(
        self,
        organization_id: str,
        route_key: str,
        params: Any,
        messages: List[Dict[str, str]],
        fallback: Union[Dict, Callable[[], Dict]],
        max_tokens: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        user_id: Optional[str] = None,
        model: Optional[str] = None,
        parse: Callable[[str], Dict] = parse_model_text,
    ) -> GovernedResult:
        """Serve *route_key* for *params* from cache, the model, or *fallback*.

        Parameters
        ----------
        params : Any
            The request's intent; hashed (normalised) into the cache key.
        messages : list[dict]
            Chat messages handed to the model on a cache miss.
        fallback : dict or callable
            Deterministic response, or a zero-argument callable producing
            one, served on denial or failure.
        max_tokens, ttl_seconds, timeout_seconds : optional
            Default to ``config.max_tokens``, ``config.intent_cache_ttl_seconds``
            and ``config.model_timeout_seconds``.
        model : str, optional
            Model name used for pricing; defaults to ``config.llm_model``.
        parse : callable
            Turns the model's text into the response dict.
        """
        states: List[GovernorState] = [GovernorState.ESTIMATE]
        invalid = require_org(organization_id)
        if invalid:
            return self._fallback(fallback, states, invalid)

        max_tokens = max_tokens or self.config.max_tokens
        model = model or self.config.llm_model
        provider = self.config.llm_provider
        intent_hash = build_intent_cache_key(route_key, params)
        estimated = self.estimate_cost(model, messages, max_tokens)

        def usage_event(**kw: Any) -> AIUsageEvent:
            base = dict(
                organization_id=organization_id,
                user_id=user_id,
                route_key=route_key,
                intent_hash=intent_hash,
                provider=provider,
                model=model,
                created_at=to_iso(self._now()),
            )
            base.update(kw)
            return AIUsageEvent(**base)

        # -- cache ------------------------------------------------------
        states.append(GovernorState.CACHE_LOOKUP)
        hit = self.get_intent_cache(organization_id, route_key, intent_hash)
        if hit is not None:
            states.append(GovernorState.HIT)
            self.log_ai_usage_event(
                usage_event(
                    mode="ai",
                    provider=hit.provider or provider,
                    model=hit.model or model,
                    cache_hit=True,
                    estimated_cost_usd=0.0,
                )
            )
            log.debug("Intent cache hit %s/%s", route_key, intent_hash[:12])
            return GovernedResult(
                response=with_cache_meta(
                    hit.response,
                    created_at=hit.created_at,
                    mode="ai",
                    provider=hit.provider,
                    model=hit.model,
                    now=self._now(),
                ),
                mode="ai",
                intent_hash=intent_hash,
                cache_hit=True,
                states=states,
            )
        states.append(GovernorState.MISS)

        # -- budget (optionally serialised per org) ----------------------
        lock: Optional[OrgLock] = None
        strict = self.config.strict_budget
        if not strict:
            org_budget = self._budget_settings(organization_id)
            strict = bool(org_budget and org_budget.strict)
        if strict:
            lock = OrgLock(
                self.config.lock_dir,
                "budget",
                organization_id,
                timeout=self.config.budget_lock_timeout,
                stale_after=self._lock_stale_after(timeout_seconds),
            )
            if not lock.try_acquire():
                log.warning("Budget lock busy for %s; serving fallback", organization_id)
                states.append(GovernorState.BUDGET_CHECK)
                states.append(GovernorState.DENIED)
                self.log_ai_usage_event(
                    usage_event(
                        mode="deterministic",
                        budget_fallback=True,
                        metadata={"reason": "budget_lock_timeout"},
                    )
                )
                return self._fallback(
                    fallback,
                    states,
                    Err(ErrorCode.BUDGET_EXCEEDED, "budget check lock timed out"),
                    intent_hash=intent_hash,
                    budget_fallback=True,
                )
        try:
            return self._run_paid(
                organization_id,
                route_key,
                messages,
                fallback,
                max_tokens,
                ttl_seconds,
                timeout_seconds,
                model,
                provider,
                intent_hash,
                estimated,
                parse,
                usage_event,
                states,
            )
        finally:
            if lock is not None:
                lock.release()

    def _run_paid(
        self,
        organization_id: str,
        route_key: str,
        messages: List[Dict[str, str]],
        fallback: Union[Dict, Callable[[], Dict]],
        max_tokens: int,
        ttl_seconds: Optional[float],
        timeout_seconds: Optional[float],
        model: str,
        provider: str,
        intent_hash: str,
        estimated: float,
        parse: Callable[[str], Dict],
        usage_event: Callable[..., AIUsageEvent],
        states: List[GovernorState],
    ) -> GovernedResult:
        states.append(GovernorState.BUDGET_CHECK)
        decided = self.decide_paid_ai_access(organization_id, estimated)
        decision = decided.value if decided.ok else None
        if decision is None or not decision.allowed:
            states.append(GovernorState.DENIED)
            reason = decision.reason if decision else decided.message
            self.log_ai_usage_event(
                usage_event(mode="deterministic", budget_fallback=True, metadata={"reason": reason})
            )
            error = (
                Err(ErrorCode.BUDGET_EXCEEDED, reason or "AI budget exceeded")
                if decision is not None
                else decided
            )
            return self._fallback(
                fallback,
                states,
                error,
                intent_hash=intent_hash,
                budget_fallback=True,
                decision=decision,
            )
        states.append(GovernorState.ALLOWED)

        # -- model --------------------------------------------------------
        states.append(GovernorState.CALL_MODEL)
        timeout = timeout_seconds if timeout_seconds is not None else self.config.model_timeout_seconds
        started = time.monotonic()
        error: Optional[Err] = None
        response: Optional[ModelResponse] = None
        try:
            func = self._model_func or self.config.get_model_func()
            future = _EXECUTOR.submit(func, messages, max_tokens)
            try:
                response = future.result(timeout=timeout)
            except FutureTimeout as exc:
                future.cancel()
                error = Err(ErrorCode.MODEL_TIMEOUT, f"model call exceeded {timeout}s", exc)
        except Exception as exc:
            error = Err(ErrorCode.MODEL_UNAVAILABLE, f"model call failed: {exc}", exc)
        latency_ms = int((time.monotonic() - started) * 1000)

        payload: Optional[Dict] = None
        if response is not None:
            try:
                payload = parse(response.text)
            except Exception as exc:
                error = Err(ErrorCode.MODEL_UNAVAILABLE, f"unparseable model response: {exc}", exc)

        if error is not None or payload is None:
            log.warning(
                "Model call for %s/%s failed: %s",
                organization_id,
                intent_hash[:12],
                error.message if error else "empty",
            )
            states.append(GovernorState.LOG_USAGE)
            self.log_ai_usage_event(
                usage_event(
                    mode="ai",
                    success=False,
                    latency_ms=latency_ms,
                    error_code=error.code.value if error else ErrorCode.MODEL_UNAVAILABLE.value,
                )
            )
            return self._fallback(
                fallback,
                states,
                error or Err(ErrorCode.MODEL_UNAVAILABLE, "empty model response"),
                intent_hash=intent_hash,
                decision=decision,
            )

        # -- ledger + cache in one transaction ----------------------------
        provider = response.provider or provider
        model_used = response.model or model
        input_tokens = response.input_tokens or estimate_tokens_messages(messages)
        output_tokens = response.output_tokens or max_tokens
        cost = estimate_model_cost_usd(
            model_used, input_tokens, output_tokens, router_price=self.router_price
        )
        states.append(GovernorState.LOG_USAGE)
        states.append(GovernorState.WRITE_CACHE)
        write_error: Optional[Err] = None
        try:
            with self.store.batch():
                self.store.usage.log(
                    usage_event(
                        mode="ai",
                        provider=provider,
                        model=model_used,
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                        estimated_cost_usd=cost,
                        latency_ms=response.latency_ms or latency_ms,
                    )
                )
                self.store.intent_cache.set(
                    organization_id,
                    route_key,
                    intent_hash,
                    payload,
                    provider,
                    model_used,
                    ttl_seconds if ttl_seconds is not None else self.config.intent_cache_ttl_seconds,
                    estimated_cost_usd=cost,
                    now=self._now(),
                )
        except sqlite3.Error as exc:
            log.error("Usage/cache write failed for %s: %s", organization_id, exc)
            write_error = Err(ErrorCode.STORE_UNAVAILABLE, "usage ledger or cache write failed", exc)

        return GovernedResult(
            response=_with_meta(payload, "ai", provider, model_used),
            mode="ai",
            intent_hash=intent_hash,
            estimated_cost_usd=cost,
            error=write_error,
            decision=decision,
            model_response=response,
            states=states,
        )

    @staticmethod
    def _fallback(
        fallback: Union[Dict, Callable[[], Dict]],
        states: List[GovernorState],
        error: Err,
        intent_hash: Optional[str] = None,
        budget_fallback: bool = False,
        decision: Optional[BudgetDecision] = None,
    ) -> GovernedResult:
        value = fallback() if callable(fallback) else fallback
        payload = value if isinstance(value, dict) else {"text": value}
        return GovernedResult(
            response=_with_meta(payload, "deterministic", "template", "template"),
            mode="deterministic",
            intent_hash=intent_hash,
            budget_fallback=budget_fallback,
            error=error,
            decision=decision,
            states=states,
        )
