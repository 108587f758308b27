"""Admission pipeline: global ceiling, bulk gate, burst, sustained, per-token quotas."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from ..stores.base import CounterLimit, CounterStore, KeySpace, StoreUnavailableError
from ..utils.config_loader import GatewayConfig, PlanPolicy
from ..utils.logging_config import StructuredLogger
from .collaborators import DefaultPlanResolver, PlanResolver
from .errors import ToolError, internal_error
from .types import AdmissionReason, AdmissionResult, CounterScope, Identity, OperationClass

logger = StructuredLogger(__name__)

BULK_WINDOW_SECONDS = 3600
_STORE_RETRY_SECONDS = 5
_TOKEN_SUBJECT_PREFIX = "token:"


@dataclass(frozen=True)
class _Window:
    scope: CounterScope
    key: str
    limit: int
    window_seconds: int
    reason: AdmissionReason


class AdmissionController:
    """Layered quota checks against a shared counter store.

    Every limit is checked and, only if all pass, every counter incremented in
    a single store-native step (burst, sustained, token, then global), so
    concurrent callers cannot overshoot a limit. A denial writes nothing.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        config: Callable[[], GatewayConfig],
        plans: PlanResolver | None = None,
        keys: KeySpace | None = None,
    ) -> None:
        self._counters = counters
        self._config = config
        self._plans = plans or DefaultPlanResolver(config)
        self._keys = keys or KeySpace()

    # ── Public API ──────────────────────────────────────────────────────────

    def check(
        self,
        identity: Identity,
        operation_class: OperationClass | str,
        item_count: int = 1,
    ) -> AdmissionResult:
        try:
            op = OperationClass(operation_class)
        except ValueError:
            return self._invalid(identity, f"Unknown operation class '{operation_class}'")
        if not isinstance(item_count, int) or item_count < 1:
            return self._invalid(identity, "item_count must be a positive integer")

        cfg = self._config()
        plan = self._plans.resolve(identity)
        policy = cfg.plan_policy(plan)
        snapshot: dict[str, Any] = {"plan": plan, "operation_class": str(op)}

        try:
            return self._check(identity, op, item_count, cfg, policy, snapshot)
        except StoreUnavailableError as exc:
            if cfg.fail_open:
                logger.warning(
                    "Counter store unavailable; admitting (fail_open)",
                    identity=identity.id,
                    operation_class=str(op),
                    error=str(exc),
                )
                return AdmissionResult(allowed=True, snapshot={**snapshot, "degraded": True})
            logger.error(
                "Counter store unavailable; denying",
                identity=identity.id,
                operation_class=str(op),
                error=str(exc),
            )
            return AdmissionResult(
                allowed=False,
                reason=AdmissionReason.STORE_UNAVAILABLE,
                retry_after_seconds=_STORE_RETRY_SECONDS,
                snapshot=snapshot,
            )

    def get_usage(self, identity: Identity) -> dict[str, Any] | ToolError:
        """Current counters against the caller's plan, for self-service display."""
        cfg = self._config()
        plan = self._plans.resolve(identity)
        policy = cfg.plan_policy(plan)
        get = self._counters.get

        try:
            per_class: dict[str, Any] = {}
            for op in (OperationClass.READ, OperationClass.WRITE):
                window = policy.window_for(op)
                current = get(self._key(CounterScope.SUSTAINED, op, identity.id))
                per_class[str(op)] = {
                    "current": current,
                    "limit": window.sustained_limit,
                    "remaining": max(0, window.sustained_limit - current),
                    "window_seconds": window.sustained_window_seconds,
                    "burst_current": get(self._key(CounterScope.BURST, op, identity.id)),
                    "burst_limit": window.burst_limit,
                    "burst_window_seconds": window.burst_window_seconds,
                }
            bulk_current = get(self._key(CounterScope.BULK, OperationClass.BULK, identity.id))
            per_class[str(OperationClass.BULK)] = {
                "current": bulk_current,
                "limit": policy.bulk_calls_per_hour,
                "remaining": max(0, policy.bulk_calls_per_hour - bulk_current),
                "window_seconds": BULK_WINDOW_SECONDS,
                "max_items": policy.bulk_max_items_per_call,
            }

            usage: dict[str, Any] = {
                "plan": plan,
                "per_class_usage": per_class,
                "global": {
                    "current": get(self._keys.global_counter()),
                    "limit": cfg.global_limit.limit,
                    "window_seconds": cfg.global_limit.window_seconds,
                },
                "chain_depth_limit": policy.chain_depth_limit,
                "export_per_day": policy.export_per_day,
            }
            if identity.token_id:
                subject = _TOKEN_SUBJECT_PREFIX + identity.token_id
                usage["token_usage"] = {
                    str(op): get(self._key(CounterScope.SUSTAINED, op, subject))
                    for op in (OperationClass.READ, OperationClass.WRITE)
                }
                usage["token_usage"][str(OperationClass.BULK)] = get(
                    self._key(CounterScope.BULK, OperationClass.BULK, subject)
                )
            return usage
        except StoreUnavailableError as exc:
            logger.error("Usage lookup failed", identity=identity.id, error=str(exc))
            return internal_error("Quota service is unavailable.")

    def get_plan_limits(self, identity: Identity) -> dict[str, Any]:
        cfg = self._config()
        plan = self._plans.resolve(identity)
        policy = cfg.plan_policy(plan)
        return {
            "plan": plan,
            "read_per_minute": policy.read.sustained_limit,
            "write_per_minute": policy.write.sustained_limit,
            "bulk_per_hour": policy.bulk_calls_per_hour,
            "bulk_max_items": policy.bulk_max_items_per_call,
            "chain_depth": policy.chain_depth_limit,
            "export_per_day": policy.export_per_day,
        }

    def chain_depth_limit(self, identity: Identity) -> int:
        cfg = self._config()
        return cfg.plan_policy(self._plans.resolve(identity)).chain_depth_limit

    def export_limit(self, identity: Identity) -> int:
        cfg = self._config()
        return cfg.plan_policy(self._plans.resolve(identity)).export_per_day

    def reset_identity(self, identity_id: str, token_ids: Iterable[str] = ()) -> int:
        """Clear an identity's counters (and its credentials' counters). Sessions are untouched."""
        subjects = [identity_id, *(_TOKEN_SUBJECT_PREFIX + t for t in token_ids)]
        keys: list[str] = []
        for subject in subjects:
            for op in (OperationClass.READ, OperationClass.WRITE):
                keys.append(self._key(CounterScope.BURST, op, subject))
                keys.append(self._key(CounterScope.SUSTAINED, op, subject))
            keys.append(self._key(CounterScope.BULK, OperationClass.BULK, subject))
        deleted = self._counters.delete(*keys)
        logger.warning("Rate limits reset for identity", identity=identity_id, keys_deleted=deleted)
        return deleted

    def reset_all(self) -> int:
        """Clear every counter, the global one included. Sessions are untouched."""
        deleted = self._counters.delete_prefix(self._keys.counters_prefix)
        logger.warning("All rate limits reset", keys_deleted=deleted)
        return deleted

    # ── Internals ───────────────────────────────────────────────────────────

    def _key(self, scope: CounterScope, op: OperationClass, subject: str) -> str:
        return self._keys.counter(str(scope), str(op), subject)

    def _windows(self, identity: Identity, op: OperationClass, policy: PlanPolicy) -> list[_Window]:
        token_subject = _TOKEN_SUBJECT_PREFIX + identity.token_id if identity.token_id else None

        if op == OperationClass.BULK:
            scope = CounterScope.BULK
            windows = [
                _Window(
                    scope,
                    self._key(scope, op, identity.id),
                    policy.bulk_calls_per_hour,
                    BULK_WINDOW_SECONDS,
                    AdmissionReason.SUSTAINED_LIMIT_EXCEEDED,
                )
            ]
            if token_subject:
                windows.append(
                    _Window(
                        scope,
                        self._key(scope, op, token_subject),
                        policy.bulk_calls_per_hour,
                        BULK_WINDOW_SECONDS,
                        AdmissionReason.TOKEN_LIMIT_EXCEEDED,
                    )
                )
            return windows

        window = policy.window_for(op)
        windows = [
            _Window(
                CounterScope.BURST,
                self._key(CounterScope.BURST, op, identity.id),
                window.burst_limit,
                window.burst_window_seconds,
                AdmissionReason.BURST_LIMIT_EXCEEDED,
            ),
            _Window(
                CounterScope.SUSTAINED,
                self._key(CounterScope.SUSTAINED, op, identity.id),
                window.sustained_limit,
                window.sustained_window_seconds,
                AdmissionReason.SUSTAINED_LIMIT_EXCEEDED,
            ),
        ]
        if token_subject:
            windows.append(
                _Window(
                    CounterScope.SUSTAINED,
                    self._key(CounterScope.SUSTAINED, op, token_subject),
                    window.sustained_limit,
                    window.sustained_window_seconds,
                    AdmissionReason.TOKEN_LIMIT_EXCEEDED,
                )
            )
        return windows

    def _deny(
        self,
        identity: Identity,
        reason: AdmissionReason,
        retry_after: int,
        snapshot: dict[str, Any],
    ) -> AdmissionResult:
        logger.warning(
            "Admission denied",
            identity=identity.id,
            reason=str(reason),
            retry_after=retry_after,
            **snapshot,
        )
        return AdmissionResult(
            allowed=False,
            reason=reason,
            retry_after_seconds=retry_after,
            snapshot=snapshot,
        )

    def _invalid(self, identity: Identity, detail: str) -> AdmissionResult:
        logger.warning("Admission request rejected", identity=identity.id, detail=detail)
        return AdmissionResult(
            allowed=False,
            reason=AdmissionReason.INVALID_REQUEST,
            retry_after_seconds=0,
            snapshot={"detail": detail},
        )

    def _check(
        self,
        identity: Identity,
        op: OperationClass,
        item_count: int,
        cfg: GatewayConfig,
        policy: PlanPolicy,
        snapshot: dict[str, Any],
    ) -> AdmissionResult:
        counters = self._counters
        ceiling = CounterLimit(
            self._keys.global_counter(),
            cfg.global_limit.limit,
            cfg.global_limit.window_seconds,
        )

        # Bulk gate: plan eligibility and per-call item ceiling. These need no
        # counter, but a saturated global ceiling is still reported first.
        if op == OperationClass.BULK:
            snapshot["max_items"] = policy.bulk_max_items_per_call
            gate = None
            if policy.bulk_max_items_per_call == 0 or policy.bulk_calls_per_hour == 0:
                gate = AdmissionReason.BULK_NOT_ALLOWED_FOR_PLAN
            elif item_count > policy.bulk_max_items_per_call:
                snapshot["requested"] = item_count
                gate = AdmissionReason.BULK_ITEM_LIMIT_EXCEEDED
            if gate is not None:
                if counters.get(ceiling.key) >= ceiling.limit:
                    retry = counters.ttl(ceiling.key) or ceiling.ttl_seconds
                    return self._deny(identity, AdmissionReason.GLOBAL_LIMIT_EXCEEDED, retry, snapshot)
                return self._deny(identity, gate, 0, snapshot)

        # Global, then burst (non-bulk), sustained, per-token; all in one store step.
        windows = self._windows(identity, op, policy)
        outcome = counters.admit(
            [CounterLimit(w.key, w.limit, w.window_seconds) for w in windows],
            ceiling,
        )

        if not outcome.allowed:
            if outcome.denied_key == ceiling.key:
                retry = outcome.retry_after or ceiling.ttl_seconds
                return self._deny(identity, AdmissionReason.GLOBAL_LIMIT_EXCEEDED, retry, snapshot)
            window = next(w for w in windows if w.key == outcome.denied_key)
            snapshot["limit"] = window.limit
            snapshot["window_seconds"] = window.window_seconds
            return self._deny(identity, window.reason, outcome.retry_after or window.window_seconds, snapshot)

        sustained = windows[0] if op == OperationClass.BULK else windows[1]
        snapshot["current"] = outcome.counts.get(sustained.key, 0)
        snapshot["limit"] = sustained.limit
        snapshot["window_seconds"] = sustained.window_seconds
        if op == OperationClass.BULK:
            snapshot["delay_ms"] = cfg.bulk_item_delay_ms
        return AdmissionResult(allowed=True, snapshot=snapshot)
