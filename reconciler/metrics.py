from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_CYCLES = Counter(
    "reconciler_cycles_total",
    "Reconciliation cycles by outcome",
    labelnames=("result", "reason"),
)
_CYCLE_LATENCY = Histogram(
    "reconciler_cycle_duration_seconds",
    "Reconciliation cycle duration seconds",
    buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0),
)
_CA_ACTIONS = Counter(
    "reconciler_ca_actions_total",
    "Certificate authority lifecycle actions",
    labelnames=("scope", "action"),
)
_RESTARTS = Counter(
    "reconciler_instance_restarts_total",
    "Instance restarts issued by the rolling-update orchestrator",
    labelnames=("role", "result"),
)
_DEPENDENT_ROLLOUTS = Counter(
    "reconciler_dependent_rollouts_total",
    "Dependent deployment rollouts",
    labelnames=("result",),
)
_SUBSTRATE_OPS = Counter(
    "reconciler_substrate_operations_total",
    "Substrate CLI operations",
    labelnames=("backend", "action", "result"),
)


def record_cycle(*, ok: bool, reason: str, duration_seconds: float) -> None:
    _CYCLES.labels(result="ok" if ok else "error", reason=reason).inc()
    _CYCLE_LATENCY.observe(duration_seconds)


def record_ca_action(*, scope: str, action: str) -> None:
    _CA_ACTIONS.labels(scope=scope, action=action).inc()


def record_restart(*, role: str, ok: bool) -> None:
    _RESTARTS.labels(role=role, result="ok" if ok else "error").inc()


def record_dependent_rollout(*, ok: bool) -> None:
    _DEPENDENT_ROLLOUTS.labels(result="ok" if ok else "error").inc()


def record_substrate_operation(*, backend: str, action: str, ok: bool) -> None:
    _SUBSTRATE_OPS.labels(backend=backend, action=action, result="ok" if ok else "error").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
