from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

AGENT_LATENCY_SECONDS = Histogram(
    "legalflow_agent_execution_latency_seconds",
    "Latency for each agent execution",
    labelnames=("agent",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

TASK_TRANSITIONS_TOTAL = Counter(
    "legalflow_task_transitions_total",
    "Agent task status transitions",
    labelnames=("agent", "status"),
)

PLAN_OUTCOMES_TOTAL = Counter(
    "legalflow_plan_outcomes_total",
    "Orchestration plans grouped by terminal status",
    labelnames=("status",),
)

PLAN_NODES = Histogram(
    "legalflow_plan_nodes",
    "Number of nodes per orchestration plan",
    buckets=(1, 2, 3, 4, 5, 8),
)

PLANS_ACTIVE_GAUGE = Gauge(
    "legalflow_plans_active",
    "Orchestration plans currently executing",
)

INTENT_ANALYSIS_TOTAL = Counter(
    "legalflow_intent_analysis_total",
    "Intent classifications grouped by the path that produced them",
    labelnames=("source",),
)

CACHE_HITS_TOTAL = Counter(
    "legalflow_cache_hits_total",
    "Result cache hits by lookup mode",
    labelnames=("mode",),
)

CACHE_MISSES_TOTAL = Counter(
    "legalflow_cache_misses_total",
    "Result cache misses by lookup mode",
    labelnames=("mode",),
)

CACHE_WRITE_FAILURES_TOTAL = Counter(
    "legalflow_cache_write_failures_total",
    "Result cache writes that failed and were skipped",
)

CACHE_EVICTIONS_TOTAL = Counter(
    "legalflow_cache_evictions_total",
    "Expired cache entries removed by sweeps",
)


def observe_agent_latency(*, agent: str, latency: float) -> None:
    AGENT_LATENCY_SECONDS.labels(agent=agent).observe(latency)


def increment_task_transition(*, agent: str, status: str) -> None:
    TASK_TRANSITIONS_TOTAL.labels(agent=agent, status=status).inc()


def mark_plan_started(*, nodes: int) -> None:
    PLANS_ACTIVE_GAUGE.inc()
    PLAN_NODES.observe(max(0, nodes))


def mark_plan_finished(*, status: str) -> None:
    PLANS_ACTIVE_GAUGE.dec()
    PLAN_OUTCOMES_TOTAL.labels(status=status).inc()


def increment_intent_source(*, source: str) -> None:
    INTENT_ANALYSIS_TOTAL.labels(source=source).inc()


def increment_cache_hit(*, mode: str) -> None:
    CACHE_HITS_TOTAL.labels(mode=mode).inc()


def increment_cache_miss(*, mode: str) -> None:
    CACHE_MISSES_TOTAL.labels(mode=mode).inc()


def increment_cache_write_failure() -> None:
    CACHE_WRITE_FAILURES_TOTAL.inc()


def increment_cache_evictions(*, count: int) -> None:
    if count > 0:
        CACHE_EVICTIONS_TOTAL.inc(count)
