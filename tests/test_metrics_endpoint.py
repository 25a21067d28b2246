from __future__ import annotations

import httpx
import pytest

from legalflow.core.metrics import (
    increment_cache_hit,
    increment_intent_source,
    increment_task_transition,
    mark_plan_finished,
    mark_plan_started,
    observe_agent_latency,
)


@pytest.mark.asyncio
async def test_metrics_endpoint_includes_custom_series(monkeypatch: pytest.MonkeyPatch) -> None:
    from legalflow import main

    monkeypatch.setattr(main.settings.observability, "prometheus_enabled", True, raising=False)

    observe_agent_latency(agent="research", latency=2.5)
    increment_task_transition(agent="research", status="completed")
    mark_plan_started(nodes=2)
    mark_plan_finished(status="completed")
    increment_intent_source(source="fallback")
    increment_cache_hit(mode="exact")

    transport = httpx.ASGITransport(app=main.app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")

    body = response.text
    assert 'legalflow_agent_execution_latency_seconds_bucket{agent="research"' in body
    assert 'legalflow_task_transitions_total{agent="research",status="completed"}' in body
    assert 'legalflow_plan_outcomes_total{status="completed"}' in body
    assert "legalflow_plan_nodes_bucket" in body
    assert "legalflow_plans_active" in body
    assert 'legalflow_intent_analysis_total{source="fallback"}' in body
    assert 'legalflow_cache_hits_total{mode="exact"}' in body
