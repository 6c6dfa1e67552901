"""Prometheus metrics for oracle calls and the action lifecycle.

Provides:
- track_oracle_call(): Context manager recording oracle latency, outcome
  and token usage
- Counters for proposals, evaluation decisions, executions and cleanups
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import Counter, Histogram

# ── Oracle Metrics ───────────────────────────────────────────────────────────

oracle_requests_total = Counter(
    "pipeline_oracle_requests_total",
    "Total reasoning oracle requests",
    ["agent", "status"],
)

oracle_request_duration_seconds = Histogram(
    "pipeline_oracle_request_duration_seconds",
    "Reasoning oracle request duration in seconds",
    ["agent"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

oracle_tokens_used_total = Counter(
    "pipeline_oracle_tokens_used_total",
    "Total tokens consumed by oracle calls",
    ["agent", "token_type"],
)

# ── Action Lifecycle Metrics ─────────────────────────────────────────────────

actions_proposed_total = Counter(
    "pipeline_actions_proposed_total",
    "Proposed actions persisted",
    ["action_type", "source"],
)

evaluation_decisions_total = Counter(
    "pipeline_evaluation_decisions_total",
    "Evaluation decisions applied to open actions",
    ["decision"],
)

action_executions_total = Counter(
    "pipeline_action_executions_total",
    "Action executions by outcome",
    ["action_type", "outcome"],
)

activity_cleanups_total = Counter(
    "pipeline_activity_cleanups_total",
    "Resulting activity cleanup attempts",
    ["activity_kind", "result"],
)


# ── Oracle Metrics Helper ────────────────────────────────────────────────────


@asynccontextmanager
async def track_oracle_call(agent: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks oracle call metrics.

    Usage:
        async with track_oracle_call("proposal_agent") as tracker:
            result = await llm.completion(...)
            tracker["prompt_tokens"] = result["usage"]["prompt_tokens"]

    Records duration, request count (success/error) and token usage when
    set on the tracker dict.
    """
    tracker: dict[str, Any] = {
        "prompt_tokens": 0,
        "completion_tokens": 0,
    }
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        oracle_requests_total.labels(agent=agent, status=status).inc()
        oracle_request_duration_seconds.labels(agent=agent).observe(duration)

        if tracker.get("prompt_tokens"):
            oracle_tokens_used_total.labels(
                agent=agent,
                token_type="prompt",
            ).inc(tracker["prompt_tokens"])

        if tracker.get("completion_tokens"):
            oracle_tokens_used_total.labels(
                agent=agent,
                token_type="completion",
            ).inc(tracker["completion_tokens"])
