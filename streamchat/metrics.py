"""Prometheus metrics for chat generations and backend calls."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ── Generations ─────────────────────────────────────────────────────────

generations_total = Counter(
    "streamchat_generations_total",
    "Finished generations by terminal state",
    ["outcome", "source"],
)

generation_duration = Histogram(
    "streamchat_generation_duration_seconds",
    "Generation wall time from start to terminal state",
    ["outcome"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 180],
)

active_generations = Gauge(
    "streamchat_active_generations",
    "Generations currently registered as in flight",
)

# ── Backend ─────────────────────────────────────────────────────────────

backend_retries_total = Counter(
    "streamchat_backend_retries_total",
    "Backend calls retried after a retryable error",
    ["mode"],
)

backend_fatal_total = Counter(
    "streamchat_backend_fatal_total",
    "Backend calls that ended in a fatal error",
    ["mode"],
)
