from __future__ import annotations

from prometheus_client import Counter, Histogram

RETRIEVAL_LATENCY = Histogram(
    "retrieval_duration_seconds",
    "Retrieval latency per source",
    ["source"],
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1,
        2.5,
        float("inf"),
    ),
)

RETRIEVAL_SOURCE_FAILURES = Counter(
    "retrieval_source_failures_total",
    "Retrieval sources that raised and were dropped from fusion",
    ["source"],
)

DOCUMENT_CACHE_LOOKUPS = Counter(
    "document_cache_lookups_total",
    "Document cache lookups by outcome",
    ["outcome"],
)

DOCUMENT_CACHE_WRITE_FAILURES = Counter(
    "document_cache_write_failures_total",
    "Document cache writes that failed and were skipped",
)
