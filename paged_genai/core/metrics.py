"""
paged-genai :: Prometheus Metrics

Metrics:
  - paged_genai_requests_total{endpoint}: requests served
  - paged_genai_request_errors_total{endpoint}: requests that failed
  - paged_genai_tokens_encoded_total: token ids produced by encode
  - paged_genai_tokens_decoded_total: token ids consumed by decode
  - paged_genai_request_duration_seconds{endpoint}: request latency

Each TokenizerMetrics owns its registry, so several servers (or tests) can
live in one process.

INL - 2025
"""

import time

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST


class TokenizerMetrics:
    """Prometheus metrics for the tokenizer server."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, model_name: str = ""):
        self.registry = CollectorRegistry()

        self.model_info = Info("paged_genai_model", "Model information", registry=self.registry)
        self.model_info.info({"name": model_name, "engine": "paged-genai"})

        self.requests_total = Counter(
            "paged_genai_requests_total", "Requests served", ["endpoint"], registry=self.registry,
        )
        self.request_errors = Counter(
            "paged_genai_request_errors_total", "Requests that failed", ["endpoint"], registry=self.registry,
        )
        self.tokens_encoded = Counter(
            "paged_genai_tokens_encoded_total", "Token ids produced by encode", registry=self.registry,
        )
        self.tokens_decoded = Counter(
            "paged_genai_tokens_decoded_total", "Token ids consumed by decode", registry=self.registry,
        )
        self.request_duration = Histogram(
            "paged_genai_request_duration_seconds",
            "Request latency",
            ["endpoint"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=self.registry,
        )

    def on_request_start(self, endpoint: str) -> float:
        self.requests_total.labels(endpoint=endpoint).inc()
        return time.perf_counter()

    def on_request_end(self, endpoint: str, start_time: float, error: bool = False):
        self.request_duration.labels(endpoint=endpoint).observe(time.perf_counter() - start_time)
        if error:
            self.request_errors.labels(endpoint=endpoint).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
