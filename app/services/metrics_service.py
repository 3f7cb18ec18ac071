"""
Prometheus metrics for the WA Bridge backend.

Tracks HTTP traffic plus the domain events worth alerting on:
gateway call outcomes, link claims and reconciliation results.
"""

import time
import logging

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

from app.core.config import settings

logger = logging.getLogger(__name__)


RESPONSE_TIME_BUCKETS = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0
)


class MetricsCollector:
    """
    Owns a private CollectorRegistry so repeated imports (tests, reloads)
    never register the same metric twice.
    """

    def __init__(self):
        self._start_time = time.time()
        self.registry = CollectorRegistry()

        self.app_info = Info(
            "wabridge_app",
            "WA Bridge application information",
            registry=self.registry
        )
        self.app_info.info({
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "app_name": settings.APP_NAME
        })

        self.request_counter = Counter(
            "wabridge_http_requests_total",
            "Total number of HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )
        self.request_duration = Histogram(
            "wabridge_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=RESPONSE_TIME_BUCKETS,
            registry=self.registry
        )
        self.gateway_calls = Counter(
            "wabridge_gateway_calls_total",
            "Outbound calls to the messaging gateway and CRM provider",
            ["service", "operation", "outcome"],
            registry=self.registry
        )
        self.link_claims = Counter(
            "wabridge_link_claims_total",
            "CRM location link attempts by outcome",
            ["outcome"],
            registry=self.registry
        )
        self.reconciliations = Counter(
            "wabridge_reconciliations_total",
            "Instance state reports by outcome",
            ["outcome"],
            registry=self.registry
        )
        self.uptime_gauge = Gauge(
            "wabridge_uptime_seconds",
            "Application uptime in seconds",
            registry=self.registry
        )

    def record_request(self, method: str, endpoint: str, status_code: int, duration_seconds: float):
        normalized_endpoint = self._normalize_endpoint(endpoint)
        self.request_counter.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code)
        ).inc()
        self.request_duration.labels(
            method=method,
            endpoint=normalized_endpoint
        ).observe(duration_seconds)

    def record_gateway_call(self, service: str, operation: str, outcome: str):
        self.gateway_calls.labels(service=service, operation=operation, outcome=outcome).inc()

    def record_link_claim(self, outcome: str):
        self.link_claims.labels(outcome=outcome).inc()

    def record_reconciliation(self, outcome: str):
        self.reconciliations.labels(outcome=outcome).inc()

    def get_prometheus_metrics(self) -> bytes:
        self.uptime_gauge.set(time.time() - self._start_time)
        return generate_latest(self.registry)

    def get_prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def _normalize_endpoint(self, endpoint: str) -> str:
        """Replace ID-like path segments with a placeholder to keep label cardinality bounded."""
        if not endpoint:
            return "/"

        normalized = []
        for segment in endpoint.split("/"):
            if not segment:
                continue
            if self._is_dynamic_segment(segment):
                normalized.append("{id}")
            else:
                normalized.append(segment)

        return "/" + "/".join(normalized) if normalized else "/"

    def _is_dynamic_segment(self, segment: str) -> bool:
        # UUID
        if len(segment) == 36 and segment.count("-") == 4:
            return True
        if segment.isdigit():
            return True
        # GHL ids are 20-char alphanumerics
        if len(segment) >= 20 and segment.isalnum() and any(c.isdigit() for c in segment):
            return True
        return False


metrics_collector = MetricsCollector()
