"""
Prometheus Metrics

Defines all metrics exposed by the trust engine.
Metrics cover:
- Decision outcomes (decision types, degraded fail-open decisions)
- Ledger activity (score adjustments, restrictions)
- Fraud and safety signals (patterns, merchant suspects, circuit breaks)
- Operational health (side-effect tasks, store latency, errors)
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from ..config import settings

logger = logging.getLogger("trust_engine.metrics")


class TrustMetrics:
    """Container for all Prometheus metrics."""

    def __init__(self):
        # =====================================================================
        # Decision Metrics
        # =====================================================================
        self.decisions_total = Counter(
            "trust_decisions_total",
            "Claim decisions by type",
            labelnames=["decision_type"],
        )

        # Behavior lookup unavailable, claim approved without risk annotation
        self.degraded_decisions_total = Counter(
            "trust_degraded_decisions_total",
            "Decisions made fail-open because risk data was unavailable",
        )

        # =====================================================================
        # Ledger Metrics
        # =====================================================================
        self.score_adjustments_total = Counter(
            "trust_score_adjustments_total",
            "Trust score adjustments applied",
            labelnames=["entity_type"],
        )

        self.restrictions_total = Counter(
            "trust_restrictions_total",
            "Blacklists and suspensions triggered by score thresholds",
            labelnames=["entity_type"],
        )

        # =====================================================================
        # Fraud & Safety Metrics
        # =====================================================================
        self.fraud_patterns_total = Counter(
            "trust_fraud_patterns_total",
            "Fraud patterns recorded",
            labelnames=["pattern_type", "confirmed"],
        )

        self.merchant_suspects_total = Counter(
            "trust_merchant_suspects_total",
            "Unlinked simultaneous complaints against one merchant",
        )

        self.circuit_breaks_total = Counter(
            "trust_circuit_breaks_total",
            "Food-safety circuit breaker outcomes",
            labelnames=["reason_code"],
        )

        # =====================================================================
        # System Metrics
        # =====================================================================
        self.side_effects_total = Counter(
            "trust_side_effects_total",
            "Side-effect task executions",
            labelnames=["task", "outcome"],
        )

        self.store_latency = Histogram(
            "trust_store_latency_ms",
            "Ledger store operation latency in milliseconds",
            buckets=[1, 2, 5, 10, 25, 50, 100, 250, 500],
        )

        self.errors_total = Counter(
            "trust_errors_total",
            "Total number of errors",
            labelnames=["error_type"],
        )

        # Policy version
        self.policy_version_info = Gauge(
            "trust_policy_version",
            "Loaded policy version (1 for the active version label)",
            labelnames=["version"],
        )


# Global metrics instance
metrics = TrustMetrics()


def setup_metrics() -> None:
    """
    Setup Prometheus metrics server.

    Starts HTTP server on configured port to expose metrics.
    """
    if settings.metrics_enabled:
        try:
            start_http_server(settings.metrics_port)
            logger.info("Metrics server started on port %d", settings.metrics_port)
        except Exception as e:
            logger.warning("Failed to start metrics server: %s", e)
