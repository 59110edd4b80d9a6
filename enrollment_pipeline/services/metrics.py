"""
Pipeline counters on prometheus_client.

Workers and the API run as separate processes. With
``PROMETHEUS_MULTIPROC_DIR`` set (before either starts), each process
writes its samples to that directory and ``exposition()`` merges them, so
the API's ``/metrics`` also reports what the workers counted. The
directory must be emptied between deployments.
"""

from __future__ import annotations

import os

from prometheus_client import CollectorRegistry, Counter, generate_latest, multiprocess

COUNTERS = {
    "enrollment_transitions_total": ("Enrollment status transitions", ("from", "to")),
    "stage_failures_total": ("Stage failures recorded by the orchestrator", ("stage",)),
    "ocr_documents_total": ("Documents through OCR, by outcome", ("outcome",)),
    "webhook_deliveries_total": ("Webhook delivery attempts, by outcome", ("outcome",)),
}


class MetricsRegistry:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Start over with fresh counters in a fresh registry."""
        self.registry = CollectorRegistry()
        self._counters = {
            name: Counter(name, documentation, labelnames, registry=self.registry)
            for name, (documentation, labelnames) in COUNTERS.items()
        }

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        self._counters[name].labels(**labels).inc(amount)

    def value(self, name: str, **labels: str) -> float:
        """This process's count for one label combination."""
        return self.registry.get_sample_value(name, labels) or 0

    def total(self, name: str) -> float:
        """Sum of a counter across every label combination."""
        return sum(
            sample.value
            for family in self.registry.collect()
            for sample in family.samples
            if sample.name == name
        )

    def exposition(self) -> bytes:
        if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
            merged = CollectorRegistry()
            multiprocess.MultiProcessCollector(merged)
            return generate_latest(merged)
        return generate_latest(self.registry)


metrics = MetricsRegistry()
