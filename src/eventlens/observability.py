"""Metrics instrumentation that logs every sample and can export to Prometheus."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

_PROM_KINDS: dict[str, tuple[type, str]] = {
    "counter": (Counter, "counter"),
    "gauge": (Gauge, "gauge"),
    "histogram": (Histogram, "duration"),
}


class MetricsRecorder:
    """Emit structured metrics via logging and (optionally) Prometheus."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "eventlens",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "eventlens"
        self._logger = logger or logging.getLogger("eventlens.metrics")
        self._prometheus_enabled = prometheus_enabled
        if registry is None and prometheus_enabled:
            registry = CollectorRegistry()
        self._prom_registry = registry
        self._prom_metrics: dict[Tuple[str, str, Tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._prom_registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._prom_registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        self._observe("counter", metric, clean_tags, lambda m: m.inc(float(max(value, 0))))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        """Set the value of a gauge metric."""

        if not self._enabled:
            return
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        self._observe("gauge", metric, clean_tags, lambda m: m.set(float(value)))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs."""

        if not self._enabled:
            return
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        self._observe(
            "histogram", metric, clean_tags, lambda m: m.observe(max(duration_seconds, 0.0))
        )

    @contextmanager
    def track_timing(self, metric: str, **tags: Any):
        """Context manager that records execution time for the wrapped block."""

        if not self._enabled:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={self._stringify(value)}" for key, value in sorted(fields.items())]
        segments += [f"{key}={self._stringify(value)}" for key, value in sorted(tags.items())]
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _observe(self, kind: str, metric: str, tags: dict[str, Any], apply) -> None:
        if not self.prometheus_enabled:
            return
        label_keys = tuple(sorted(tags.keys()))
        label_names = tuple(self._sanitize_label(name) for name in label_keys)
        prom_key = (kind, metric, label_names)
        instrument = self._prom_metrics.get(prom_key)
        if instrument is None:
            factory, description = _PROM_KINDS[kind]
            instrument = factory(
                self._prom_metric_name(metric),
                f"{metric} {description}",
                labelnames=list(label_names),
                registry=self._prom_registry,
            )
            self._prom_metrics[prom_key] = instrument
        if label_names:
            instrument = instrument.labels(
                **{name: self._stringify(tags[key]) for name, key in zip(label_names, label_keys)}
            )
        apply(instrument)

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        return _PROM_NAME_RE.sub("_", label) or "label"

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, float):
            return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
        return str(value)
