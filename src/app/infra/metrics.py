# src/app/infra/metrics.py
"""
Conversion metrics on the OpenTelemetry metrics API.
Without a configured MeterProvider the instruments are no-ops.
"""
from __future__ import annotations

import logging
from typing import Optional

from opentelemetry import metrics

logger = logging.getLogger(__name__)

METER_NAME = "file_conversion_api"


class ConversionMetrics:
    def __init__(self, meter: Optional[metrics.Meter] = None):
        meter = meter or metrics.get_meter(METER_NAME)
        self._jobs_total = meter.create_counter(
            "conversion_jobs_total",
            unit="1",
            description="Total number of conversion jobs by formats and status",
        )
        self._duration = meter.create_histogram(
            "conversion_job_duration_seconds",
            unit="s",
            description="Duration of conversion jobs",
        )
        self._active = meter.create_up_down_counter(
            "conversion_jobs_active",
            unit="1",
            description="Conversion jobs currently processing",
        )

    def record_started(self, source_format: str, target_format: str) -> None:
        try:
            attributes = _attributes(source_format, target_format)
            self._jobs_total.add(1, {**attributes, "status": "started"})
            self._active.add(1, attributes)
        except Exception as error:
            logger.warning("Failed to record conversion start metric: %s", error)

    def record_completed(self, source_format: str, target_format: str, duration_seconds: float) -> None:
        self._record_finished(source_format, target_format, "completed", duration_seconds)

    def record_failed(self, source_format: str, target_format: str, duration_seconds: float = 0.0) -> None:
        self._record_finished(source_format, target_format, "failed", duration_seconds)

    def _record_finished(
        self,
        source_format: str,
        target_format: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        try:
            attributes = _attributes(source_format, target_format)
            self._jobs_total.add(1, {**attributes, "status": status})
            self._active.add(-1, attributes)
            self._duration.record(duration_seconds, {**attributes, "status": status})
        except Exception as error:
            logger.warning("Failed to record conversion %s metric: %s", status, error)


def _attributes(source_format: str, target_format: str) -> dict[str, str]:
    return {"source_format": source_format, "target_format": target_format}
