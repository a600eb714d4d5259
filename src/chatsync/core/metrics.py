"""OpenTelemetry metrics instruments for the synchronization engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around and recordings made before
``init_metrics`` are silent no-ops.

Instruments
-----------
  chatsync.retry.attempts_total         Counter  (label: operation)
      Retries performed after a transient storage failure.

  chatsync.batch.completed_total        Counter  (label: entity)
      Bulk-write batches whose transaction committed.

  chatsync.batch.failed_total           Counter  (label: entity)
      Bulk-write batches whose transaction rolled back.

  chatsync.batch.progress_ratio         Histogram (label: entity)
      Cumulative completion ratio sampled at each progress report.

  chatsync.records.written_total        Counter  (labels: entity, op)
      Rows created or updated.

  chatsync.records.skipped_total        Counter  (labels: entity, reason)
      Records skipped (missing identity, missing target row, failed write).

  chatsync.sanitizer.dropped_fields_total Counter (label: entity)
      Unknown fields filtered out by the allowlist.

All instruments carry a ``session`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "chatsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Convenience wrapper that caches the engine's instruments.

    One instance is shared through :class:`chatsync.context.SyncContext`;
    the session label is supplied per recording because a single process may
    run several sessions.
    """

    def __init__(self) -> None:
        self._retry_attempts: metrics.Counter | None = None
        self._batch_completed: metrics.Counter | None = None
        self._batch_failed: metrics.Counter | None = None
        self._batch_progress: metrics.Histogram | None = None
        self._records_written: metrics.Counter | None = None
        self._records_skipped: metrics.Counter | None = None
        self._dropped_fields: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def retry_attempts(self) -> metrics.Counter:
        if self._retry_attempts is None:
            self._retry_attempts = get_meter().create_counter(
                name="chatsync.retry.attempts_total",
                description="Retries performed after a transient storage failure",
                unit="retries",
            )
        return self._retry_attempts

    @property
    def batch_completed(self) -> metrics.Counter:
        if self._batch_completed is None:
            self._batch_completed = get_meter().create_counter(
                name="chatsync.batch.completed_total",
                description="Bulk-write batches whose transaction committed",
                unit="batches",
            )
        return self._batch_completed

    @property
    def batch_failed(self) -> metrics.Counter:
        if self._batch_failed is None:
            self._batch_failed = get_meter().create_counter(
                name="chatsync.batch.failed_total",
                description="Bulk-write batches whose transaction rolled back",
                unit="batches",
            )
        return self._batch_failed

    @property
    def batch_progress(self) -> metrics.Histogram:
        if self._batch_progress is None:
            self._batch_progress = get_meter().create_histogram(
                name="chatsync.batch.progress_ratio",
                description="Cumulative bulk-write completion ratio at each progress report",
                unit="1",
            )
        return self._batch_progress

    @property
    def records_written(self) -> metrics.Counter:
        if self._records_written is None:
            self._records_written = get_meter().create_counter(
                name="chatsync.records.written_total",
                description="Rows created or updated",
                unit="records",
            )
        return self._records_written

    @property
    def records_skipped(self) -> metrics.Counter:
        if self._records_skipped is None:
            self._records_skipped = get_meter().create_counter(
                name="chatsync.records.skipped_total",
                description="Records skipped instead of written",
                unit="records",
            )
        return self._records_skipped

    @property
    def dropped_fields(self) -> metrics.Counter:
        if self._dropped_fields is None:
            self._dropped_fields = get_meter().create_counter(
                name="chatsync.sanitizer.dropped_fields_total",
                description="Unknown fields filtered out by the per-entity allowlist",
                unit="fields",
            )
        return self._dropped_fields

    # -- recording helpers ---------------------------------------------------

    def record_retry(self, *, session: str | None, operation: str) -> None:
        """Record one retry of *operation*."""
        self.retry_attempts.add(1, {"session": session or "", "operation": operation})

    def record_batch(self, *, session: str | None, entity: str, ok: bool) -> None:
        """Record one committed (``ok``) or rolled-back batch."""
        counter = self.batch_completed if ok else self.batch_failed
        counter.add(1, {"session": session or "", "entity": entity})

    def record_progress(self, *, session: str | None, entity: str, ratio: float) -> None:
        """Record the cumulative completion ratio of a bulk write."""
        self.batch_progress.record(ratio, {"session": session or "", "entity": entity})

    def record_written(self, *, session: str | None, entity: str, op: str, count: int = 1) -> None:
        """Record *count* rows written by operation *op* (create/update)."""
        if count:
            self.records_written.add(count, {"session": session or "", "entity": entity, "op": op})

    def record_skipped(self, *, session: str | None, entity: str, reason: str) -> None:
        """Record one skipped record."""
        self.records_skipped.add(1, {"session": session or "", "entity": entity, "reason": reason})

    def record_dropped_fields(self, *, session: str | None, entity: str, count: int) -> None:
        """Record *count* fields filtered by the allowlist."""
        if count:
            self.dropped_fields.add(count, {"session": session or "", "entity": entity})
