"""OpenTelemetry metrics instruments for the calendar sync engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during process startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  calsync.sync.passes_total        Counter  (labels: sync_type, outcome)
      Mapping passes by type and outcome (success|partial|failed|skipped).

  calsync.sync.events_total        Counter  (label: action)
      Provider events reconciled, by reconcile action.

  calsync.sync.duration_ms         Histogram (label: sync_type)
      Wall-clock duration of one mapping pass.

  calsync.token.refresh_total      Counter  (label: outcome=success|failure)
      OAuth refresh attempts.

  calsync.provider.retries_total   Counter  (label: reason)
      Provider call retries (unauthorized, rate_limited, transient, timeout).
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"


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
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instrument factories
# ---------------------------------------------------------------------------


def _sync_passes_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.sync.passes_total",
        description="Calendar mapping sync passes by type and outcome",
        unit="passes",
    )


def _sync_events_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.sync.events_total",
        description="Provider events reconciled, by action",
        unit="events",
    )


def _sync_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calsync.sync.duration_ms",
        description="Duration of one calendar mapping sync pass in milliseconds",
        unit="ms",
    )


def _token_refresh_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.token.refresh_total",
        description="OAuth access token refresh attempts by outcome",
        unit="refreshes",
    )


def _provider_retries_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.provider.retries_total",
        description="Calendar provider call retries by reason",
        unit="retries",
    )


class SyncMetrics:
    """Lazily-instrumented recorder shared by the sync components.

    Safe to construct before ``init_metrics``; recordings are no-ops until a
    real provider is installed.
    """

    def __init__(self) -> None:
        self.__passes: metrics.Counter | None = None
        self.__events: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None
        self.__refreshes: metrics.Counter | None = None
        self.__retries: metrics.Counter | None = None

    @property
    def _passes(self) -> metrics.Counter:
        if self.__passes is None:
            self.__passes = _sync_passes_total()
        return self.__passes

    @property
    def _events(self) -> metrics.Counter:
        if self.__events is None:
            self.__events = _sync_events_total()
        return self.__events

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = _sync_duration_ms()
        return self.__duration

    @property
    def _refreshes(self) -> metrics.Counter:
        if self.__refreshes is None:
            self.__refreshes = _token_refresh_total()
        return self.__refreshes

    @property
    def _retries(self) -> metrics.Counter:
        if self.__retries is None:
            self.__retries = _provider_retries_total()
        return self.__retries

    def record_pass(self, sync_type: str, outcome: str, duration_ms: int) -> None:
        """Record a finished mapping pass."""
        self._passes.add(1, {"sync_type": sync_type, "outcome": outcome})
        self._duration.record(duration_ms, {"sync_type": sync_type})

    def record_event(self, action: str) -> None:
        self._events.add(1, {"action": action})

    def record_token_refresh(self, *, success: bool) -> None:
        self._refreshes.add(1, {"outcome": "success" if success else "failure"})

    def record_retry(self, reason: str) -> None:
        self._retries.add(1, {"reason": reason})


sync_metrics = SyncMetrics()
