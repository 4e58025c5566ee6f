"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export for the relay. When OTLP export is
not enabled, in-process providers are installed and nothing leaves the
process.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from relay.config import RelaySettings

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (rebound by create_metrics)
engine_invocations_counter: metrics.Counter
engine_errors_counter: metrics.Counter
engine_duration: metrics.Histogram
tasks_counter: metrics.Counter
pauses_counter: metrics.Counter
reminders_counter: metrics.Counter


def setup_telemetry(settings: RelaySettings) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    If OTLP_ENABLED is not "true" or no endpoint is configured, uses
    providers without exporters.

    Args:
        settings: Relay settings with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and settings.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(settings.service_name)
    meter = metrics.get_meter(settings.service_name)
    create_metrics(meter)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for relay tracking.

    Counters:
    - Engine invocations (by backend) and engine errors (by reason)
    - Task status transitions (by status)
    - Pauses for user input (by source: classifier or tool)
    - Reminders sent for stale paused tasks

    Histogram:
    - Engine invocation duration

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global engine_invocations_counter, engine_errors_counter, engine_duration
    global tasks_counter, pauses_counter, reminders_counter

    engine_invocations_counter = meter.create_counter(
        "relay_engine_invocations_total",
        description="Total reasoning engine invocations",
    )

    engine_errors_counter = meter.create_counter(
        "relay_engine_errors_total",
        description="Engine invocations classified as errors",
    )

    engine_duration = meter.create_histogram(
        "relay_engine_duration_seconds",
        description="Engine invocation duration",
        unit="s",
    )

    tasks_counter = meter.create_counter(
        "relay_tasks_total",
        description="Task status transitions",
    )

    pauses_counter = meter.create_counter(
        "relay_task_pauses_total",
        description="Tasks paused for user input",
    )

    reminders_counter = meter.create_counter(
        "relay_reminders_total",
        description="Stale task reminders sent",
    )


# Bind instruments to the global (proxy) meter so callers work before setup
create_metrics(metrics.get_meter("relay"))
