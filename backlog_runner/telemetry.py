"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when OTLP_ENABLED=true.
Otherwise falls back to in-process providers with no export.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from backlog_runner.config import TelemetryConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
tasks_counter: metrics.Counter
cost_counter: metrics.Counter
task_duration: metrics.Histogram
budget_counter: metrics.Counter
approvals_counter: metrics.Counter
merges_counter: metrics.Counter


def setup_telemetry(config: TelemetryConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    Args:
        config: Telemetry settings with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
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
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for backlog runs.

    Counters track tasks (by status), spend, budget events (by kind and
    scope), approval decisions (by checkpoint and status) and auto-merges.
    The task duration histogram feeds percentile views.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global tasks_counter, cost_counter, task_duration
    global budget_counter, approvals_counter, merges_counter

    tasks_counter = meter.create_counter(
        "backlog_runner_tasks_total",
        description="Total tasks run",
    )

    cost_counter = meter.create_counter(
        "backlog_runner_cost_usd_total",
        description="Total agent cost in USD",
    )

    task_duration = meter.create_histogram(
        "backlog_runner_task_duration_seconds",
        description="Task execution duration",
        unit="s",
    )

    budget_counter = meter.create_counter(
        "backlog_runner_budget_events_total",
        description="Budget warnings and limit breaches",
    )

    approvals_counter = meter.create_counter(
        "backlog_runner_approvals_total",
        description="Approval checkpoint decisions",
    )

    merges_counter = meter.create_counter(
        "backlog_runner_auto_merges_total",
        description="Pull requests merged automatically",
    )


def record_task(status: str, duration_seconds: float, cost_usd: float) -> None:
    """Record a finished task. No-op until create_metrics() has run."""
    try:
        tasks_counter.add(1, {"status": status})
        task_duration.record(duration_seconds, {"status": status})
        if cost_usd > 0:
            cost_counter.add(cost_usd)
    except (AttributeError, NameError):
        pass  # Metrics not initialized


def record_budget_event(kind: str, scope: str) -> None:
    try:
        budget_counter.add(1, {"kind": kind, "scope": scope})
    except (AttributeError, NameError):
        pass  # Metrics not initialized


def record_approval(checkpoint: str, status: str) -> None:
    try:
        approvals_counter.add(1, {"checkpoint": checkpoint, "status": status})
    except (AttributeError, NameError):
        pass  # Metrics not initialized


def record_merge() -> None:
    try:
        merges_counter.add(1)
    except (AttributeError, NameError):
        pass  # Metrics not initialized
