"""Telemetry setup for OpenTelemetry traces and metrics.

Traces cover the session, each iteration, each agent run and each parallel
group. Metrics count iterations, agent runs, retries, fatal errors and
completed tasks.

When OTLP export is not enabled, in-process providers are installed and
nothing leaves the machine.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from agentloop.config import LoopConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
iterations_counter: metrics.Counter
agent_runs_counter: metrics.Counter
retries_counter: metrics.Counter
fatal_errors_counter: metrics.Counter
tasks_completed_counter: metrics.Counter
iteration_duration: metrics.Histogram


def setup_telemetry(config: LoopConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry, exporting over OTLP when OTLP_ENABLED=true.

    Args:
        config: Loop configuration with OTLP endpoint and service name

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
    """Create metric instruments for loop tracking.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global iterations_counter, agent_runs_counter, retries_counter
    global fatal_errors_counter, tasks_completed_counter, iteration_duration

    iterations_counter = meter.create_counter(
        "agentloop_iterations_total",
        description="Total iterations run (by status)",
    )

    agent_runs_counter = meter.create_counter(
        "agentloop_agent_runs_total",
        description="Total agent invocations (by outcome)",
    )

    retries_counter = meter.create_counter(
        "agentloop_retries_total",
        description="Total agent retries",
    )

    fatal_errors_counter = meter.create_counter(
        "agentloop_fatal_errors_total",
        description="Total fatal agent errors",
    )

    tasks_completed_counter = meter.create_counter(
        "agentloop_tasks_completed_total",
        description="Total tasks marked done",
    )

    iteration_duration = meter.create_histogram(
        "agentloop_iteration_duration_seconds",
        description="Iteration duration",
        unit="s",
    )
