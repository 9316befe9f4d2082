"""OpenTelemetry helpers."""

from __future__ import annotations

from fastapi import FastAPI
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from . import settings as common_settings


def setup_otel(app: FastAPI, service_name: str = "app") -> None:
    """Configure OpenTelemetry tracing and metrics for a FastAPI app.

    Exporters are only attached when an OTLP endpoint is configured, so local
    runs and tests keep the in-process providers without network traffic.
    """

    resource = Resource.create({"service.name": service_name})
    endpoint = common_settings.settings.otel_exporter_otlp_endpoint

    # Traces
    tracer_provider = TracerProvider(resource=resource)
    if endpoint:
        span_exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(tracer_provider)

    # Metrics
    readers = []
    if endpoint:
        metric_exporter = OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics")
        readers.append(PeriodicExportingMetricReader(metric_exporter))
    meter_provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(meter_provider)

    FastAPIInstrumentor().instrument_app(app)
