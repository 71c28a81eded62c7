"""OpenTelemetry wiring.

Tracing stays on the global no-op provider unless ``OTLP_ENDPOINT`` is set.
The endpoint may be the collector base (``http://collector:4318``) or the
full traces URL; both export to ``.../v1/traces``.  Runs and node attempts
open spans through :func:`get_tracer` either way.
"""

from __future__ import annotations

import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("flowengine.tracing")

_TRACES_PATH = "/v1/traces"


def traces_url(endpoint: str) -> str:
    url = endpoint.rstrip("/")
    return url if url.endswith(_TRACES_PATH) else url + _TRACES_PATH


def setup_tracing(app=None, otlp_endpoint: str | None = None, version: str = "0.1.0") -> TracerProvider | None:
    """Install a batching OTLP exporter and instrument *app*.

    Returns the provider, or ``None`` when no endpoint is configured.
    """
    if not otlp_endpoint:
        logger.info("Tracing disabled: OTLP_ENDPOINT is not set")
        return None

    url = traces_url(otlp_endpoint)
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: "flowengine", SERVICE_VERSION: version})
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=url)))
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app)
    logger.info("Exporting traces to %s", url)
    return provider


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
