"""Logging and OpenTelemetry bootstrap for the CLI and embedding services.

Spans are always created through ``get_tracer``; until ``init_tracing`` installs
a provider with an exporter they go to the API's default no-op provider.
"""
import os, sys, logging
from typing import Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from .config import _env_flag


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

EXPORTERS: Dict[str, Callable[[], SpanExporter]] = {
    "otlp": OTLPSpanExporter,
    "console": ConsoleSpanExporter,
}

_state = {"logging": False, "tracing": False}


def init_logging(level: Optional[str] = None) -> None:
    if _state["logging"]:
        return
    name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT, stream=sys.stdout)
    _state["logging"] = True


def exporter_name() -> Optional[str]:
    """Exporter requested by the environment, or None when tracing stays off."""
    name = os.environ.get("OTEL_TRACES_EXPORTER", "").strip().lower()
    if name and name != "none":
        return name
    if os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or os.environ.get("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"):
        return "otlp"
    if _env_flag("OTEL_CONSOLE_TRACES"):
        return "console"
    return None


def init_tracing(service_name: str) -> None:
    if _state["tracing"]:
        return
    _state["tracing"] = True
    factory = EXPORTERS.get(exporter_name() or "")
    if factory is None:
        return
    service = os.environ.get("OTEL_SERVICE_NAME", service_name)
    provider = TracerProvider(resource=Resource.create({"service.name": service}))
    provider.add_span_processor(BatchSpanProcessor(factory()))
    trace.set_tracer_provider(provider)


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
