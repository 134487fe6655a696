import importlib
import logging
import os

from opentelemetry import trace

logger = logging.getLogger(__name__)

_TRACER_NAME = "phish_awareness"
_configured = False

# (label, module, instrumentor class)
_INSTRUMENTORS = (
    ("SQLAlchemy", "opentelemetry.instrumentation.sqlalchemy", "SQLAlchemyInstrumentor"),
    ("Celery", "opentelemetry.instrumentation.celery", "CeleryInstrumentor"),
    ("httpx", "opentelemetry.instrumentation.httpx", "HTTPXClientInstrumentor"),
    ("Redis", "opentelemetry.instrumentation.redis", "RedisInstrumentor"),
    ("logging", "opentelemetry.instrumentation.logging", "LoggingInstrumentor"),
)


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return an OTel tracer; spans are no-ops until a provider is installed."""
    return trace.get_tracer(name or _TRACER_NAME)


def otel_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "false").lower() in {"1", "true", "yes", "on"}


def _instrument_kwargs(label: str) -> dict:
    if label == "SQLAlchemy":
        from app.db import get_engine

        return {"engine": get_engine()}
    if label == "logging":
        return {"set_logging_format": True}
    return {}


def _install_provider() -> bool:
    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logger.exception("OpenTelemetry SDK not available, skipping setup.")
        return False

    service_name = os.getenv("OTEL_SERVICE_NAME", _TRACER_NAME)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces") if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    logger.info("OpenTelemetry tracing enabled (service=%s)", service_name)
    return True


def setup_otel(app=None) -> None:
    """Install tracing for the API process or a Celery worker.

    With ``app`` the FastAPI routes are instrumented too. The database,
    Celery, the delivery webhook client, the Redis fan-out and log records
    are instrumented in both cases. A missing instrumentation package is
    logged and skipped.
    """
    global _configured
    if _configured or not otel_enabled():
        return
    if not _install_provider():
        return
    _configured = True

    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

            FastAPIInstrumentor.instrument_app(app)
            logger.info("OTel: FastAPI instrumented")
        except Exception:
            logger.warning("OTel: FastAPI instrumentation unavailable", exc_info=True)

    for label, module_name, class_name in _INSTRUMENTORS:
        try:
            instrumentor = getattr(importlib.import_module(module_name), class_name)
            instrumentor().instrument(**_instrument_kwargs(label))
            logger.info("OTel: %s instrumented", label)
        except Exception:
            logger.warning("OTel: %s instrumentation unavailable", label, exc_info=True)
