#!/usr/bin/env python3
"""
OpenTelemetry tracing for the fetch proxy.

Spans cover URL admission, every outbound fetch attempt, feed parsing and
article extraction; aiohttp client requests are instrumented automatically
and log records carry trace ids. When an Application Insights connection
string is set (APPLICATIONINSIGHTS_CONNECTION_STRING) and the optional
exporter is installed, spans are shipped to Azure Monitor.

Set DISABLE_TELEMETRY=true to skip all of it; trace_span then runs against
the no-op tracer.
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

try:
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
except ImportError:
    # Installed through the "azure" extra only
    AzureMonitorTraceExporter = None  # type: ignore

_logger = logging.getLogger("FetchProxy.telemetry")
_lock = threading.Lock()
_provider: Optional[TracerProvider] = None


def _exporter():
    """Build the Azure exporter, or return None when spans should stay local."""
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING")
    if not conn:
        return None
    if AzureMonitorTraceExporter is None:
        _logger.warning("APPLICATIONINSIGHTS_CONNECTION_STRING is set but azure-monitor-opentelemetry-exporter is not installed")
        return None
    try:
        return AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore
    except ValueError as e:
        _logger.warning(f"Invalid Application Insights connection string, spans stay local: {e}")
        return None


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and instrumentation once per process."""
    global _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    with _lock:
        if _provider is not None:
            return

        name = service_name or os.environ.get("OTEL_SERVICE_NAME", "fetch-proxy")
        resource = {"service.name": name}
        if os.environ.get("OTEL_ENVIRONMENT"):
            resource["deployment.environment"] = os.environ["OTEL_ENVIRONMENT"]

        current = trace.get_tracer_provider()
        # An auto-instrumentation agent may already have installed a provider
        provider = current if isinstance(current, TracerProvider) else TracerProvider(resource=Resource.create(resource))

        exporter = _exporter()
        if exporter is not None:
            provider.add_span_processor(BatchSpanProcessor(exporter))
        _logger.info(f"Telemetry ready for {name} (exporter: {'azure' if exporter else 'none'})")

        if provider is not current:
            trace.set_tracer_provider(provider)
        AioHttpClientInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)

        _provider = provider
        atexit.register(provider.shutdown)


def get_tracer(name: str = "fetch-proxy"):
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    Args:
        span_name: Span name, `module.function` when omitted
        tracer_name: Tracer to use, the span name's first segment when omitted
        static_attrs: Attributes set on every span
        attr_from_args: Called with the function's arguments; returns extra attributes

    Exceptions mark the span as failed and propagate unchanged.
    """

    def decorate(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0])

        def start(args, kwargs):
            attributes = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attributes.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, ValueError, AttributeError):
                    # Attribute extraction must not break the traced call
                    pass
            return tracer.start_as_current_span(name, attributes=attributes, record_exception=False)

        def fail(span, error):
            span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR, error.__class__.__name__))

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with start(args, kwargs) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        fail(span, e)
                        raise

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with start(args, kwargs) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    fail(span, e)
                    raise

        return wrapper

    return decorate
