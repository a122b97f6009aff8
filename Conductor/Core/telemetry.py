"""
OpenTelemetry instrumentation for Conductor.

Provides distributed tracing for playbook runs. A run, every task and hook,
and every RPC batch are recorded as spans so a slow or failing batch can be
located in Tempo from the run's trace id.

Environment variables:
- OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
- OTEL_SERVICE_NAME: Service name for traces (default: conductor)
- OTEL_RESOURCE_ATTRIBUTES: Additional resource attributes (comma-separated)
- CONDUCTOR_ENVIRONMENT: Deployment environment (default: development)
- CONDUCTOR_VERSION: Application version (default: unknown)

Usage:
    from Conductor.Core.telemetry import init_telemetry, get_tracer

    init_telemetry()
    with get_tracer(__name__).start_as_current_span("playbook.run"):
        ...
"""

import logging
import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
    OTLPSpanExporter,
)
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.propagation.tracecontext import (
    TraceContextTextMapPropagator,
)

import Conductor.Helpers.logSettings as logLevel

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

# Module-level flag to track initialization
_initialized: bool = False
_tracer_provider: Optional[TracerProvider] = None


# Default configuration values
DEFAULT_OTLP_ENDPOINT: str = "http://localhost:4317"
DEFAULT_SERVICE_NAME: str = "conductor"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"


def get_otel_config() -> dict:
    """
    Get OpenTelemetry configuration from environment variables.

    Returns:
        Dictionary with OTEL configuration values
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", DEFAULT_OTLP_ENDPOINT)
    service_name = os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
    environment = os.environ.get("CONDUCTOR_ENVIRONMENT", DEFAULT_ENVIRONMENT)
    version = os.environ.get("CONDUCTOR_VERSION", DEFAULT_VERSION)

    # Parse additional resource attributes from OTEL_RESOURCE_ATTRIBUTES
    resource_attributes = {}
    raw_attrs = os.environ.get("OTEL_RESOURCE_ATTRIBUTES", "")
    if raw_attrs:
        for attr in raw_attrs.split(","):
            if "=" in attr:
                key, value = attr.split("=", 1)
                resource_attributes[key.strip()] = value.strip()

    return {
        "endpoint": endpoint,
        "service_name": service_name,
        "environment": environment,
        "version": version,
        "resource_attributes": resource_attributes,
    }


def create_resource(config: dict) -> Resource:
    """
    Create an OpenTelemetry Resource with service metadata.

    Args:
        config: Configuration dictionary from get_otel_config()

    Returns:
        Resource object with service attributes
    """
    attributes = {
        "service.name": config["service_name"],
        "service.version": config["version"],
        "deployment.environment": config["environment"],
    }

    attributes.update(config.get("resource_attributes", {}))

    return Resource.create(attributes)


def create_tracer_provider(resource: Resource, endpoint: str) -> TracerProvider:
    """
    Create and configure a TracerProvider with OTLP exporter.

    Args:
        resource: Resource object with service metadata
        endpoint: OTLP collector endpoint URL

    Returns:
        Configured TracerProvider
    """
    provider = TracerProvider(resource=resource)

    exporter = OTLPSpanExporter(
        endpoint=endpoint,
        insecure=endpoint.startswith("http://"),
    )

    provider.add_span_processor(BatchSpanProcessor(exporter))

    return provider


def setup_propagators() -> None:
    """
    Configure W3C trace context propagation for distributed tracing.
    """
    propagator = CompositePropagator([TraceContextTextMapPropagator()])
    set_global_textmap(propagator)


def get_current_trace_id() -> Optional[str]:
    """
    Get the trace ID of the active span.

    Returns:
        Trace ID as hex string, or None outside a recorded span
    """
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


def get_current_span_id() -> Optional[str]:
    """
    Get the span ID of the active span.

    Returns:
        Span ID as hex string, or None outside a recorded span
    """
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.span_id, "016x")


def init_telemetry(
    service_name: Optional[str] = None, enable: bool = True
) -> bool:
    """
    Initialize OpenTelemetry tracing for a playbook process.

    Args:
        service_name: Override for the service name
        enable: Whether to enable telemetry (default: True)

    Returns:
        True if initialization succeeded, False otherwise
    """
    global _initialized, _tracer_provider

    if _initialized:
        logger.log(level=10, msg="Telemetry already initialized, skipping")
        return True

    if not enable:
        logger.log(level=20, msg="Telemetry disabled via enable=False")
        _initialized = True
        return True

    try:
        config = get_otel_config()
        if service_name:
            config["service_name"] = service_name

        logger.log(
            level=20,
            msg=f"Initializing OpenTelemetry: service={config['service_name']}"
            f", endpoint={config['endpoint']}"
            f", environment={config['environment']}",
        )

        resource = create_resource(config)
        _tracer_provider = create_tracer_provider(resource, config["endpoint"])

        trace.set_tracer_provider(_tracer_provider)

        setup_propagators()

        _initialized = True

        logger.log(level=20, msg="OpenTelemetry initialization complete")

        return True

    except Exception as e:
        logger.log(level=40, msg=f"Failed to initialize OpenTelemetry: {e}")
        return False


def shutdown_telemetry() -> None:
    """
    Gracefully shutdown the telemetry system.

    Flushes any pending spans and releases resources.
    """
    global _initialized, _tracer_provider

    if _tracer_provider is not None:
        try:
            _tracer_provider.shutdown()
            logger.log(level=20, msg="OpenTelemetry shutdown complete")
        except Exception as e:
            logger.log(level=30, msg=f"Error during OpenTelemetry shutdown: {e}")

    _initialized = False
    _tracer_provider = None


def is_telemetry_enabled() -> bool:
    """
    Check if telemetry has been initialized.

    Returns:
        True if init_telemetry() has been called successfully
    """
    return _initialized


def get_tracer(name: str = __name__) -> trace.Tracer:
    """
    Get a tracer instance for creating custom spans.

    Args:
        name: Name for the tracer (typically __name__)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)
