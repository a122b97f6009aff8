"""
Structured JSON logging with OpenTelemetry semantic conventions for Conductor.

Provides JSON-formatted logs compatible with Grafana/Loki that include
trace context (trace_id, span_id) for correlation with Tempo traces.

Features:
- JSONFormatter with OTEL semantic conventions
- Automatic trace context injection from the active OpenTelemetry span
- Configurable log format (json/text) and level
- Playbook context attribute (playbook.context) passed with log extras
- Resource attributes (service.name, service.version, deployment.environment)

Environment variables:
- CONDUCTOR_LOG_FORMAT: 'text' (default) or 'json'
- CONDUCTOR_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- OTEL_SERVICE_NAME: Service name for logs (default: conductor)
- CONDUCTOR_ENVIRONMENT: Deployment environment (default: development)
- CONDUCTOR_VERSION: Application version (default: unknown)

Usage:
    from Conductor.Core.logging_config import configure_logging, get_logger

    configure_logging()

    logger = get_logger(__name__)
    logger.info("Batch dispatched", extra={"playbook.context": "task 1"})
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from Conductor.Core.telemetry import get_current_span_id, get_current_trace_id

# OTEL severity level mapping (following OTEL semantic conventions)
# https://opentelemetry.io/docs/specs/otel/logs/data-model/#severity-fields
OTEL_SEVERITY_TEXT: Dict[int, str] = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}

OTEL_SEVERITY_NUMBER: Dict[int, int] = {
    logging.DEBUG: 5,      # DEBUG
    logging.INFO: 9,       # INFO
    logging.WARNING: 13,   # WARN
    logging.ERROR: 17,     # ERROR
    logging.CRITICAL: 21,  # FATAL
}

# Log level mapping
LOG_LEVELS: Dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

# Default configuration
DEFAULT_LOG_FORMAT: str = "text"
DEFAULT_LOG_LEVEL: str = "INFO"
DEFAULT_SERVICE_NAME: str = "conductor"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"

# Standard LogRecord attributes, everything else is a caller supplied extra
_RECORD_ATTRIBUTES = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
))

# Module-level flag to track configuration
_configured: bool = False


def get_log_config() -> Dict[str, Any]:
    """
    Get logging configuration from environment variables.

    Returns:
        Dictionary with logging configuration values
    """
    return {
        "format": os.environ.get("CONDUCTOR_LOG_FORMAT", DEFAULT_LOG_FORMAT).lower(),
        "level": os.environ.get("CONDUCTOR_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        "service_name": os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        "environment": os.environ.get("CONDUCTOR_ENVIRONMENT", DEFAULT_ENVIRONMENT),
        "version": os.environ.get("CONDUCTOR_VERSION", DEFAULT_VERSION),
    }


def get_trace_context() -> Dict[str, Optional[str]]:
    """
    Get the trace context of the active OpenTelemetry span.

    Returns:
        Dictionary with trace_id and span_id (or None if not available)
    """
    return {
        "trace_id": get_current_trace_id(),
        "span_id": get_current_span_id(),
    }


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with OpenTelemetry semantic conventions.

    Produces structured JSON logs compatible with Grafana/Loki, including:
    - OTEL severity fields (SeverityText, SeverityNumber)
    - Trace context (TraceId, SpanId) for log-to-trace correlation
    - Resource attributes (service.name, service.version, deployment.environment)
    - Custom attributes from log extra fields
    """

    def __init__(
        self,
        service_name: str = DEFAULT_SERVICE_NAME,
        environment: str = DEFAULT_ENVIRONMENT,
        version: str = DEFAULT_VERSION,
    ):
        """
        Initialize the JSON formatter.

        Args:
            service_name: Service name for resource attributes
            environment: Deployment environment
            version: Application version
        """
        super().__init__()
        self.service_name = service_name
        self.environment = environment
        self.version = version

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as JSON with OTEL semantic conventions.

        Args:
            record: LogRecord to format

        Returns:
            JSON-formatted log string
        """
        log_entry: Dict[str, Any] = {
            "Timestamp": datetime.now(timezone.utc).isoformat(),
            "SeverityText": OTEL_SEVERITY_TEXT.get(record.levelno, "INFO"),
            "SeverityNumber": OTEL_SEVERITY_NUMBER.get(record.levelno, 9),
            "Body": record.getMessage(),
            "Resource": {
                "service.name": self.service_name,
                "service.version": self.version,
                "deployment.environment": self.environment,
            },
            "InstrumentationScope": {
                "Name": record.name,
            },
            "Attributes": {},
        }

        trace_context = get_trace_context()
        if trace_context["trace_id"]:
            log_entry["TraceId"] = trace_context["trace_id"]
        if trace_context["span_id"]:
            log_entry["SpanId"] = trace_context["span_id"]

        log_entry["Attributes"]["code.filepath"] = record.pathname
        log_entry["Attributes"]["code.lineno"] = record.lineno
        log_entry["Attributes"]["code.function"] = record.funcName

        if record.exc_info:
            log_entry["Attributes"]["exception.type"] = (
                record.exc_info[0].__name__ if record.exc_info[0] else None
            )
            log_entry["Attributes"]["exception.message"] = str(record.exc_info[1])
            log_entry["Attributes"]["exception.stacktrace"] = (
                self.formatException(record.exc_info)
            )

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_entry["Attributes"][key] = value

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """
    Human-readable text formatter.

    Prefixes the message with the playbook context when one was passed
    and with the trace id when a span is active.
    """

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
    ):
        """
        Initialize the text formatter.

        Args:
            fmt: Log format string
            datefmt: Date format string
        """
        if fmt is None:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        if datefmt is None:
            datefmt = "%Y-%m-%d %H:%M:%S"
        super().__init__(fmt=fmt, datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as text with optional context prefixes.

        Args:
            record: LogRecord to format

        Returns:
            Text-formatted log string
        """
        prefixes = []

        playbook_context = record.__dict__.get("playbook.context")
        if playbook_context:
            prefixes.append(f"[{playbook_context}]")

        trace_id = get_current_trace_id()
        if trace_id:
            record.trace_id = trace_id
            prefixes.append(f"[trace_id={trace_id}]")

        if prefixes:
            original_msg = record.getMessage()
            record.msg = f"{' '.join(prefixes)} {original_msg}"
            record.args = ()

        return super().format(record)


def configure_logging(
    log_format: Optional[str] = None,
    log_level: Optional[str] = None,
    service_name: Optional[str] = None,
    environment: Optional[str] = None,
    version: Optional[str] = None,
) -> None:
    """
    Configure the logging system with OTEL-compatible formatters.

    Logs go to stderr so that run reports printed on stdout stay
    machine readable.

    Args:
        log_format: 'json' or 'text' (default: from env or 'text')
        log_level: Log level name (default: from env or 'INFO')
        service_name: Service name for logs (default: from env or 'conductor')
        environment: Deployment environment (default: from env or 'development')
        version: Application version (default: from env or 'unknown')
    """
    global _configured

    config = get_log_config()

    log_format = log_format or config["format"]
    log_level = log_level or config["level"]
    service_name = service_name or config["service_name"]
    environment = environment or config["environment"]
    version = version or config["version"]

    level = LOG_LEVELS.get(log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter(
            service_name=service_name,
            environment=environment,
            version=version,
        )
    else:
        formatter = TextFormatter()

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the configured settings.

    If logging hasn't been configured yet, this will configure it
    with default settings.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    if not _configured:
        configure_logging()

    return logging.getLogger(name)


def is_logging_configured() -> bool:
    """
    Check if logging has been configured.

    Returns:
        True if configure_logging() has been called
    """
    return _configured


def reset_logging_config() -> None:
    """
    Reset the logging configuration state.

    This is primarily for testing purposes.
    """
    global _configured
    _configured = False
