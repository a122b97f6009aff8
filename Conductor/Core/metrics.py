"""
Prometheus metrics for Conductor playbook runs.

Metrics use OTEL style naming and attach the active trace id as an exemplar
on duration histograms, so a slow batch in Grafana links to its trace.

A playbook run is a short lived process, so the registry is written for
the node_exporter textfile collector with write_metrics_textfile().

Environment variables:
- OTEL_SERVICE_NAME: Service name for metrics (default: conductor)
- CONDUCTOR_ENVIRONMENT: Deployment environment (default: development)
- CONDUCTOR_VERSION: Application version (default: unknown)

Usage:
    from Conductor.Core.metrics import record_task_outcome, record_rpc_batch

    record_rpc_batch("puppet", "disable", duration=1.2, trace_id="abc123")
    record_task_outcome("puppet", "disable", "succeeded")
"""

import logging
import os
import sys
from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    write_to_textfile,
    REGISTRY,
)

import Conductor.Helpers.logSettings as logLevel

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

# Default configuration values
DEFAULT_SERVICE_NAME: str = "conductor"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"


def _get_python_version() -> str:
    """
    Get the Python version string.

    Returns:
        Python version in format 'major.minor.micro' (e.g., '3.12.1')
    """
    return f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def _get_config() -> dict[str, str]:
    """
    Get metrics configuration from environment variables.

    Returns:
        Dictionary with configuration values
    """
    return {
        "service_name": os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        "environment": os.environ.get("CONDUCTOR_ENVIRONMENT", DEFAULT_ENVIRONMENT),
        "version": os.environ.get("CONDUCTOR_VERSION", DEFAULT_VERSION),
        "python_version": _get_python_version(),
    }


# Module-level config (initialized once at import time)
_config = _get_config()

CONDUCTOR_BUILD_INFO = Gauge(
    "conductor_build_info",
    "Conductor information with OTEL resource attributes",
    ["service_name", "service_version", "deployment_environment", "python_version"],
)
CONDUCTOR_BUILD_INFO.labels(
    service_name=_config["service_name"],
    service_version=_config["version"],
    deployment_environment=_config["environment"],
    python_version=_config["python_version"],
).set(1)

# Playbook runs
PLAYBOOK_RUNS = Counter(
    "conductor_playbook_runs_total",
    "Total playbook runs by final status",
    ["playbook", "status", "service_name"],
)

PLAYBOOK_RUN_DURATION = Histogram(
    "conductor_playbook_run_duration_seconds",
    "Duration of playbook runs in seconds",
    ["playbook", "service_name"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600],
)

# Tasks and hooks
TASK_OUTCOMES = Counter(
    "conductor_task_outcomes_total",
    "Total task and hook outcomes",
    ["agent", "action", "status"],
)

TASK_RETRIES = Counter(
    "conductor_task_retries_total",
    "Total re-dispatches of failed nodes",
    ["agent", "action"],
)

# RPC batches - OTEL semantic: rpc.client.* namespace
RPC_BATCHES = Counter(
    "conductor_rpc_client_batches_total",
    "Total RPC batches dispatched",
    ["agent", "action", "service_name"],
)

RPC_BATCH_DURATION = Histogram(
    "conductor_rpc_client_batch_duration_seconds",
    "RPC batch round trip duration (OTEL: rpc.client.duration)",
    ["agent", "action", "service_name"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

NODE_RESULTS = Counter(
    "conductor_node_results_total",
    "Per node RPC results",
    ["agent", "action", "status"],
)


def _build_exemplar(trace_id: Optional[str]) -> Optional[dict[str, str]]:
    """
    Build an exemplar dictionary for a metric observation.

    Args:
        trace_id: The trace ID to include in the exemplar, or None

    Returns:
        Exemplar dictionary with trace_id, or None if no trace_id
    """
    if trace_id:
        return {"trace_id": trace_id}
    return None


def record_playbook_run(
    playbook_name: str,
    status: str,
    duration_seconds: float,
    trace_id: Optional[str] = None,
) -> None:
    """
    Record a finished playbook run.

    Args:
        playbook_name: Name of the playbook
        status: Final run status (completed, failed, aborted)
        duration_seconds: Wall clock duration of the run
        trace_id: Optional trace ID for exemplar correlation
    """
    PLAYBOOK_RUNS.labels(
        playbook=playbook_name, status=status, service_name=_config["service_name"]
    ).inc()
    PLAYBOOK_RUN_DURATION.labels(
        playbook=playbook_name, service_name=_config["service_name"]
    ).observe(duration_seconds, exemplar=_build_exemplar(trace_id))


def record_rpc_batch(
    agent: str, action: str, duration: float, trace_id: Optional[str] = None
) -> None:
    """
    Record one dispatched RPC batch and its round trip time.

    Args:
        agent: RPC agent name
        action: RPC action name
        duration: Seconds from request to collected replies
        trace_id: Optional trace ID for exemplar correlation
    """
    RPC_BATCHES.labels(
        agent=agent, action=action, service_name=_config["service_name"]
    ).inc()
    RPC_BATCH_DURATION.labels(
        agent=agent, action=action, service_name=_config["service_name"]
    ).observe(duration, exemplar=_build_exemplar(trace_id))


def record_node_result(agent: str, action: str, status: str) -> None:
    """Record a single node's RPC result."""
    NODE_RESULTS.labels(agent=agent, action=action, status=status).inc()


def record_task_outcome(agent: str, action: str, status: str) -> None:
    """Record the outcome of a task or hook."""
    TASK_OUTCOMES.labels(agent=agent, action=action, status=status).inc()


def record_task_retry(agent: str, action: str) -> None:
    """Record a retry attempt of a task's failed nodes."""
    TASK_RETRIES.labels(agent=agent, action=action).inc()


def write_metrics_textfile(path: str) -> None:
    """
    Write the registry to a file for the node_exporter textfile collector.

    Args:
        path: Destination file, written atomically
    """
    write_to_textfile(path, REGISTRY)
    logger.log(level=20, msg=f"Wrote metrics to {path}")
