"""Prometheus metrics for the device control plane.

Tracks how long device and device-model operations take and how often they
fail, so slow hotplug scripts and wedged device models show up on a
dashboard before they show up in a ticket.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    Info,
    generate_latest,
)

from devctl.version import __version__, get_commit


device_operation_duration = Histogram(
    "devctl_device_operation_seconds",
    "Duration of device lifecycle operations",
    ["kind", "operation", "status"],
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 300, float("inf")),
)

device_operation_errors = Counter(
    "devctl_device_operation_errors_total",
    "Total device lifecycle operation errors",
    ["kind", "operation"],
)

device_model_duration = Histogram(
    "devctl_device_model_operation_seconds",
    "Duration of device-model process operations",
    ["operation", "status"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

build_info = Info("devctl_build", "devctl build information")
build_info.info({"version": __version__, "commit": get_commit()})


@asynccontextmanager
async def track(histogram: Histogram, errors: Counter | None = None, **labels: str) -> AsyncIterator[None]:
    """Time the enclosed block and record success or error.

    The ``status`` label is filled in here; ``labels`` carries the rest.
    """
    started = time.monotonic()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        if errors is not None:
            errors.labels(**labels).inc()
        raise
    finally:
        histogram.labels(status=status, **labels).observe(time.monotonic() - started)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
