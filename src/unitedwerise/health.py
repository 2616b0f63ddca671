"""Health checks for liveness and readiness probes.

Readiness covers the SQLite database, the configured LLM provider, disk
space next to the database file and process memory.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sqlite3
import time
from datetime import datetime, timezone
from enum import Enum

import psutil
from pydantic import BaseModel, Field

from . import __version__
from .db import connect
from .llm_client import LLMClient
from .logger import get_logger

log = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    name: str = Field(description="Component name")
    status: HealthStatus = Field(description="Health status")
    message: str | None = Field(default=None, description="Status message")
    last_check: datetime = Field(description="Last check timestamp")
    check_duration_ms: float = Field(description="Check duration in milliseconds")


class HealthCheckResponse(BaseModel):
    status: HealthStatus = Field(description="Overall health status")
    version: str = Field(default=__version__, description="Application version")
    uptime_seconds: float = Field(description="Application uptime in seconds")
    components: list[ComponentHealth] = Field(description="Component health checks")
    timestamp: datetime = Field(description="Check timestamp")


_start_time = time.time()


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _component(name: str, status: HealthStatus, message: str, started: float) -> ComponentHealth:
    return ComponentHealth(
        name=name,
        status=status,
        message=message,
        last_check=_now(),
        check_duration_ms=(time.time() - started) * 1000,
    )


async def check_database_health(db_path: str) -> ComponentHealth:
    start_time = time.time()
    status = HealthStatus.HEALTHY
    message = "Database is healthy"
    conn = None
    try:
        conn = connect(db_path)
        row = conn.execute("SELECT 1 AS result;").fetchone()
        if row is None or row["result"] != 1:
            status = HealthStatus.UNHEALTHY
            message = "Database query returned unexpected result"
        else:
            query_start = time.time()
            conn.execute("SELECT COUNT(*) AS total FROM posts;").fetchone()
            query_duration = time.time() - query_start
            if query_duration > 1.0:
                status = HealthStatus.DEGRADED
                message = f"Database queries slow ({query_duration:.2f}s)"
    except sqlite3.Error as e:
        status = HealthStatus.UNHEALTHY
        message = f"Database health check failed: {e}"
        log.error(message)
    finally:
        if conn:
            conn.close()
    return _component("database", status, message, start_time)


async def check_llm_health(llm: LLMClient) -> ComponentHealth:
    """Reports configuration only; no request is sent to the provider."""
    start_time = time.time()
    if llm.enabled:
        return _component("llm", HealthStatus.HEALTHY, f"LLM provider '{llm.provider}' configured", start_time)
    return _component(
        "llm",
        HealthStatus.DEGRADED,
        "No LLM provider configured; heuristic fallbacks in use",
        start_time,
    )


async def check_disk_space(path: str = "/") -> ComponentHealth:
    start_time = time.time()
    status = HealthStatus.HEALTHY
    try:
        usage = shutil.disk_usage(path if os.path.isdir(path) else "/")
        free_percent = (usage.free / usage.total) * 100
        if free_percent < 5:
            status = HealthStatus.UNHEALTHY
            message = f"Disk space critical: {free_percent:.1f}% free"
        elif free_percent < 10:
            status = HealthStatus.DEGRADED
            message = f"Disk space low: {free_percent:.1f}% free"
        else:
            message = f"Disk space OK: {free_percent:.1f}% free"
    except OSError as e:
        status = HealthStatus.DEGRADED
        message = f"Disk check error: {e}"
        log.warning("Disk space check failed: %s", e)
    return _component("disk_space", status, message, start_time)


async def check_memory_usage() -> ComponentHealth:
    start_time = time.time()
    status = HealthStatus.HEALTHY
    percent_used = psutil.virtual_memory().percent
    if percent_used > 95:
        status = HealthStatus.UNHEALTHY
        message = f"Memory critical: {percent_used:.1f}% used"
    elif percent_used > 85:
        status = HealthStatus.DEGRADED
        message = f"Memory high: {percent_used:.1f}% used"
    else:
        message = f"Memory OK: {percent_used:.1f}% used"
    return _component("memory", status, message, start_time)


async def check_liveness() -> HealthCheckResponse:
    component = ComponentHealth(
        name="process",
        status=HealthStatus.HEALTHY,
        message="Application process is running",
        last_check=_now(),
        check_duration_ms=0.0,
    )
    return HealthCheckResponse(
        status=HealthStatus.HEALTHY,
        uptime_seconds=time.time() - _start_time,
        components=[component],
        timestamp=_now(),
    )


async def check_readiness(db_path: str, llm: LLMClient) -> HealthCheckResponse:
    checks = await asyncio.gather(
        check_database_health(db_path),
        check_llm_health(llm),
        check_disk_space(os.path.dirname(os.path.abspath(db_path))),
        check_memory_usage(),
        return_exceptions=True,
    )

    components: list[ComponentHealth] = []
    overall = HealthStatus.HEALTHY
    for check in checks:
        if isinstance(check, BaseException):
            check = ComponentHealth(
                name="unknown",
                status=HealthStatus.UNHEALTHY,
                message=f"Health check error: {check}",
                last_check=_now(),
                check_duration_ms=0.0,
            )
        components.append(check)
        # worst status wins
        if check.status == HealthStatus.UNHEALTHY:
            overall = HealthStatus.UNHEALTHY
        elif check.status == HealthStatus.DEGRADED and overall == HealthStatus.HEALTHY:
            overall = HealthStatus.DEGRADED

    return HealthCheckResponse(
        status=overall,
        uptime_seconds=time.time() - _start_time,
        components=components,
        timestamp=_now(),
    )
