"""
Health checks following:
- RFC Draft: Health Check Response Format for HTTP APIs
- Kubernetes liveness / readiness / startup probe conventions
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import psutil
import redis
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

CheckFn = Callable[[], Dict[str, Any]]


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_result(status_val: HealthStatus, component_type: str, **fields: Any) -> Dict[str, Any]:
    """One entry of the ``checks`` map."""
    return {"status": status_val, "componentType": component_type, "time": _now(), **fields}


class ServiceHealth:
    """
    Health endpoints for one service.

    The database engine is handed in by the service so the probes reuse its
    connection pool instead of opening a fresh engine per request.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine: Optional[Engine] = None,
        redis_url: Optional[str] = None,
        required_settings: Optional[Mapping[str, Any]] = None,
        readiness_checks: Optional[Dict[str, CheckFn]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine = engine
        self.redis_url = redis_url
        self.required_settings = dict(required_settings or {})
        self.readiness_checks = dict(readiness_checks or {})
        self.start_time = time.time()
        self.checks_performed = 0
        self.last_check_time: Optional[float] = None

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Lightweight liveness check for load balancers"""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now()
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            """Dependency checks; 503 when any check fails"""
            checks = await asyncio.to_thread(self.readiness_report)
            overall_status = self.overall_status(checks)
            status_code = (
                status.HTTP_200_OK if overall_status != HealthStatus.FAIL
                else status.HTTP_503_SERVICE_UNAVAILABLE
            )
            return JSONResponse(status_code=status_code, content={
                "status": overall_status,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "checks": checks,
                "serviceId": self.service_name,
                "description": f"{self.service_name} microservice",
                "timestamp": _now()
            })

        @router.get("/health/startup")
        async def startup() -> Any:
            checks = await asyncio.to_thread(self.startup_report)
            if self.overall_status(checks) == HealthStatus.FAIL:
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={"status": "starting", "checks": checks}
                )
            return {"status": "started", "checks": checks}

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "memory_vms_bytes": memory.vms,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads()
                }
            }

        return router

    def readiness_report(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        self.last_check_time = time.time()

        checks = {"database:connectivity": self._check_database()}
        if self.redis_url:
            checks["cache:connectivity"] = self._check_redis()
        checks["storage:disk_space"] = self._check_disk_space()
        checks["system:memory"] = self._check_memory()

        for name, check in self.readiness_checks.items():
            try:
                checks[name] = check()
            except Exception as e:
                logger.warning(f"Readiness check {name} raised: {e}")
                checks[name] = check_result(HealthStatus.WARN, "component", output=str(e))
        return checks

    def startup_report(self) -> Dict[str, Dict[str, Any]]:
        return {
            "database:migrations": self._check_migrations(),
            "config:environment": self._check_configuration(),
        }

    def _check_database(self) -> Dict[str, Any]:
        if self.engine is None:
            return check_result(HealthStatus.WARN, "datastore", output="No engine configured")
        try:
            start_time = time.perf_counter()
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            response_time = (time.perf_counter() - start_time) * 1000
            return check_result(
                HealthStatus.PASS, "datastore",
                observedValue=f"{response_time:.2f}", observedUnit="ms",
            )
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return check_result(HealthStatus.FAIL, "datastore", output=str(e))

    def _check_redis(self) -> Dict[str, Any]:
        try:
            start_time = time.perf_counter()
            client = redis.from_url(self.redis_url, socket_connect_timeout=1)
            client.ping()
            response_time = (time.perf_counter() - start_time) * 1000
            return check_result(
                HealthStatus.PASS, "cache",
                observedValue=f"{response_time:.2f}", observedUnit="ms",
            )
        except Exception as e:
            # Admin push channel only; orders keep flowing without it
            return check_result(HealthStatus.WARN, "cache", output=str(e))

    def _check_disk_space(self) -> Dict[str, Any]:
        try:
            free_gb = psutil.disk_usage('/').free / (1024 ** 3)
        except Exception as e:
            return check_result(HealthStatus.WARN, "system", output=str(e))
        if free_gb < 1:
            status_val = HealthStatus.FAIL
        elif free_gb < 5:
            status_val = HealthStatus.WARN
        else:
            status_val = HealthStatus.PASS
        return check_result(status_val, "system", observedValue=f"{free_gb:.2f}", observedUnit="GB")

    def _check_memory(self) -> Dict[str, Any]:
        try:
            available_mb = psutil.virtual_memory().available / (1024 ** 2)
        except Exception as e:
            return check_result(HealthStatus.WARN, "system", output=str(e))
        if available_mb < 100:
            status_val = HealthStatus.FAIL
        elif available_mb < 500:
            status_val = HealthStatus.WARN
        else:
            status_val = HealthStatus.PASS
        return check_result(status_val, "system", observedValue=f"{available_mb:.2f}", observedUnit="MB")

    def _check_migrations(self) -> Dict[str, Any]:
        if self.engine is None:
            return check_result(HealthStatus.WARN, "datastore", output="No engine configured")
        try:
            with self.engine.connect() as conn:
                if not inspect(conn).has_table("alembic_version"):
                    return check_result(HealthStatus.WARN, "datastore", output="Migrations table not found")
                revision = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
            return check_result(HealthStatus.PASS, "datastore", observedValue=revision)
        except Exception as e:
            return check_result(HealthStatus.FAIL, "datastore", output=str(e))

    def _check_configuration(self) -> Dict[str, Any]:
        missing = sorted(name for name, value in self.required_settings.items() if not value)
        if missing:
            return check_result(
                HealthStatus.FAIL, "configuration",
                output=f"Missing settings: {', '.join(missing)}",
            )
        return check_result(HealthStatus.PASS, "configuration")

    @staticmethod
    def overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = [check.get("status", HealthStatus.PASS) for check in checks.values()]
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS
