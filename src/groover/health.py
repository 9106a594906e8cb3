"""Health check endpoints for the operator.

Provides HTTP health check endpoints for Kubernetes liveness and readiness
probes.
"""

import logging
import time
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the operator.

    Provides /health endpoint that checks:
    - Redis connectivity
    - Message bus connectivity
    - Service uptime
    """

    def __init__(self, state: Any = None, bus: Any = None) -> None:
        """Initialize health check handler.

        Args:
            state: StateGuard instance (optional)
            bus: NATS client (optional)
        """
        self.state = state
        self.bus = bus
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Redis and NATS are reachable
            503 Service Unavailable: A dependency is down

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "checks": {
                "redis": {"ok": bool, "error": str | null},
                "nats": {"ok": bool, "error": str | null}
            }
        }
        """
        checks: dict[str, Any] = {}

        redis_ok = False
        redis_error = None
        if self.state is not None:
            try:
                redis_ok = await self.state.health_check()
            except Exception as e:
                redis_error = str(e)
                logger.warning("Redis health check failed", extra={"error": str(e)})
        checks["redis"] = {"ok": redis_ok, "error": redis_error}

        nats_ok = self.bus is not None and bool(self.bus.is_connected)
        checks["nats"] = {"ok": nats_ok, "error": None if nats_ok else "not connected"}

        overall_healthy = redis_ok and nats_ok
        response_data = {
            "status": "healthy" if overall_healthy else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "checks": checks,
        }

        logger.debug(
            "Health check performed",
            extra={"status": response_data["status"], "checks": checks},
        )

        return web.json_response(response_data, status=200 if overall_healthy else 503)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint; ready when healthy."""
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if dependencies are down.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )


def setup_health_routes(app: web.Application, state: Any = None, bus: Any = None) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        state: StateGuard instance (optional)
        bus: NATS client (optional)
    """
    handler = HealthCheckHandler(state=state, bus=bus)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)

    logger.info("Health check endpoints configured: /health, /readiness, /liveness")
