"""Operations endpoints: health checks and Prometheus metrics."""

from __future__ import annotations

import asyncpg
from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from vinylfeed.infra.postgres import get_pool
from vinylfeed.infra.redis import redis_client
from vinylfeed.settings import settings

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


@router.get("/health/ready")
async def health_ready() -> Response:
	checks: dict[str, str] = {}
	try:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute("SELECT 1")
		checks["postgres"] = "ok"
	except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
		checks["postgres"] = "down"
	try:
		await redis_client.ping()
		checks["redis"] = "ok"
	except (RedisError, OSError):
		checks["redis"] = "down"
	ready = all(value == "ok" for value in checks.values())
	status_code = status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE
	return JSONResponse(content={"status": "ok" if ready else "degraded", "checks": checks}, status_code=status_code)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = ["router"]
