"""
Status API routes - Health checks for marketplace billing dependencies.

Public endpoint (no auth) for status page aggregation.
Rate limited to prevent abuse.
"""

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from structlog import get_logger

from marketplace_billing.config import settings
from marketplace_billing.db.session import get_write_session_factory

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# Timeout for health checks
CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms
STRIPE_PROBE_URL = "https://api.stripe.com/v1/balance"

# Rate limiting: cache last result for 10 seconds
_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single provider."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /api/status endpoint."""

    service: str = "marketplace-billing"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _timed_status(started: float, timestamp: str) -> ProviderStatus:
    latency_ms = int((time.perf_counter() - started) * 1000)
    status = (
        StatusLevel.DEGRADED if latency_ms > DEGRADED_LATENCY_THRESHOLD else StatusLevel.OPERATIONAL
    )
    return ProviderStatus(
        status=status,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if status == StatusLevel.DEGRADED else None,
    )


async def check_postgresql() -> ProviderStatus:
    """Check PostgreSQL connectivity."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with get_write_session_factory()() as db:
            await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=CHECK_TIMEOUT)
        return _timed_status(start, timestamp)
    except Exception as e:
        logger.warning("postgresql_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )


async def check_redis(client: aioredis.Redis | None) -> ProviderStatus:
    """Check Redis (payout rate limiter) connectivity."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    # If not configured, report as operational (limiter disabled)
    if client is None:
        return ProviderStatus(
            status=StatusLevel.OPERATIONAL,
            latency_ms=0,
            last_check=timestamp,
            message="Not configured",
        )

    try:
        await asyncio.wait_for(client.ping(), timeout=CHECK_TIMEOUT)
        return _timed_status(start, timestamp)
    except Exception as e:
        logger.warning("redis_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )


async def check_stripe() -> ProviderStatus:
    """Check Stripe API reachability."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with httpx.AsyncClient(timeout=CHECK_TIMEOUT) as client:
            # Unauthenticated request; 401 means the API answered
            response = await client.get(STRIPE_PROBE_URL)
            if response.status_code in (200, 401):
                return _timed_status(start, timestamp)

            return ProviderStatus(
                status=StatusLevel.DEGRADED,
                latency_ms=int((time.perf_counter() - start) * 1000),
                last_check=timestamp,
                message=f"Unexpected status: {response.status_code}",
            )
    except httpx.TimeoutException:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=timestamp,
            message="Timeout",
        )
    except Exception as e:
        logger.warning("stripe_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Calculate overall service status from provider statuses."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/api/status", response_model=ServiceStatusResponse)
async def get_status(request: Request) -> ServiceStatusResponse:
    """
    Get marketplace billing service status.

    Checks connectivity to all dependent providers concurrently.
    Rate limited via 10-second cache to prevent abuse.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    redis_client: aioredis.Redis | None = getattr(request.app.state, "redis", None)
    postgresql_status, redis_status, stripe_status = await asyncio.gather(
        check_postgresql(),
        check_redis(redis_client),
        check_stripe(),
    )

    providers = {
        "postgresql": postgresql_status,
        "redis": redis_status,
        "stripe": stripe_status,
    }

    response = ServiceStatusResponse(
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)
    return response
