"""
FastAPI Dependencies - Authentication, payment gateway and rate limiting.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.exceptions import RedisError
from structlog import get_logger

from marketplace_billing.config import settings
from marketplace_billing.exceptions import AuthenticationError, RateLimitExceededError
from marketplace_billing.observability.metrics import metrics
from marketplace_billing.services.payment_gateway import PaymentGateway
from marketplace_billing.services.rate_limit import FixedWindowRateLimiter

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication (tokens issued by the marketplace front-end)
# ============================================================================


@dataclass(frozen=True)
class AuthenticatedUser:
    """Caller identity from a verified bearer token."""

    user_id: UUID
    email: str | None = None


bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_token(token: str) -> AuthenticatedUser:
    """
    Verify an HS256 bearer token and extract the caller.

    Raises:
        AuthenticationError: Expired, badly signed, or missing a UUID ``sub``
    """
    if not settings.jwt_secret:
        raise AuthenticationError("JWT secret not configured")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(str(e)) from e

    try:
        user_id = UUID(str(payload.get("sub", "")))
    except ValueError as e:
        raise AuthenticationError("Token subject is not a user id") from e

    email = payload.get("email")
    return AuthenticatedUser(user_id=user_id, email=email if isinstance(email, str) else None)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency requiring a valid bearer token.

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_user_token(credentials.credentials)
    except AuthenticationError as e:
        logger.warning("jwt_token_invalid", error=e.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedUser | None:
    """
    Optional authentication - returns None if no token (or a bad one) is provided.

    Useful for endpoints that can work with or without auth.
    """
    if credentials is None:
        return None
    try:
        return decode_user_token(credentials.credentials)
    except AuthenticationError:
        return None


# ============================================================================
# Process-wide collaborators (built once in the application lifespan)
# ============================================================================


def get_payment_gateway(request: Request) -> PaymentGateway:
    """The gateway client constructed at startup."""
    gateway: PaymentGateway | None = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return gateway


def get_payout_rate_limiter(request: Request) -> FixedWindowRateLimiter | None:
    """Payout limiter, or None when Redis is not configured."""
    return getattr(request.app.state, "payout_rate_limiter", None)


async def enforce_payout_rate_limit(
    user: AuthenticatedUser = Depends(get_current_user),
    limiter: FixedWindowRateLimiter | None = Depends(get_payout_rate_limiter),
) -> AuthenticatedUser:
    """
    Count a payout request against the caller's hourly budget.

    Redis outages degrade to unlimited (logged); the balance lock still
    prevents double-spend.

    Raises:
        RateLimitExceededError: Budget exhausted for the current window
    """
    if limiter is None:
        return user
    try:
        decision = await limiter.hit(str(user.user_id))
    except RedisError as e:
        logger.error("payout_rate_limit_unavailable", user_id=str(user.user_id), error=str(e))
        metrics.record_error("redis_unavailable", "payout_rate_limit")
        return user
    if not decision.allowed:
        metrics.record_rate_limited(limiter.scope)
        raise RateLimitExceededError(decision.retry_after_seconds)
    return user
