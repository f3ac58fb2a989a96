"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from functools import lru_cache
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subscription_billing.config import Settings, get_settings
from subscription_billing.db.session import get_db
from subscription_billing.models.domain import AuthenticatedUser
from subscription_billing.services.account_store import AccountStore
from subscription_billing.services.balance_store import BalanceStore
from subscription_billing.services.event_ledger import EventLedger
from subscription_billing.services.payment_provider import PaymentProvider
from subscription_billing.services.plan_resolver import PlanResolver
from subscription_billing.services.stripe_provider import StripeProvider
from subscription_billing.services.subscription_processor import SubscriptionEventProcessor
from subscription_billing.services.subscription_service import SubscriptionService

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication (token issued by the chat application)
# ============================================================================

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_user_token(token: str, secret: str) -> AuthenticatedUser:
    """
    Verify an HS256 user token and extract the caller.

    The user id is read from "sub", or "id" for tokens issued by the chat
    application's session layer.

    Raises:
        HTTPException 401 if the token is invalid or carries no user id
    """
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise _unauthorized("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("user_token_invalid", error=str(exc))
        raise _unauthorized("Invalid token") from exc

    raw_user_id = claims.get("sub") or claims.get("id")
    try:
        user_id = UUID(str(raw_user_id))
    except ValueError as exc:
        raise _unauthorized("Invalid token: missing user ID") from exc

    return AuthenticatedUser(user_id=user_id, email=claims.get("email"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    """
    FastAPI dependency to authenticate the caller from Authorization: Bearer.

    Usage:
        @router.get("/v1/balance")
        async def get_balance(user: AuthenticatedUser = Depends(get_current_user)):
            ...
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")
    if not settings.user_jwt_secret:
        logger.error("user_jwt_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: user token secret not configured",
        )
    return decode_user_token(credentials.credentials, settings.user_jwt_secret)


# ============================================================================
# Service wiring
# ============================================================================


@lru_cache
def get_payment_provider() -> PaymentProvider:
    """Process-wide Stripe provider."""
    settings = get_settings()
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        timeout_seconds=settings.stripe_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
    )


def get_subscription_processor(
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    settings: Settings = Depends(get_settings),
) -> SubscriptionEventProcessor:
    return SubscriptionEventProcessor(
        accounts=AccountStore(db),
        balances=BalanceStore(db),
        ledger=EventLedger(db),
        provider=provider,
        resolver=PlanResolver(settings, provider),
    )


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    processor: SubscriptionEventProcessor = Depends(get_subscription_processor),
    settings: Settings = Depends(get_settings),
) -> SubscriptionService:
    return SubscriptionService(
        settings=settings,
        accounts=AccountStore(db),
        provider=provider,
        processor=processor,
    )
