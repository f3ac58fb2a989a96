"""
API Routes - Subscription checkout, management and balance endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subscription_billing.api.dependencies import get_current_user, get_subscription_service
from subscription_billing.db.session import get_db
from subscription_billing.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    BalanceNotFoundError,
    BillingError,
    InvalidPlanError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from subscription_billing.models.api import (
    BalanceResponse,
    CancelSubscriptionResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    MySubscriptionResponse,
    PortalSessionResponse,
    ReactivateSubscriptionResponse,
    SetupIntentRequest,
    SetupIntentResponse,
    SubscriptionStatusResponse,
)
from subscription_billing.models.domain import AuthenticatedUser
from subscription_billing.services.account_store import AccountStore
from subscription_billing.services.balance_store import BalanceStore
from subscription_billing.services.balance_view import build_balance_view
from subscription_billing.services.subscription_service import SubscriptionService

logger = get_logger(__name__)

router = APIRouter()


def http_error(exc: BillingError) -> HTTPException:
    """Map a billing error to its HTTP status."""
    if isinstance(exc, (AccountNotFoundError, BalanceNotFoundError, SubscriptionNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InvalidPlanError, SubscriptionStateError)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, AuthenticationError):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, PaymentProviderError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if code >= 500:
        logger.error("request_billing_error", error=str(exc), error_type=type(exc).__name__)
    return HTTPException(status_code=code, detail=str(exc))


# ============================================================================
# Subscription checkout
# ============================================================================


@router.post("/v1/subscriptions/setup-intent", response_model=SetupIntentResponse)
async def create_setup_intent(
    request: SetupIntentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SetupIntentResponse:
    """
    Start checkout for a plan ("standard-monthly", "plus-yearly", ...).

    Returns the client secret the frontend uses to collect the card.
    """
    try:
        return await service.create_setup_intent(user, request.plan_id, request.currency)
    except BillingError as exc:
        raise http_error(exc) from exc


@router.post("/v1/subscriptions", response_model=CreateSubscriptionResponse)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CreateSubscriptionResponse:
    """
    Subscribe with the card saved by a succeeded setup intent.

    The first payment is charged immediately; a declined card fails the call.
    """
    try:
        return await service.create_subscription(
            user, request.setup_intent_id, request.plan_id, request.currency
        )
    except BillingError as exc:
        raise http_error(exc) from exc


# ============================================================================
# Subscription management
# ============================================================================


@router.get("/v1/subscriptions/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    subscription_id: str = Query(..., min_length=1),
    user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionStatusResponse:
    try:
        return await service.get_subscription_status(user, subscription_id)
    except BillingError as exc:
        raise http_error(exc) from exc


@router.get("/v1/subscriptions/mine", response_model=MySubscriptionResponse)
async def get_my_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> MySubscriptionResponse:
    try:
        return await service.get_my_subscription(user)
    except BillingError as exc:
        raise http_error(exc) from exc


@router.post("/v1/subscriptions/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CancelSubscriptionResponse:
    """Cancel at the end of the current period."""
    try:
        return await service.cancel_subscription(user)
    except BillingError as exc:
        raise http_error(exc) from exc


@router.post("/v1/subscriptions/reactivate", response_model=ReactivateSubscriptionResponse)
async def reactivate_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> ReactivateSubscriptionResponse:
    """Undo a pending cancellation."""
    try:
        return await service.reactivate_subscription(user)
    except BillingError as exc:
        raise http_error(exc) from exc


@router.post("/v1/billing-portal", response_model=PortalSessionResponse)
async def create_portal_session(
    user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> PortalSessionResponse:
    """Self-service billing portal (payment methods, invoices, cancellation)."""
    try:
        return PortalSessionResponse(url=await service.create_portal_session(user))
    except BillingError as exc:
        raise http_error(exc) from exc


# ============================================================================
# Balance
# ============================================================================


@router.get("/v1/balance", response_model=BalanceResponse)
async def get_balance(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    """
    Caller's token balance and subscription entitlement.

    Refill fields are null unless auto-refill is enabled.
    """
    balance = await BalanceStore(db).get(user.user_id)
    if balance is None:
        raise http_error(BalanceNotFoundError(user.user_id))

    account = await AccountStore(db).get(user.user_id)
    return build_balance_view(balance, account)
