"""
Webhook Routes - Stripe event delivery endpoint.

No user authentication: deliveries are authenticated by their signature.
Status codes drive Stripe's redelivery:
- 200: processed, duplicate or ignored (no retry)
- 400: bad signature or payload (no retry worth doing)
- 500: processing failed (Stripe retries)
- 503: signing secret not configured
"""

import time

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from structlog import get_logger

from subscription_billing.api.dependencies import get_payment_provider, get_subscription_processor
from subscription_billing.config import Settings, get_settings
from subscription_billing.exceptions import WebhookNotConfiguredError, WebhookVerificationError
from subscription_billing.models.api import WebhookAckResponse
from subscription_billing.observability.logging import log_context
from subscription_billing.observability.metrics import metrics
from subscription_billing.services.payment_provider import PaymentProvider
from subscription_billing.services.subscription_processor import SubscriptionEventProcessor

logger = get_logger(__name__)

router = APIRouter()


@router.post("/v1/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    settings: Settings = Depends(get_settings),
    provider: PaymentProvider = Depends(get_payment_provider),
    processor: SubscriptionEventProcessor = Depends(get_subscription_processor),
) -> WebhookAckResponse:
    """Verify, decode and apply one Stripe event."""
    if not settings.stripe_webhook_secret:
        exc = WebhookNotConfiguredError()
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    payload = await request.body()
    started = time.monotonic()

    try:
        event = await provider.verify_webhook(payload, stripe_signature or "")
    except WebhookVerificationError as exc:
        metrics.record_webhook_event("unknown", "rejected", time.monotonic() - started)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    with log_context(event_id=event.event_id, event_type=event.event_type):
        try:
            outcome = await processor.process(event)
        except Exception as exc:
            logger.error(
                "stripe_webhook_processing_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            metrics.record_webhook_event(event.event_type, "failed", time.monotonic() - started)
            metrics.record_error(type(exc).__name__, "webhook_processing")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook processing failed",
            ) from exc

        metrics.record_webhook_event(event.event_type, outcome.value, time.monotonic() - started)
        logger.info("stripe_webhook_processed", outcome=outcome.value)

    return WebhookAckResponse(received=True)
