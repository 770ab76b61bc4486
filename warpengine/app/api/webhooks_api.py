############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# webhooks_api.py: Identity provider and Stripe webhooks
#
############################################################

"""Inbound webhooks.

Clerk user events arrive Svix-signed at /v1/webhooks; Stripe payment events
arrive at /stripe/webhook. Both verify the signature over the raw body
before acting.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from svix.webhooks import Webhook, WebhookVerificationError

from warpengine.app.api.payments_api import get_payment_service
from warpengine.app.core.clock import utcnow
from warpengine.app.db import crud
from warpengine.app.db.session import get_async_db
from warpengine.app.logging_config import get_logger
from warpengine.app.services.payments import PaymentError, PaymentService
from warpengine.app.settings import Settings, get_settings

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

_SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")


@router.post("/v1/webhooks")
async def clerk_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    settings: Settings = Depends(get_settings),
):
    """
    Handle Clerk user lifecycle events.

    user.created upserts the user with the event payload as metadata;
    user.deleted soft-deletes it.
    """
    if not settings.clerk_webhook_secret:
        logger.error("clerk_webhook_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret is not configured",
        )

    headers = {name: request.headers.get(name) for name in _SVIX_HEADERS}
    if not all(headers.values()):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Error occured -- no svix headers",
        )

    payload = await request.body()
    try:
        event = Webhook(settings.clerk_webhook_secret).verify(payload, headers)
    except WebhookVerificationError as e:
        logger.warning("clerk_webhook_verification_failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": str(e)},
        )

    data: Dict[str, Any] = event.get("data") or {}
    event_type = event.get("type")
    user_id = data.get("id")
    logger.info("clerk_webhook_received", event_type=event_type, user_id=user_id)

    if event_type == "user.created" and user_id:
        await crud.upsert_user(db, user_id, meta=data)
        logger.info("user_upserted", user_id=user_id)
    elif event_type == "user.deleted" and user_id:
        user = await crud.soft_delete_user(db, user_id, deleted_at=utcnow())
        if user is None:
            logger.error("deleted_user_not_found", user_id=user_id)
        else:
            logger.info("user_soft_deleted", user_id=user_id)

    return {"success": True, "message": "Webhook received"}


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    payments: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Handle Stripe events; payment_intent.succeeded credits time balance."""
    payload = await request.body()
    try:
        event = payments.construct_event(payload, request.headers.get("stripe-signature"))
    except PaymentError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await payments.handle_event(event)
    return {"received": True}
