############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# payments_api.py: Stripe checkout endpoint
#
############################################################

"""Payment endpoints (/v1/payments)."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from warpengine.app.api.auth import get_current_user_id
from warpengine.app.api.schemas import CheckoutRequest
from warpengine.app.logging_config import get_logger
from warpengine.app.services.payments import PaymentError, PaymentService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/payments", tags=["payments"])


def get_payment_service(request: Request) -> PaymentService:
    """The payment service built during application startup."""
    return request.app.state.payment_service


@router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    payments: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Create a Stripe Checkout session for one of the credit packages."""
    if body.amount not in payments.known_amounts():
        logger.warning("checkout_invalid_amount", user_id=user_id, amount=body.amount)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid payment amount: {body.amount}",
        )

    try:
        url = await payments.create_checkout_session(user_id, body.amount, body.quantity)
    except PaymentError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {"success": True, "url": url}
