############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# payments.py: Stripe checkout and payment crediting
#
############################################################

"""Stripe payments.

Checkout sessions are created through the Stripe SDK (run in a worker
thread, since the SDK is synchronous). Successful payment intents credit the
buyer's time balance with a single atomic UPDATE.
"""

import asyncio
from typing import Any, Dict, Mapping, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from warpengine.app.db import crud
from warpengine.app.db.models import User
from warpengine.app.logging_config import get_logger
from warpengine.app.services.notifications import EmailNotifier
from warpengine.app.settings import Settings

logger = get_logger(__name__)


class PaymentError(Exception):
    """A payment request could not be completed."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _user_email(user: User) -> Optional[str]:
    """Primary email from the identity provider's user payload."""
    meta = user.meta or {}
    addresses = meta.get("email_addresses") or []
    if addresses and isinstance(addresses[0], dict):
        email = addresses[0].get("email_address")
        if email and "@" in email:
            return email
    return None


class PaymentService:
    """Stripe checkout creation and webhook handling."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: EmailNotifier,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._notifier = notifier
        self._api_key = settings.stripe_secret_key

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Any:
        """Verify a webhook signature and return the parsed Stripe event."""
        if not self._settings.stripe_endpoint_secret:
            raise PaymentError("Stripe webhook secret is not configured", 500)
        if not sig_header:
            raise PaymentError("Missing Stripe-Signature header", 400)
        try:
            return stripe.Webhook.construct_event(
                payload, sig_header, self._settings.stripe_endpoint_secret
            )
        except ValueError as e:
            logger.warning("stripe_webhook_invalid_payload", error=str(e))
            raise PaymentError(f"Webhook Error: {e}", 400) from e
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_bad_signature", error=str(e))
            raise PaymentError(f"Webhook Error: {e}", 400) from e

    async def handle_event(self, event: Mapping[str, Any]) -> Optional[int]:
        """Apply a verified webhook event; returns the new balance when credited."""
        event_type = event["type"]
        if event_type != "payment_intent.succeeded":
            logger.info("stripe_event_ignored", event_type=event_type)
            return None

        intent = event["data"]["object"]
        return await self.credit_payment(intent.get("customer"), intent.get("amount"))

    async def credit_payment(
        self, customer_id: Optional[str], amount_cents: Optional[int]
    ) -> Optional[int]:
        """Credit the customer's user with the seconds bought by amount_cents."""
        user_id = None
        new_balance = None
        seconds = None
        async with self._session_factory.begin() as db:
            user = (
                await crud.get_user_by_stripe_customer(db, customer_id)
                if customer_id
                else None
            )
            if user is not None:
                user_id = user.id
                if amount_cents is not None:
                    seconds = self._settings.credits_for_amount(amount_cents)
                if seconds is not None:
                    new_balance = await crud.credit_time_balance(db, user.id, seconds)

        if user_id is None:
            logger.error("stripe_payment_unknown_customer", customer_id=customer_id)
            await self._notifier.send(
                "Stripe payment error",
                f"stripe payment error: No user found for customer {customer_id}",
                force=True,
            )
            return None
        if seconds is None:
            logger.error(
                "stripe_payment_invalid_amount",
                customer_id=customer_id,
                user_id=user_id,
                amount=amount_cents,
            )
            return None

        logger.info(
            "time_balance_credited",
            user_id=user_id,
            seconds=seconds,
            time_balance=new_balance,
        )
        return new_balance

    async def create_checkout_session(
        self, user_id: str, amount_cents: int, quantity: int
    ) -> str:
        """Create a Stripe Checkout session for the user; returns its URL."""
        async with self._session_factory() as db:
            user = await crud.get_user_by_id(db, user_id)
        if user is None or user.deleted_at is not None:
            raise PaymentError("user not found", 400)

        hours = "Hour" if quantity == 1 else "Hours"
        try:
            customer_id = user.stripe_customer_id
            if not customer_id:
                customer = await asyncio.to_thread(
                    stripe.Customer.create,
                    api_key=self._api_key,
                    email=_user_email(user),
                    metadata={"user_id": user_id},
                )
                customer_id = customer.id
                async with self._session_factory.begin() as db:
                    await crud.set_stripe_customer_id(db, user_id, customer_id)
                logger.info(
                    "stripe_customer_created", user_id=user_id, customer_id=customer_id
                )

            frontend = self._settings.frontend_url.rstrip("/")
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._api_key,
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": self._settings.stripe_currency,
                            "product_data": {
                                "name": f"{quantity} {hours}",
                                "description": f"Purchase {quantity} {hours.lower()} of time",
                            },
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                success_url=f"{frontend}/billing?status=success&amount={amount_cents}",
                cancel_url=f"{frontend}/billing?status=cancelled",
                customer=customer_id,
            )
        except stripe.StripeError as e:
            logger.error("stripe_checkout_failed", user_id=user_id, error=str(e))
            raise PaymentError("Payment Error", 500) from e

        logger.info("stripe_checkout_created", user_id=user_id, amount=amount_cents)
        return session.url

    def known_amounts(self) -> Dict[int, int]:
        return dict(self._settings.credit_packages)
