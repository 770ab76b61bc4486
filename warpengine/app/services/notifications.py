############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# notifications.py: Operator email alerts via SendGrid
#
############################################################

"""Fire-and-forget operator notifications."""

from typing import Optional

import httpx

from warpengine.app.logging_config import get_logger
from warpengine.app.settings import Settings

logger = get_logger(__name__)


class EmailNotifier:
    """
    Sends operator alerts through the SendGrid v3 mail API.

    Outside production only messages sent with force=True go out. A failed
    send is logged and reported as False; it never raises into the caller.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = settings.sendgrid_api_key
        self._api_url = settings.sendgrid_api_url
        self._from = settings.email_from
        self._to = settings.email_to
        self._env = "prod" if settings.is_production else "dev"
        self._is_production = settings.is_production
        self._transport = transport

    def _subject(self, subject: str) -> str:
        return f"WE-NOTIF: {subject} -- env:{self._env}"

    async def send(
        self,
        subject: str,
        body: str,
        to: Optional[str] = None,
        force: bool = False,
    ) -> bool:
        """Send one HTML email; returns True when SendGrid accepted it."""
        if not self._is_production and not force:
            return False

        recipient = to or self._to
        if not self._api_key or not recipient or not self._from:
            logger.warning("email_not_configured", subject=subject)
            return False

        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self._from},
            "reply_to": {"email": self._from},
            "subject": self._subject(subject),
            "content": [{"type": "text/html", "value": body}],
        }
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(
                    self._api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("email_send_failed", subject=subject, error=str(e))
            return False

        logger.info("email_sent", subject=subject, to=recipient)
        return True
