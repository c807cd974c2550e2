"""Twilio SMS carrier transport.

Thin wrapper around the Twilio REST API. Every transport failure, including
timeouts, is raised as DeliveryError so dispatch can retry it.
"""

import logging

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from app.config import Settings
from app.errors import DeliveryError

logger = logging.getLogger(__name__)


class TwilioCarrier:
    """
    Sends SMS through Twilio.

    Args:
        client: a ``twilio.rest.Client`` (or anything exposing
            ``messages.create(to=, from_=, body=)``)
    """

    def __init__(self, client):
        self.client = client

    def send(self, to: str, from_: str, body: str) -> str:
        """
        Send a single SMS.

        Returns:
            The carrier message sid.

        Raises:
            DeliveryError: if Twilio rejects the message or cannot be reached.
        """
        try:
            message = self.client.messages.create(to=to, from_=from_, body=body)
        except TwilioRestException as e:
            # str(e) adds terminal colour codes when stderr is a tty
            detail = e.msg or f"HTTP {e.status} error"
            logger.warning(f"Twilio rejected SMS to {to}: {detail}")
            raise DeliveryError(detail) from e
        except TwilioException as e:
            logger.warning(f"Twilio request for SMS to {to} failed: {e}")
            raise DeliveryError(str(e) or "Twilio request failed") from e
        except Exception as e:
            logger.warning(f"Failed to send SMS to {to}: {e}")
            raise DeliveryError(str(e) or e.__class__.__name__) from e

        if not message.sid:
            raise DeliveryError("Twilio accepted the request but returned no message sid")

        logger.info(f"SMS to {to} accepted by Twilio: {message.sid}")
        return message.sid


def build_twilio_carrier(settings: Settings) -> TwilioCarrier:
    """Create the production carrier with a bounded HTTP timeout."""
    http_client = TwilioHttpClient(timeout=settings.CARRIER_TIMEOUT_SECONDS)
    client = Client(
        settings.TWILIO_ACCOUNT_SID,
        settings.TWILIO_AUTH_TOKEN,
        http_client=http_client,
    )
    logger.info("Twilio client initialized successfully.")
    return TwilioCarrier(client)
