"""
FastAPI dependency providers.

Production collaborators are built once and shared; tests replace them
through ``app.dependency_overrides``.
"""

import time
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.carrier import TwilioCarrier, build_twilio_carrier
from app.config import settings
from app.dispatch import OutboundDispatch
from app.ingestion import InboundIngestion
from app.storage import get_db
from app.translation import TranslationGateway, build_translation_gateway


@lru_cache()
def get_translation_gateway() -> TranslationGateway:
    return build_translation_gateway(settings)


@lru_cache()
def get_carrier() -> TwilioCarrier:
    return build_twilio_carrier(settings)


def get_sleep():
    """Backoff sleep used between delivery attempts."""
    return time.sleep


def get_inbound_ingestion(
    db: Session = Depends(get_db),
    gateway: TranslationGateway = Depends(get_translation_gateway),
) -> InboundIngestion:
    return InboundIngestion(db=db, gateway=gateway, auth_token=settings.TWILIO_AUTH_TOKEN)


def get_outbound_dispatch(
    db: Session = Depends(get_db),
    gateway: TranslationGateway = Depends(get_translation_gateway),
    carrier: TwilioCarrier = Depends(get_carrier),
    sleep=Depends(get_sleep),
) -> OutboundDispatch:
    return OutboundDispatch(
        db=db,
        gateway=gateway,
        carrier=carrier,
        sender_number=settings.TWILIO_PHONE_NUMBER,
        max_attempts=settings.SEND_MAX_ATTEMPTS,
        backoff_base_seconds=settings.SEND_BACKOFF_BASE_SECONDS,
        sleep=sleep,
    )
