"""
Inbound webhook ingestion.

Authenticates a carrier callback, resolves (or creates) the contact's
conversation, translates the message to English and appends it. A failed
translation never drops the message: it is stored with the error so a
volunteer can read the original text.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app import storage
from app.errors import AuthenticationError, ValidationError
from app.models import CONVERSATION_NEW, INBOUND, MESSAGE_SENT
from app.translation import TranslationGateway
from app.utils import verify_twilio_signature

logger = logging.getLogger(__name__)


@dataclass
class InboundResult:
    conversation_id: str
    message_id: str
    created_conversation: bool = False
    duplicate: bool = False
    translation_error: Optional[str] = None


class InboundIngestion:
    """
    Args:
        db: store session
        gateway: translation gateway
        auth_token: shared secret the carrier signs callbacks with
    """

    def __init__(self, db: Session, gateway: TranslationGateway, auth_token: str):
        self.db = db
        self.gateway = gateway
        self.auth_token = auth_token

    def authenticate(self, url: str, params: Dict[str, str], signature: Optional[str]) -> None:
        """Raise AuthenticationError unless the signature matches URL and params."""
        if not signature:
            raise AuthenticationError("Missing signature")
        if not verify_twilio_signature(url, params, signature, self.auth_token):
            raise AuthenticationError("Invalid signature")

    def ingest(self, url: str, params: Dict[str, str], signature: Optional[str]) -> InboundResult:
        """
        Process one carrier callback.

        Raises:
            AuthenticationError: bad or missing signature (nothing is stored)
            ValidationError: missing From or Body (nothing is stored)
            StoreError: the conversation or message could not be persisted
        """
        self.authenticate(url, params, signature)

        sender = (params.get("From") or "").strip()
        body = params.get("Body")
        message_sid = params.get("MessageSid") or None

        if not sender or not body:
            raise ValidationError("Missing required fields")

        # The carrier redelivers callbacks it thinks failed
        if message_sid:
            existing = storage.get_message_by_sid(self.db, message_sid)
            if existing is not None:
                logger.info(f"Duplicate inbound message {message_sid}, already stored as {existing.id}")
                return InboundResult(
                    conversation_id=existing.conversation_id,
                    message_id=existing.id,
                    duplicate=True,
                )

        translation = self.gateway.to_english(body)
        if translation.error:
            logger.warning(f"Storing inbound message {message_sid} untranslated: {translation.error}")

        created = False
        conversation = storage.get_conversation_by_phone(self.db, sender)
        if conversation is None:
            conversation = storage.create_conversation(
                self.db,
                phone_number=sender,
                detected_language=translation.detected_language,
                status=CONVERSATION_NEW,
            )
            created = True
        else:
            # Last successfully detected non-English language wins
            changes = {}
            if (
                not translation.is_english
                and translation.error is None
                and conversation.detected_language != translation.detected_language
            ):
                logger.info(
                    f"Conversation {conversation.id} language changed "
                    f"{conversation.detected_language} -> {translation.detected_language}"
                )
                changes["detected_language"] = translation.detected_language
            # Also bumps updated_at so the thread sorts as recently active
            conversation = storage.update_conversation(self.db, conversation.id, **changes)

        message = storage.create_message(
            self.db,
            conversation_id=conversation.id,
            direction=INBOUND,
            original_text=body,
            status=MESSAGE_SENT,
            translated_text=translation.translated_text,
            detected_language=translation.detected_language,
            translation_error=translation.error,
            twilio_sid=message_sid,
        )

        return InboundResult(
            conversation_id=conversation.id,
            message_id=message.id,
            created_conversation=created,
            translation_error=translation.error,
        )
