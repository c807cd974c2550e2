"""
Outbound dispatch.

Translates a volunteer's English reply into the contact's language, records
a pending message, then tries the carrier up to ``max_attempts`` times with
exponential backoff. A translation failure stops the pipeline before any
message row exists; the volunteer decides whether to send untranslated.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session

from app import storage
from app.errors import ConflictError, DeliveryError, NotFoundError, ValidationError
from app.metrics import record_delivery_attempt
from app.models import (
    CONVERSATION_ACTIVE,
    MESSAGE_FAILED,
    MESSAGE_PENDING,
    MESSAGE_SENT,
    OUTBOUND,
)
from app.translation import ENGLISH, TranslationGateway

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """
    Outcome of one dispatch.

    Exactly one of these shapes:
    - translation failed: success=False, translation_error and original_text
      set, no message stored
    - delivered: success=True, message_id set
    - delivery failed: success=False, message_id and error set
    """
    success: bool
    message_id: Optional[str] = None
    translated_text: Optional[str] = None
    error: Optional[str] = None
    translation_error: Optional[str] = None
    original_text: Optional[str] = None
    attempts: int = 0
    replaced_message_id: Optional[str] = None

    @property
    def translation_failed(self) -> bool:
        return self.translation_error is not None


class OutboundDispatch:
    """
    Args:
        db: store session
        gateway: translation gateway
        carrier: object with ``send(to, from_, body) -> sid`` raising DeliveryError
        sender_number: our carrier phone number
        max_attempts: delivery attempts before the message is marked failed
        backoff_base_seconds: delay after failed attempt i is base * 2**i
        sleep: called with the backoff delay between attempts
    """

    def __init__(
        self,
        db: Session,
        gateway: TranslationGateway,
        carrier,
        sender_number: str,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must not be negative")
        self.db = db
        self.gateway = gateway
        self.carrier = carrier
        self.sender_number = sender_number
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.sleep = sleep

    def send(
        self,
        conversation_id: str,
        message_text: str,
        volunteer_id: str,
        volunteer_name: Optional[str] = None,
        send_untranslated: bool = False,
    ) -> DispatchResult:
        """
        Translate and deliver a volunteer reply.

        Raises:
            ValidationError: a required argument is empty
            NotFoundError: the conversation does not exist
            StoreError: the message or conversation could not be persisted
        """
        if not conversation_id or not message_text or not volunteer_id:
            raise ValidationError("Missing required fields")

        conversation = storage.get_conversation(self.db, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        target_language = conversation.detected_language
        if send_untranslated:
            logger.info(f"Sending untranslated reply to conversation {conversation_id}")
            translated_text = None
        elif target_language == ENGLISH:
            translated_text = message_text
        else:
            translation = self.gateway.to_target(message_text, target_language)
            if translation.error:
                logger.warning(
                    f"Translation to '{target_language}' failed for conversation "
                    f"{conversation_id}, not sending: {translation.error}"
                )
                return DispatchResult(
                    success=False,
                    translation_error=translation.error,
                    original_text=message_text,
                )
            translated_text = translation.translated_text

        text_to_send = translated_text or message_text

        # Persist before the first attempt so every send is observable
        message = storage.create_message(
            self.db,
            conversation_id=conversation_id,
            direction=OUTBOUND,
            original_text=message_text,
            status=MESSAGE_PENDING,
            translated_text=translated_text,
            detected_language=None if send_untranslated else target_language,
            volunteer_id=volunteer_id,
            volunteer_name=volunteer_name,
        )

        sid, last_error, attempts = self._deliver(message.id, conversation.phone_number, text_to_send)

        if sid is not None:
            storage.update_message(
                self.db, message.id, status=MESSAGE_SENT, twilio_sid=sid, error_message=None
            )
            storage.update_conversation(
                self.db,
                conversation_id,
                last_reply_by=volunteer_id,
                last_reply_at=storage.utc_now(),
                status=CONVERSATION_ACTIVE,
            )
            logger.info(f"Message {message.id} sent on attempt {attempts}")
        else:
            storage.update_message(
                self.db, message.id, status=MESSAGE_FAILED, error_message=last_error
            )
            logger.error(f"Message {message.id} failed after {attempts} attempts: {last_error}")

        return DispatchResult(
            success=sid is not None,
            message_id=message.id,
            translated_text=translated_text,
            error=last_error,
            attempts=attempts,
        )

    def _deliver(self, message_id: str, to: str, body: str) -> Tuple[Optional[str], Optional[str], int]:
        """
        Attempt carrier delivery with bounded retries.

        Returns:
            (sid or None, last error or None, attempts made)
        """
        last_error = None
        for attempt in range(self.max_attempts):
            try:
                sid = self.carrier.send(to=to, from_=self.sender_number, body=body)
                record_delivery_attempt(success=True)
                return sid, None, attempt + 1
            except DeliveryError as e:
                record_delivery_attempt(success=False)
                last_error = str(e) or "Unknown error"
                logger.warning(f"Send attempt {attempt + 1} for message {message_id} failed: {last_error}")

                # Visible to readers while we back off
                storage.update_message(self.db, message_id, retry_count=attempt + 1)

                if attempt < self.max_attempts - 1:
                    self.sleep(self.backoff_base_seconds * (2 ** attempt))

        return None, last_error, self.max_attempts

    def retry(
        self,
        message_id: str,
        volunteer_id: str,
        volunteer_name: Optional[str] = None,
        send_untranslated: bool = False,
    ) -> DispatchResult:
        """
        Re-send a failed outbound message as a new message.

        The old row is deleted only if the new dispatch is delivered.

        Raises:
            ValidationError: volunteer_id is empty
            NotFoundError: the message does not exist
            ConflictError: the message is not a failed outbound message
        """
        if not volunteer_id:
            raise ValidationError("Missing required fields")

        message = storage.get_message(self.db, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.direction != OUTBOUND or message.status != MESSAGE_FAILED:
            raise ConflictError("Only failed outbound messages can be retried")

        result = self.send(
            conversation_id=message.conversation_id,
            message_text=message.original_text,
            volunteer_id=volunteer_id,
            volunteer_name=volunteer_name,
            send_untranslated=send_untranslated,
        )
        if result.success:
            storage.delete_message(self.db, message_id)
            result.replaced_message_id = message_id
            logger.info(f"Failed message {message_id} replaced by {result.message_id}")
        return result
