"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the send, retry and conversation update endpoints
- Response models for API responses

The send/retry payloads use camelCase on the wire; read models mirror the
store's snake_case column names.
"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Volunteer reply to a conversation.

    Required fields are optional here so that a missing field is reported
    as a 400 by the dispatch layer rather than a schema error.
    """
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    message_text: Optional[str] = Field(None, alias="messageText")
    volunteer_id: Optional[str] = Field(None, alias="volunteerId")
    volunteer_name: Optional[str] = Field(None, alias="volunteerName")
    send_untranslated: bool = Field(
        False,
        alias="sendUntranslated",
        description="Deliver the original English text, skipping translation"
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "conversationId": "0b6f3f0e-8d43-4a4e-9d0e-2d1f6b1c9a11",
                    "messageText": "I can pick up at 3pm",
                    "volunteerId": "vol-42",
                    "volunteerName": "Sam",
                }
            ]
        },
    )


class RetryRequest(BaseModel):
    """Operator-triggered resend of a failed outbound message."""
    volunteer_id: Optional[str] = Field(None, alias="volunteerId")
    volunteer_name: Optional[str] = Field(None, alias="volunteerName")
    send_untranslated: bool = Field(False, alias="sendUntranslated")

    model_config = ConfigDict(populate_by_name=True)


class ConversationUpdate(BaseModel):
    """Manual edits: rename the contact, resolve or reopen the thread."""
    contact_name: Optional[str] = Field(None, alias="contactName")
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SendResponse(BaseModel):
    """Dispatch completed: delivered or failed after all attempts."""
    success: bool
    message_id: Optional[str] = Field(None, serialization_alias="messageId")
    error: Optional[str] = None
    translated_text: Optional[str] = Field(None, serialization_alias="translatedText")


class RetryResponse(SendResponse):
    replaced_message_id: Optional[str] = Field(None, serialization_alias="replacedMessageId")


class TranslationFailedResponse(BaseModel):
    """Translation failed before anything was stored or sent."""
    success: bool = False
    translation_error: str = Field(..., serialization_alias="translationError")
    original_text: str = Field(..., serialization_alias="originalText")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    id: str
    phone_number: str
    contact_name: Optional[str] = None
    detected_language: str
    status: str
    last_reply_by: Optional[str] = None
    last_reply_at: Optional[str] = None
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class ConversationsListResponse(BaseModel):
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    """A stored message as read back by the display layer."""
    id: str
    conversation_id: str
    direction: str
    original_text: str
    translated_text: Optional[str] = None
    detected_language: Optional[str] = None
    translation_error: Optional[str] = None
    status: str
    retry_count: int = Field(..., ge=0)
    twilio_sid: Optional[str] = None
    error_message: Optional[str] = None
    volunteer_id: Optional[str] = None
    volunteer_name: Optional[str] = None
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class MessagesListResponse(BaseModel):
    """Messages of one conversation in creation order."""
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    total_conversations: int = Field(..., ge=0)
    conversations_by_status: Dict[str, int] = Field(default_factory=dict)
    total_messages: int = Field(..., ge=0)
    messages_by_direction: Dict[str, int] = Field(default_factory=dict)
    messages_by_status: Dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
