"""
Tests for the POST /api/webhook endpoint.

Tests cover:
- Valid signature: conversation resolution and message storage
- Translation results recorded on the stored message
- Invalid/missing signature (403) with no store mutation
- Missing fields (400) with no store mutation
- Duplicate carrier callbacks
- Store failures (500)
"""

from urllib.parse import urlencode

from app import storage
from app.errors import StoreError
from app.models import Conversation, Message


def count_rows(db):
    db.expire_all()
    return db.query(Conversation).count(), db.query(Message).count()


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_spanish_message_creates_conversation(self, post_inbound, db):
        response = post_inbound(from_="+15551234567", body="Hola, necesito un aventón", message_sid="SM100")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert "<Response" in response.text
        assert "<Message" not in response.text

        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        assert conversation is not None
        assert conversation.status == "new"
        assert conversation.detected_language == "es"

        messages = storage.list_messages(db, conversation.id)
        assert len(messages) == 1
        message = messages[0]
        assert message.direction == "inbound"
        assert message.status == "sent"
        assert message.original_text == "Hola, necesito un aventón"
        assert message.translated_text == "Hello, I need a ride"
        assert message.detected_language == "es"
        assert message.translation_error is None
        assert message.twilio_sid == "SM100"

    def test_english_message_is_not_translated(self, post_inbound, db):
        response = post_inbound(body="Do you have room for two kids?")

        assert response.status_code == 200
        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        assert conversation.detected_language == "en"
        message = storage.list_messages(db, conversation.id)[0]
        assert message.translated_text is None
        assert message.detected_language == "en"

    def test_second_message_reuses_conversation(self, post_inbound, db):
        post_inbound(body="Hola, necesito un aventón", message_sid="SM1")
        post_inbound(body="Gracias", message_sid="SM2")

        assert count_rows(db) == (1, 2)
        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        texts = [m.original_text for m in storage.list_messages(db, conversation.id)]
        assert texts == ["Hola, necesito un aventón", "Gracias"]

    def test_non_english_message_updates_language(self, post_inbound, db):
        post_inbound(body="Hola, necesito un aventón", message_sid="SM1")
        post_inbound(body="Bonjour, à quelle heure?", message_sid="SM2")

        db.expire_all()
        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        assert conversation.detected_language == "fr"

    def test_english_message_keeps_language(self, post_inbound, db):
        post_inbound(body="Hola, necesito un aventón", message_sid="SM1")
        post_inbound(body="OK", message_sid="SM2")

        db.expire_all()
        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        assert conversation.detected_language == "es"

    def test_different_senders_get_separate_conversations(self, post_inbound, db):
        post_inbound(from_="+15551234567", message_sid="SM1")
        post_inbound(from_="+15557654321", message_sid="SM2")

        assert count_rows(db) == (2, 2)

    def test_duplicate_callback_stored_once(self, post_inbound, gateway, db):
        first = post_inbound(body="Hola, necesito un aventón", message_sid="SM42")
        second = post_inbound(body="Hola, necesito un aventón", message_sid="SM42")

        assert first.status_code == 200
        assert second.status_code == 200
        assert count_rows(db) == (1, 1)
        assert len([c for c in gateway.calls if c[0] == "to_english"]) == 1


class TestWebhookTranslationFailure:
    """A failed translation must not drop the contact's message."""

    def test_message_stored_with_error(self, post_inbound, gateway, db):
        gateway.english_error = "Request timed out."

        response = post_inbound(body="Hola, necesito un aventón")

        assert response.status_code == 200
        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        assert conversation.status == "new"
        assert conversation.detected_language == "unknown"
        message = storage.list_messages(db, conversation.id)[0]
        assert message.original_text == "Hola, necesito un aventón"
        assert message.translated_text is None
        assert message.detected_language == "unknown"
        assert message.translation_error == "Request timed out."
        assert message.status == "sent"

    def test_failure_keeps_known_language(self, post_inbound, gateway, db):
        post_inbound(body="Hola, necesito un aventón", message_sid="SM1")
        gateway.english_error = "Request timed out."
        post_inbound(body="Gracias", message_sid="SM2")

        db.expire_all()
        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        assert conversation.detected_language == "es"


class TestWebhookInvalidSignature:
    """Invalid or missing signatures are rejected without touching the store."""

    def test_missing_signature_header(self, client, db):
        response = client.post(
            "/api/webhook",
            content=urlencode({"From": "+15551234567", "Body": "Hello", "MessageSid": "SM1"}),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 403
        assert response.json() == {"detail": "Invalid signature"}
        assert count_rows(db) == (0, 0)

    def test_empty_signature(self, post_inbound, db):
        response = post_inbound(signature="")

        assert response.status_code == 403
        assert count_rows(db) == (0, 0)

    def test_garbage_signature(self, post_inbound, db):
        response = post_inbound(signature="bm90IGEgc2lnbmF0dXJl")

        assert response.status_code == 403
        assert count_rows(db) == (0, 0)

    def test_signature_for_different_body(self, post_inbound, signer, db):
        signature = signer({"MessageSid": "SM1", "From": "+15551234567", "To": "+15550001111", "Body": "Hi"})

        response = post_inbound(body="Something else", signature=signature)

        assert response.status_code == 403
        assert count_rows(db) == (0, 0)

    def test_signature_for_different_url(self, post_inbound, signer, db):
        params = {"MessageSid": "SM1", "From": "+15551234567", "To": "+15550001111", "Body": "Hello"}
        signature = signer(params, url="http://testserver/api/other")

        response = post_inbound(signature=signature)

        assert response.status_code == 403
        assert count_rows(db) == (0, 0)

    def test_signature_with_wrong_token(self, post_inbound, signer, db):
        params = {"MessageSid": "SM1", "From": "+15551234567", "To": "+15550001111", "Body": "Hello"}
        signature = signer(params, auth_token="wrong-token")

        response = post_inbound(signature=signature)

        assert response.status_code == 403
        assert count_rows(db) == (0, 0)

    def test_invalid_signature_skips_translation(self, post_inbound, gateway):
        post_inbound(signature="invalid")

        assert gateway.calls == []


class TestWebhookValidationErrors:
    """Missing From or Body returns 400 without touching the store."""

    def test_missing_from(self, post_inbound, db):
        response = post_inbound(from_=None)

        assert response.status_code == 400
        assert count_rows(db) == (0, 0)

    def test_missing_body(self, post_inbound, db):
        response = post_inbound(body=None)

        assert response.status_code == 400
        assert count_rows(db) == (0, 0)

    def test_empty_body(self, post_inbound, db):
        response = post_inbound(body="")

        assert response.status_code == 400
        assert count_rows(db) == (0, 0)

    def test_missing_message_sid_is_accepted(self, post_inbound, db):
        response = post_inbound(message_sid=None)

        assert response.status_code == 200
        conversation = storage.get_conversation_by_phone(db, "+15551234567")
        assert storage.list_messages(db, conversation.id)[0].twilio_sid is None


class TestWebhookStoreFailure:

    def test_store_failure_returns_500(self, post_inbound, monkeypatch):
        def failing_create_message(*args, **kwargs):
            raise StoreError("Failed to create message")

        monkeypatch.setattr(storage, "create_message", failing_create_message)

        response = post_inbound(body="Hola, necesito un aventón")

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}
