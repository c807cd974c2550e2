"""
Pytest configuration and shared fixtures.

Test settings are written to the environment before any app import so the
cached Settings instance picks them up. Translation and carrier are
replaced with in-process fakes; backoff sleeps are recorded, not slept.
"""

import os
from urllib.parse import urlencode

import pytest

os.environ["DATABASE_URL"] = "sqlite:///./test_relay.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest0000000000000000000000000000"
os.environ["TWILIO_AUTH_TOKEN"] = "test-auth-token"
os.environ["TWILIO_PHONE_NUMBER"] = "+15550001111"
os.environ["OPENAI_API_KEY"] = "sk-test"
os.environ["SEND_MAX_ATTEMPTS"] = "3"
os.environ["SEND_BACKOFF_BASE_SECONDS"] = "1.0"

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from app import storage
from app.dependencies import get_carrier, get_sleep, get_translation_gateway
from app.errors import DeliveryError
from app.main import app
from app.storage import Base, SessionLocal, engine
from app.translation import EnglishTranslation, TargetTranslation


TEST_AUTH_TOKEN = os.environ["TWILIO_AUTH_TOKEN"]
WEBHOOK_URL = "http://testserver/api/webhook"

# Known translations used by the fake gateway
TO_ENGLISH = {
    "Hola, necesito un aventón": ("es", "Hello, I need a ride"),
    "Bonjour, à quelle heure?": ("fr", "Hello, at what time?"),
    "Gracias": ("es", "Thank you"),
}
FROM_ENGLISH = {
    ("I can pick up at 3pm", "es"): "Puedo recogerte a las 3pm",
}


class FakeGateway:
    """Translation gateway double with canned answers and call recording."""

    def __init__(self):
        self.calls = []
        self.english_error = None
        self.target_error = None

    def to_english(self, text):
        self.calls.append(("to_english", text))
        if self.english_error:
            return EnglishTranslation(detected_language="unknown", is_english=False, error=self.english_error)
        if text in TO_ENGLISH:
            language, translation = TO_ENGLISH[text]
            return EnglishTranslation(detected_language=language, is_english=False, translated_text=translation)
        return EnglishTranslation(detected_language="en", is_english=True)

    def to_target(self, text, target_language):
        self.calls.append(("to_target", text, target_language))
        if self.target_error:
            return TargetTranslation(error=self.target_error)
        if target_language == "en":
            return TargetTranslation(translated_text=text)
        return TargetTranslation(
            translated_text=FROM_ENGLISH.get((text, target_language), f"[{target_language}] {text}")
        )


class FakeCarrier:
    """Carrier double that fails the first ``failures`` attempts."""

    def __init__(self, failures=0):
        self.failures = failures
        self.attempts = 0
        self.sent = []

    def send(self, to, from_, body):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise DeliveryError(f"Carrier unavailable (attempt {self.attempts})")
        sid = f"SM{self.attempts:032d}"
        self.sent.append({"to": to, "from_": from_, "body": body, "sid": sid})
        return sid


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def sleeps():
    """Backoff delays requested by dispatch, in order."""
    return []


@pytest.fixture(scope="function")
def client(gateway, carrier, sleeps):
    """Create test client with fresh database and fake collaborators for each test."""
    Base.metadata.create_all(bind=engine)

    app.dependency_overrides[get_translation_gateway] = lambda: gateway
    app.dependency_overrides[get_carrier] = lambda: carrier
    app.dependency_overrides[get_sleep] = lambda: sleeps.append

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Session on the same database the client writes to."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_conversation(db):
    """Create a conversation directly in the store."""
    def _make(phone_number="+15551234567", detected_language="es", status="new"):
        return storage.create_conversation(
            db, phone_number=phone_number, detected_language=detected_language, status=status
        )
    return _make


def sign(params, url=WEBHOOK_URL, auth_token=TEST_AUTH_TOKEN):
    """Compute the X-Twilio-Signature Twilio would send."""
    return RequestValidator(auth_token).compute_signature(url, params)


@pytest.fixture
def post_inbound(client):
    """Post a signed inbound SMS callback, the way Twilio would."""
    def _post(from_="+15551234567", body="Hello", message_sid="SM1", signature=None, extra=None):
        params = {"MessageSid": message_sid, "From": from_, "To": "+15550001111", "Body": body}
        params = {key: value for key, value in params.items() if value is not None}
        params.update(extra or {})
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        headers["X-Twilio-Signature"] = sign(params) if signature is None else signature
        return client.post("/api/webhook", content=urlencode(params), headers=headers)
    return _post


@pytest.fixture
def signer():
    return sign
