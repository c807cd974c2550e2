"""
Error taxonomy for the relay pipeline.

Route handlers in main.py are the only place these are mapped to HTTP
status codes. TranslationError is raised and caught inside the translation
gateway, which reports failures to callers as values (see translation.py).
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class AuthenticationError(RelayError):
    """Missing or invalid carrier webhook signature."""


class ValidationError(RelayError):
    """Required request fields are missing or malformed."""


class NotFoundError(RelayError):
    """A referenced conversation or message does not exist."""


class ConflictError(RelayError):
    """The record is not in a state that allows the requested operation."""


class TranslationError(RelayError):
    """The translation model failed or returned unusable output."""


class DeliveryError(RelayError):
    """The carrier transport rejected or failed to accept a message."""


class StoreError(RelayError):
    """A read or write against the conversation/message store failed."""
