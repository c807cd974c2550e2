"""
Utility functions for the relay API.
"""

import logging
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)


def parse_form_body(body: bytes) -> Dict[str, str]:
    """
    Parse a form-encoded webhook body into a flat dict.

    Blank values are kept so they take part in signature verification.
    """
    return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))


def signed_url(request_url: str, public_base_url: Optional[str] = None) -> str:
    """
    The URL the carrier signed.

    Behind a proxy the URL the app sees differs from the one Twilio called;
    PUBLIC_BASE_URL replaces scheme and host (and prefixes its own path, if
    any) while keeping the request path and query.
    """
    if not public_base_url:
        return request_url
    base = urlsplit(public_base_url)
    request = urlsplit(request_url)
    path = base.path.rstrip("/") + (request.path or "/")
    return urlunsplit((base.scheme, base.netloc, path, request.query, ""))


def verify_twilio_signature(url: str, params: Dict[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify the X-Twilio-Signature header.

    Args:
        url: Exact callback URL Twilio requested (including query string)
        params: Form parameters from the request body
        signature: Value of the X-Twilio-Signature header
        auth_token: Twilio auth token shared with the carrier

    Returns:
        True if signature is valid, False otherwise
    """
    logger.info("Verifying Twilio signature")
    logger.debug(f"Signed URL: {url}, params: {len(params)}")

    if not signature or not auth_token:
        logger.info("Twilio signature verification: missing signature or token")
        return False

    is_valid = RequestValidator(auth_token).validate(url, params, signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
