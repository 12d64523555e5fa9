import json

import stripe
from pydantic import ValidationError

from practice_webhooks.events import VerifiedEvent, decode_event


class InvalidSignature(Exception):
    """Raised for every verification failure, whatever the underlying cause."""

    def __init__(self) -> None:
        super().__init__("Invalid signature")


class SignatureVerifier:
    def __init__(self, secret: str, tolerance: int | None = 300) -> None:
        self._secret = secret
        self._tolerance = tolerance

    def verify(self, raw_body: bytes, signature_header: str | None) -> VerifiedEvent:
        if not signature_header or not self._secret:
            raise InvalidSignature()
        try:
            body = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature_header, self._secret, self._tolerance)
            return decode_event(json.loads(body))
        except (UnicodeDecodeError, ValueError, TypeError, ValidationError, stripe.SignatureVerificationError) as e:
            raise InvalidSignature() from e
