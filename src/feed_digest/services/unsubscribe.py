from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import ConfigurationError
from ..models import SUBSCRIBER_STATUS_UNSUBSCRIBED, Subscriber

logger = logging.getLogger(__name__)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class UnsubscribeTokenSigner:
    """Stateless `<base64url(email)>.<hex hmac>` tokens; verifying needs no store lookup."""

    def __init__(self, secret: str | None) -> None:
        if not secret:
            raise ConfigurationError("UNSUBSCRIBE_SECRET is not configured")
        self._secret = secret.encode("utf-8")

    def _signature(self, email: str) -> str:
        return hmac.new(self._secret, email.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate(self, email: str) -> str:
        normalized = _normalize_email(email)
        encoded = base64.urlsafe_b64encode(normalized.encode("utf-8")).decode("ascii").rstrip("=")
        return f"{encoded}.{self._signature(normalized)}"

    def verify(self, token: str) -> str | None:
        encoded, sep, signature = (token or "").partition(".")
        if not sep or not encoded or not signature:
            return None
        try:
            padded = encoded + "=" * (-len(encoded) % 4)
            email = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError):
            return None
        if not email or email != _normalize_email(email):
            return None
        if not hmac.compare_digest(self._signature(email), signature):
            return None
        return email


def apply_unsubscribe(session: Session, signer: UnsubscribeTokenSigner, token: str) -> Subscriber | None:
    """Mark the token's subscriber unsubscribed. Repeating it is a no-op that still succeeds."""
    email = signer.verify(token)
    if email is None:
        return None
    subscriber = session.scalar(select(Subscriber).where(Subscriber.email == email))
    if subscriber is None:
        return None
    if subscriber.status != SUBSCRIBER_STATUS_UNSUBSCRIBED:
        subscriber.status = SUBSCRIBER_STATUS_UNSUBSCRIBED
        logger.info("Subscriber %s unsubscribed", subscriber.id)
    return subscriber
