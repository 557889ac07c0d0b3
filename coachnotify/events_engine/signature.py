"""HMAC signatures over raw provider payloads."""

from __future__ import annotations

import hashlib
import hmac
from typing import List, Optional, Tuple

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.events_engine.errors import SignatureVerificationError

SIGNATURE_SCHEME = "v1"


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> Tuple[int, List[str]]:
    """Split ``t=<unix>,v1=<hex>[,v1=<hex>...]`` into the timestamp and candidate signatures."""

    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise SignatureVerificationError("Signature timestamp is not an integer") from exc
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    if timestamp is None:
        raise SignatureVerificationError("Signature header has no timestamp")
    if not signatures:
        raise SignatureVerificationError(f"Signature header has no {SIGNATURE_SCHEME} signature")
    return timestamp, signatures


class SignatureVerifier:
    """Verifies provider signatures with a shared secret and a replay tolerance window."""

    def __init__(self, secret: Optional[str], *, tolerance_seconds: int = 300, clock: Optional[Clock] = None) -> None:
        self._secret = secret
        self._tolerance = tolerance_seconds
        self._clock = clock or SystemClock()

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def verify(self, payload: bytes, header: Optional[str]) -> int:
        """Return the signed timestamp or raise ``SignatureVerificationError``."""

        if not self._secret:
            raise SignatureVerificationError("Webhook secret is not configured")
        if not header:
            raise SignatureVerificationError("Missing signature header")

        timestamp, candidates = parse_signature_header(header)
        expected = compute_signature(self._secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise SignatureVerificationError("Signature does not match payload")

        if self._tolerance > 0:
            age = abs(self._clock.now().timestamp() - timestamp)
            if age > self._tolerance:
                raise SignatureVerificationError("Signature timestamp outside tolerance")
        return timestamp

    def sign(self, payload: bytes, *, timestamp: Optional[int] = None) -> str:
        """Produce a header value for ``payload``; used by tooling and tests."""

        if not self._secret:
            raise SignatureVerificationError("Webhook secret is not configured")
        timestamp = int(self._clock.now().timestamp()) if timestamp is None else timestamp
        return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(self._secret, timestamp, payload)}"
