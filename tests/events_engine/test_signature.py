from __future__ import annotations

import pytest

from coachnotify.events_engine.errors import SignatureVerificationError
from coachnotify.events_engine.signature import SignatureVerifier, compute_signature, parse_signature_header


def test_sign_and_verify_round_trip(clock) -> None:
    verifier = SignatureVerifier("whsec_test", tolerance_seconds=300, clock=clock)
    payload = b'{"id": "evt_1"}'
    header = verifier.sign(payload)

    assert verifier.verify(payload, header) == int(clock.now().timestamp())


def test_signature_matches_known_scheme() -> None:
    header = f"t=1700000000,v1={compute_signature('whsec_test', 1700000000, b'body')}"
    timestamp, signatures = parse_signature_header(header)

    assert timestamp == 1700000000
    assert len(signatures) == 1 and len(signatures[0]) == 64


def test_any_of_multiple_signatures_may_match(clock) -> None:
    verifier = SignatureVerifier("whsec_test", clock=clock)
    timestamp = int(clock.now().timestamp())
    good = compute_signature("whsec_test", timestamp, b"body")

    assert verifier.verify(b"body", f"t={timestamp},v1=deadbeef,v1={good}") == timestamp


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "v1=abc",
        "t=notanumber,v1=abc",
        "t=1772452800",
    ],
)
def test_malformed_headers_are_rejected(clock, header) -> None:
    verifier = SignatureVerifier("whsec_test", clock=clock)

    with pytest.raises(SignatureVerificationError):
        verifier.verify(b"body", header)


def test_tampered_payload_is_rejected(clock) -> None:
    verifier = SignatureVerifier("whsec_test", clock=clock)
    header = verifier.sign(b'{"amount": 100}')

    with pytest.raises(SignatureVerificationError):
        verifier.verify(b'{"amount": 999}', header)


def test_wrong_secret_is_rejected(clock) -> None:
    header = SignatureVerifier("whsec_other", clock=clock).sign(b"body")

    with pytest.raises(SignatureVerificationError):
        SignatureVerifier("whsec_test", clock=clock).verify(b"body", header)


def test_stale_timestamp_is_rejected(clock) -> None:
    verifier = SignatureVerifier("whsec_test", tolerance_seconds=300, clock=clock)
    header = verifier.sign(b"body")
    clock.advance(301)

    with pytest.raises(SignatureVerificationError, match="tolerance"):
        verifier.verify(b"body", header)


def test_missing_secret_fails_closed(clock) -> None:
    verifier = SignatureVerifier(None, clock=clock)
    header = SignatureVerifier("whsec_test", clock=clock).sign(b"body")

    assert verifier.configured is False
    with pytest.raises(SignatureVerificationError, match="not configured"):
        verifier.verify(b"body", header)
