"""PKCE (RFC 7636) helpers for the Garmin OAuth2 handshake."""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import NamedTuple

VERIFIER_BYTES = 32


class PkcePair(NamedTuple):
    """Verifier/challenge/state triple for one authorization request.

    The verifier stays server-side until the callback; only the challenge
    and state go to the authorization endpoint.
    """

    verifier: str
    challenge: str
    state: str


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_code_verifier(num_bytes: int = VERIFIER_BYTES) -> str:
    """Generate a URL-safe code verifier from at least 32 random bytes."""
    if num_bytes < VERIFIER_BYTES:
        raise ValueError(f"PKCE verifier needs at least {VERIFIER_BYTES} bytes of entropy")
    return _b64url(secrets.token_bytes(num_bytes))


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge from a verifier."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce() -> PkcePair:
    """Generate a fresh verifier, its challenge and an independent state token."""
    verifier = generate_code_verifier()
    return PkcePair(
        verifier=verifier,
        challenge=generate_code_challenge(verifier),
        state=secrets.token_urlsafe(32),
    )
