"""Signed, purpose-scoped action tokens for guest-side booking changes.

A token is ``<payload>.<signature>``: the payload is base64url JSON
``{"bid", "sub", "pur", "nonce", "iat", "exp"}`` and the signature is an
HMAC-SHA256 over the encoded payload. Verification checks the signature in
constant time, then purpose, then expiry.

Tokens are stateless; single use is enforced by the booking, which records
each consumed nonce.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from booking_engine.errors import TokenExpired, TokenInvalid

log = logging.getLogger("booking_engine.tokens")

CANCEL = "cancel"
RESCHEDULE = "reschedule"
PURPOSES = (CANCEL, RESCHEDULE)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def new_nonce() -> str:
    return secrets.token_urlsafe(16)


@dataclass(frozen=True)
class TokenClaims:
    booking_id: str
    guest_email: str
    purpose: str
    nonce: str
    issued_at: datetime
    expires_at: datetime


class ActionTokenSigner:
    def __init__(
        self,
        secret: str,
        *,
        cancel_ttl: timedelta = timedelta(days=30),
        reschedule_ttl: timedelta = timedelta(hours=48),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._key = secret.encode("utf-8")
        self._ttl = {CANCEL: cancel_ttl, RESCHEDULE: reschedule_ttl}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def issue(
        self,
        booking_id: str,
        guest_email: str,
        purpose: str,
        nonce: str | None = None,
    ) -> tuple[str, TokenClaims]:
        """Mint a token. Returns the token string and its claims."""
        if purpose not in PURPOSES:
            raise ValueError(f"unknown token purpose {purpose!r}")
        now = self._clock()
        claims = TokenClaims(
            booking_id=booking_id,
            guest_email=guest_email.lower(),
            purpose=purpose,
            nonce=nonce or new_nonce(),
            issued_at=now,
            expires_at=now + self._ttl[purpose],
        )
        body = {
            "bid": claims.booking_id,
            "sub": claims.guest_email,
            "pur": claims.purpose,
            "nonce": claims.nonce,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
        }
        payload = _b64encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
        return f"{payload}.{self._sign(payload)}", claims

    def verify(self, token: str, purpose: str) -> TokenClaims:
        """Check signature, purpose and expiry.

        Raises:
            TokenInvalid: Malformed token, bad signature or wrong purpose.
            TokenExpired: Signature is good but the token is past ``exp``.
        """
        if not token or token.count(".") != 1:
            raise TokenInvalid("Malformed token")
        payload, signature = token.split(".")
        if not hmac.compare_digest(signature, self._sign(payload)):
            log.warning("Rejected action token with bad signature")
            raise TokenInvalid()

        try:
            body = json.loads(_b64decode(payload))
            claims = TokenClaims(
                booking_id=str(body["bid"]),
                guest_email=str(body["sub"]),
                purpose=str(body["pur"]),
                nonce=str(body["nonce"]),
                issued_at=datetime.fromtimestamp(int(body["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(body["exp"]), tz=timezone.utc),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise TokenInvalid("Malformed token") from exc

        if claims.purpose != purpose:
            raise TokenInvalid(f"Token is not valid for {purpose}")
        if self._clock() >= claims.expires_at:
            raise TokenExpired()
        return claims
