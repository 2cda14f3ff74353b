"""
Order Pipeline — webhook signature verification

The queue signs every delivery with a JWT (HS256) whose ``body`` claim is
the base64url SHA-256 of the raw request body. Two keys are valid at any
time (current and next) so that key rotation has no cut-over gap.

Verification must run on the raw bytes: a re-serialized JSON object does
not hash to the same value.
"""

import base64
import hashlib
import logging
import time
from uuid import uuid4

import jwt

from .errors import InvalidSignature, MissingSignature, SigningKeysNotConfigured

logger = logging.getLogger(__name__)

ISSUER = "Upstash"
SIGNATURE_HEADER = "Upstash-Signature"


def body_hash(body: bytes) -> str:
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def sign(body: bytes, key: str, url: str = "", ttl_seconds: int = 300) -> str:
    """Produce a signature the way the queue does (used by tests and local tooling)."""
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + ttl_seconds,
        "jti": str(uuid4()),
        "body": body_hash(body),
    }
    return jwt.encode(claims, key, algorithm="HS256")


class SignatureVerifier:
    def __init__(
        self,
        current_key: str | None,
        next_key: str | None,
        dev_mode: bool = False,
        clock_tolerance: int = 0,
    ):
        self.current_key = current_key
        self.next_key = next_key
        self.dev_mode = dev_mode
        self.clock_tolerance = clock_tolerance

    def verify(self, body: bytes, signature: str | None, url: str | None = None) -> bool:
        """Raise an AuthenticationFailure unless the request came from the queue,
        or SigningKeysNotConfigured when there is nothing to verify against.

        Returns False only when verification was skipped in development mode.
        """
        if not (self.current_key and self.next_key):
            if self.dev_mode:
                logger.warning(
                    "SIGNING KEYS NOT CONFIGURED - accepting UNVERIFIED webhook "
                    "request (development mode)"
                )
                return False
            raise SigningKeysNotConfigured("Queue signing keys not configured")

        if not signature:
            raise MissingSignature(f"Missing {SIGNATURE_HEADER} header")

        errors = []
        for key in (self.current_key, self.next_key):
            try:
                self._verify_with_key(body, signature, key, url)
                return True
            except InvalidSignature as e:
                errors.append(str(e))

        logger.warning("Signature verification failed: %s", "; ".join(errors))
        raise InvalidSignature("Invalid webhook signature")

    def _verify_with_key(self, body: bytes, signature: str, key: str, url: str | None) -> None:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer=ISSUER,
                leeway=self.clock_tolerance,
                options={"require": ["iss", "exp", "nbf", "body"]},
            )
        except jwt.InvalidTokenError as e:
            raise InvalidSignature(str(e)) from e

        if url is not None and claims.get("sub") != url:
            raise InvalidSignature(f"invalid subject: {claims.get('sub')}")
        if claims["body"].rstrip("=") != body_hash(body):
            raise InvalidSignature("body hash does not match")
