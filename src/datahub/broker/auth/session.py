"""
Session credential issuance and verification.

The broker's own session credential is an HS256 JWT binding a user guid and email
with an absolute expiry. It is stateless: nothing is persisted and it cannot be
revoked server side, so its validity rests solely on signature and expiry.

Verification accepts exactly one algorithm (the symmetric scheme used at issuance);
a token declaring anything else is rejected to rule out algorithm confusion.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jwcrypto import jwk, jwt
from jwcrypto.common import JWException, base64url_encode

from datahub.broker.auth.errors import SessionFailed, Unauthenticated

logger = logging.getLogger(__name__)

SESSION_ALGORITHM = "HS256"
DEFAULT_SESSION_LIFETIME = int(timedelta(days=7).total_seconds())
# HS256 signing keys must carry at least 256 bits.
MIN_SECRET_BYTES = 32


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session credential."""

    guid: str
    email: str
    issued_at: Optional[datetime]
    expires_at: datetime


class SessionIssuer:
    """Mints and verifies session credentials with a shared symmetric secret."""

    def __init__(self, secret: str, lifetime: int = DEFAULT_SESSION_LIFETIME) -> None:
        if not secret:
            raise ValueError("session secret must not be empty")
        if len(secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValueError(
                f"session secret must be at least {MIN_SECRET_BYTES} bytes long"
            )
        self._key = jwk.JWK(
            kty="oct", k=base64url_encode(secret.encode("utf-8")), alg=SESSION_ALGORITHM
        )
        self._lifetime = lifetime

    @property
    def lifetime(self) -> int:
        return self._lifetime

    def issue(self, user, now: Optional[datetime] = None) -> str:
        """
        Sign a session credential for a user.

        The result is deterministic for a given user and timestamp.

        Raises:
            SessionFailed: If the token could not be signed.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        issued_at = int(now.timestamp())
        claims = {
            "id": user.guid,
            "email": user.email,
            "iat": issued_at,
            "exp": issued_at + self._lifetime,
        }
        try:
            token = jwt.JWT(
                header={"alg": SESSION_ALGORITHM, "typ": "JWT"}, claims=claims
            )
            token.make_signed_token(self._key)
            return token.serialize()
        except (JWException, ValueError, TypeError) as e:
            logger.exception("Unable to sign session token")
            raise SessionFailed(details=str(e)) from e

    def verify(self, serialized_token: str) -> SessionClaims:
        """
        Validate a session credential and extract its claims.

        Raises:
            Unauthenticated: If the signature, algorithm, expiry or required claims
                are invalid.
        """
        if not serialized_token:
            raise Unauthenticated("JWT token required")

        try:
            validated = jwt.JWT(
                jwt=serialized_token,
                key=self._key,
                algs=[SESSION_ALGORITHM],
                check_claims={"exp": None},
            )
            claims: Dict[str, Any] = json.loads(validated.claims)
        except (JWException, ValueError, TypeError) as e:
            raise Unauthenticated("Invalid JWT token", details=str(e)) from e

        guid = claims.get("id")
        email = claims.get("email")
        if not isinstance(guid, str) or not guid or not isinstance(email, str) or not email:
            raise Unauthenticated("Invalid JWT claims")

        issued_at = claims.get("iat")
        return SessionClaims(
            guid=guid,
            email=email,
            issued_at=(
                datetime.fromtimestamp(issued_at, timezone.utc)
                if isinstance(issued_at, (int, float))
                else None
            ),
            expires_at=datetime.fromtimestamp(claims["exp"], timezone.utc),
        )
