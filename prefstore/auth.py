"""
Bearer token verification and per-user authorization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jwt

from prefstore.errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

BEARER_SCHEME = "bearer"


@dataclass(frozen=True)
class Principal:
    """Verified identity attached to a request."""

    subject: str


class TokenVerifier:
    """
    Validates ``Authorization: Bearer <jwt>`` headers signed with a shared secret.

    Only ``algorithm`` is trusted, so tokens signed with anything else
    (including ``none``) are rejected. When ``issuer`` is set the token must
    carry a matching ``iss`` claim. In bypass mode no header is needed and
    every request is attributed to ``bypass_subject``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: Optional[str] = None,
        algorithm: str = "HS256",
        bypass: bool = False,
        bypass_subject: str = "dev-user",
    ):
        if not secret and not bypass:
            raise ValueError("a signing secret is required")
        self._secret = secret
        self.issuer = issuer
        self.algorithm = algorithm
        self.bypass = bypass
        self.bypass_subject = bypass_subject
        if bypass:
            logger.warning(
                "Authentication bypass enabled; all requests act as %r",
                bypass_subject,
            )

    @classmethod
    def from_settings(cls, settings) -> "TokenVerifier":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            algorithm=settings.jwt_algorithm,
            bypass=settings.dev_bypass_auth,
            bypass_subject=settings.dev_bypass_subject,
        )

    def verify(self, authorization: Optional[str]) -> Principal:
        if self.bypass:
            return Principal(subject=self.bypass_subject)

        if not authorization:
            raise AuthenticationError("missing authorization header")

        parts = authorization.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != BEARER_SCHEME or not parts[1]:
            raise AuthenticationError("invalid authorization header format")

        try:
            claims = jwt.decode(
                parts[1],
                self._secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
            )
        except jwt.PyJWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise AuthenticationError("invalid or expired token") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("token missing subject claim")
        return Principal(subject=subject)


def authorize(principal: Optional[Principal], user_id: str) -> str:
    """Return ``user_id`` if ``principal`` owns it."""
    if principal is None:
        raise AuthenticationError("missing claims")
    if principal.subject != user_id:
        raise AuthorizationError("access denied")
    return user_id
