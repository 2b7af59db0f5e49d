"""JWT validation for identifying the calling account.

Tokens are issued elsewhere. Canopy only verifies them and reads the
account id from the ``sub`` claim.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt

logger = logging.getLogger(__name__)


class TokenExpiredError(Exception):
    """Raised when a JWT token has expired."""


class TokenInvalidError(Exception):
    """Raised when a JWT token is invalid."""


def verify_token(token: str, secret: str, *, algorithm: str = "HS256") -> dict[str, Any]:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
        return payload
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token expired: %s", e)
        raise TokenExpiredError("Token has expired") from e
    except jwt.PyJWTError as e:
        # Also covers InvalidKeyError, raised for an empty or unusable secret
        logger.warning("Invalid token: %s", e)
        raise TokenInvalidError("Token is invalid") from e


def account_id_from_token(token: str, secret: str, *, algorithm: str = "HS256") -> str:
    """Return the ``sub`` claim of a verified token."""
    payload = verify_token(token, secret, algorithm=algorithm)
    subject = payload.get("sub")
    if not subject or not isinstance(subject, str):
        raise TokenInvalidError("Token missing account ID")
    return subject
