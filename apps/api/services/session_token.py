"""Session token helpers for account-scoped API access."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "smartaudit_session"


def create_session_token(
    account_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a bearer token whose subject is the account id."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": account_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")

    return payload


class IdentityVerificationUnavailable(RuntimeError):
    """Raised when no identity signing secret is configured."""


def decode_identity_token(token: str) -> Dict[str, Any]:
    """
    Verify an identity assertion issued by the frontend auth server.

    The assertion must be signed with IDENTITY_TOKEN_SECRET, address this API
    as its audience, carry an expiry and name a verified email.
    """
    secret = (settings.IDENTITY_TOKEN_SECRET or "").strip()
    if not secret:
        raise IdentityVerificationUnavailable("Identity verification is not configured.")

    issuer = (settings.IDENTITY_TOKEN_ISSUER or "").strip() or None
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=settings.IDENTITY_TOKEN_AUDIENCE,
            issuer=issuer,
            options={"require_aud": True, "require_exp": True, "require_sub": True},
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired identity token.") from exc

    email = str(payload.get("email", "")).strip().lower()
    if "@" not in email:
        raise ValueError("Identity token missing email.")
    if payload.get("email_verified") is False:
        raise ValueError("Identity email is not verified.")

    payload["email"] = email
    return payload
