"""Authentication dependencies for account scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None


def ensure_account_scope(auth_account_id: str, supplied_account_id: Optional[str]) -> str:
    """Return the authenticated account id and reject cross-account attempts."""
    if supplied_account_id and supplied_account_id != auth_account_id:
        raise HTTPException(status_code=403, detail="account_id does not match authenticated session.")
    return auth_account_id


def _context_from_credentials(credentials: Optional[HTTPAuthorizationCredentials]) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext(
        account_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated account from the Bearer session token."""
    return _context_from_credentials(credentials)


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Like get_auth_context, but anonymous callers get None instead of 401."""
    if not credentials:
        return None
    return _context_from_credentials(credentials)
