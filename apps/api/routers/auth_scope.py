"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    source: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        source=str(payload.get("source", "")) or None,
    )


def _matches(supplied: Optional[str], expected: str) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Guard administrative endpoints with the shared admin token."""
    if not _matches(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(status_code=403, detail="Admin token required.")


async def require_webhook_secret(x_webhook_secret: Optional[str] = Header(default=None)) -> None:
    """Guard provider callbacks with the shared webhook secret."""
    if not _matches(x_webhook_secret, settings.WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid webhook secret.")
