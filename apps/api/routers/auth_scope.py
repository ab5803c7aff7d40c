"""Authentication dependencies for ledger read scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import ROLE_ADMIN, ROLE_USER, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def ensure_user_scope(auth: AuthContext, supplied_user_id: Optional[str]) -> str:
    """Return the user whose data may be read; admins may read any user."""
    if not supplied_user_id or supplied_user_id == auth.user_id:
        return auth.user_id
    if auth.is_admin:
        return supplied_user_id
    raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the caller from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        role=str(payload.get("role", ROLE_USER)) or ROLE_USER,
    )
