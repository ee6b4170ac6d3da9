"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current identity from the Bearer token.
require_roles() layers a coarse role gate on top for the few
admin-only mutations (system notifications, user role changes).
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from ticketflow.auth.jwt import TokenError, verify_token


class CurrentIdentity:
    """Represents the authenticated user making the request."""

    def __init__(self, user_id: str, role: str = "customer"):
        self.user_id = user_id
        self.role = role

    def has_role(self, *roles: str) -> bool:
        return self.role in roles


async def get_current_user(
    authorization: Optional[str] = Header(None),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = authorization[7:]
    try:
        payload = verify_token(token)
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentIdentity(
        user_id=payload["sub"],
        role=payload.get("role", "customer"),
    )


def require_roles(*roles: str):
    """Dependency factory: 403 unless the caller holds one of roles."""

    async def checker(
        identity: CurrentIdentity = Depends(get_current_user),
    ) -> CurrentIdentity:
        if not identity.has_role(*roles):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return identity

    return checker
