import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.auth.security import verify_token
from app.config import settings
from app.database import get_db
from app.models.user import User, UserRole

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def _user_from_token(token: str, db: Session) -> User:
    payload = verify_token(token, expected_type="access")
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = db.query(User).filter(User.id == int(user_id)).first()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Dependency to get current authenticated user from JWT token"""
    return _user_from_token(credentials.credentials, db)


def require_role(*allowed_roles: UserRole):
    """Factory to create role-based access control dependency"""
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(r.value for r in allowed_roles)}"
            )
        return current_user
    return role_checker


require_admin = require_role(UserRole.ADMIN)


@dataclass
class SyncScope:
    """Who triggered a sync and which tenant it may touch (None = every tenant)."""
    via: str
    user_id: Optional[int] = None

    @property
    def is_session(self) -> bool:
        return self.via == "session"

    def resolve(self, requested_user_id: Optional[int]) -> Optional[int]:
        if self.is_session:
            return self.user_id
        return requested_user_id


def valid_sync_key(api_key: Optional[str]) -> bool:
    if not api_key or not settings.sync_api_key:
        return False
    return hmac.compare_digest(api_key, settings.sync_api_key)


async def get_sync_scope(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    db: Session = Depends(get_db),
) -> SyncScope:
    """
    Accept either a tenant session (scoped to that tenant) or the shared
    scheduler key (any tenant, or the one named in the request body).
    """
    if credentials is not None:
        try:
            user = _user_from_token(credentials.credentials, db)
            return SyncScope(via="session", user_id=user.id)
        except HTTPException:
            if not valid_sync_key(x_api_key):
                raise

    if valid_sync_key(x_api_key):
        return SyncScope(via="api_key")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized. Provide valid session or API key.",
    )
