from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
from datetime import datetime, timedelta
import logging
from jose import jwt, JWTError
from core.config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ROLES = ("admin", "supervisor", "manager", "agent")
ADMIN_ROLES = ("admin", "supervisor")

class User:
    def __init__(self, user_id: str, role: str = "agent", tenant_id: Optional[str] = None, full_name: Optional[str] = None):
        self.id = user_id
        self.role = role
        self.tenant_id = tenant_id
        self.full_name = full_name or "System"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

def create_access_token(user_id: str, role: str = "agent", tenant_id: Optional[str] = None,
                        full_name: Optional[str] = None, expires_hours: int = 24) -> str:
    """
    Issues a signed bearer token for a profile.

    Args:
        user_id: profile UUID
        role: one of ROLES
        tenant_id: tenant the profile belongs to (None for platform admins)
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    payload = {
        "sub": user_id,
        "role": role,
        "tenant_id": tenant_id,
        "name": full_name,
        "exp": datetime.utcnow() + timedelta(hours=expires_hours),
        "iat": datetime.utcnow()
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> User:
    """
    Resolves the current profile from the bearer token.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization required. Send the token as Authorization: Bearer <token>"
        )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {str(e)}"
        )

    user_id = payload.get("sub")
    role = payload.get("role") or "agent"
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: subject missing"
        )
    if role not in ROLES:
        logger.warning(f"Token for {user_id} carries unknown role {role!r}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown role"
        )

    return User(user_id=user_id, role=role, tenant_id=payload.get("tenant_id"), full_name=payload.get("name"))


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions. Admin or supervisor role required."
        )
    return user
