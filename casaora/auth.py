"""
Principal authentication
Bearer tokens are issued by the identity service and signed with SECRET_KEY.
Only the subject and role are read here.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import PRINCIPAL_TOKEN_ALGORITHM, SECRET_KEY
from .shared.money import utcnow

logger = logging.getLogger(__name__)

security = HTTPBearer()

ROLES = ("customer", "professional", "admin")


@dataclass(frozen=True)
class Principal:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_principal_token(subject: str, role: str, expires_minutes: Optional[int] = 60) -> str:
    """Sign a principal token (identity service contract; used by local tooling and tests)"""
    claims = {"sub": subject, "role": role}
    if expires_minutes:
        claims["exp"] = utcnow() + timedelta(minutes=expires_minutes)
    return jwt.encode(claims, SECRET_KEY, algorithm=PRINCIPAL_TOKEN_ALGORITHM)


def decode_principal_token(token: str) -> Principal:
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[PRINCIPAL_TOKEN_ALGORITHM])
    except JWTError as e:
        logger.warning(f"⚠️ Invalid principal token: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token") from None

    subject = claims.get("sub")
    role = claims.get("role")
    if not subject or role not in ROLES:
        logger.warning(f"⚠️ Principal token missing subject or role (role={role})")
        raise HTTPException(status_code=401, detail="Invalid token claims")
    return Principal(id=str(subject), role=role)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    return decode_principal_token(credentials.credentials)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Operator access required")
    return principal
