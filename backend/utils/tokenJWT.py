# utils/tokenJWT.py
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from models.users import User

ADMIN = "ADMIN"
STAFF = "STAFF"
CUSTOMER = "CUSTOMER"

bearer_scheme = HTTPBearer()


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def issue_token(user: User, lifetime: Optional[timedelta] = None) -> str:
    """Signed bearer token naming the user by email, with the role as a hint."""
    lifetime = lifetime or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": user.email,
        "role": user.role,
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def token_subject(token: str) -> str:
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise _unauthorized()
    subject = claims.get("sub")
    if not subject:
        raise _unauthorized()
    return subject


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    # Role is re-read from the database so demotions apply to live tokens
    email = token_subject(credentials.credentials)
    user = db.query(User).filter(func.lower(User.email) == email.lower()).first()
    if user is None:
        raise _unauthorized()
    return user


def has_role(user, *roles) -> bool:
    return (user.role or "").upper() in roles


def role_required(*allowed_roles):
    """Dependency that lets through only callers holding one of ``allowed_roles``."""
    def _checker(current_user=Depends(get_current_user)):
        if allowed_roles and not has_role(current_user, *allowed_roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return current_user
    return _checker
