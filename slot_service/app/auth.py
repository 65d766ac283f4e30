# auth.py
from asyncio import iscoroutinefunction
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from .models import User
from .dependencies import get_db, UserRole
import os
import logging

ALGORITHM = "HS256"
DEFAULT_TOKEN_MINUTES = 15

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = OAuth2PasswordBearer(tokenUrl="token")
optional_bearer_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


def get_secret_key():
    secret_key = os.getenv("JWT_SECRET_KEY")
    if not secret_key:
        raise RuntimeError("JWT_SECRET_KEY is not configured")
    return secret_key


def get_access_token_lifetime():
    return timedelta(minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30)))


def hash_password(password):
    return pwd_context.hash(password)


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Look up a user by email and check the password; None on any mismatch."""
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        logging.warning(f"Login attempt for unknown account: {email}")
        return None
    if not pwd_context.verify(password, user.hashed_password):
        logging.warning(f"Wrong password for account: {email}")
        return None
    return user


def create_access_token(data: dict, expires_delta: timedelta = None):
    claims = dict(data)
    lifetime = expires_delta or timedelta(minutes=DEFAULT_TOKEN_MINUTES)
    claims["exp"] = datetime.now(timezone.utc) + lifetime
    return jwt.encode(claims, get_secret_key(), algorithm=ALGORITHM)


def issue_token(user: User):
    # sub carries the email; role is informational, the database stays authoritative
    return create_access_token({"sub": user.email, "role": user.role}, expires_delta=get_access_token_lifetime())


def _user_from_token(db: Session, token: str) -> Optional[User]:
    try:
        claims = jwt.decode(token, get_secret_key(), algorithms=[ALGORITHM])
    except JWTError as e:
        logging.error(f"JWTError: {str(e)}")
        return None
    email = claims.get("sub")
    if not email:
        return None
    return db.query(User).filter(User.email == email).first()


async def get_current_user(token: str = Depends(bearer_scheme), db: Session = Depends(get_db)):
    user = _user_from_token(db, token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_optional_user(token: Optional[str] = Depends(optional_bearer_scheme), db: Session = Depends(get_db)):
    """Identity for public endpoints: None for anonymous callers or unusable tokens."""
    if not token:
        return None
    return _user_from_token(db, token)


def ensure_role(current_user: User, required_roles):
    # Admins pass every role gate
    if current_user.role == UserRole.ADMIN.value or current_user.role in required_roles:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User does not have the required role")


def role_required(required_roles):
    """Gate an endpoint on the caller's role.

    The endpoint must declare ``current_user = Depends(get_current_user)``;
    sync endpoints stay sync so FastAPI keeps running them in its threadpool.
    """
    def decorator(endpoint):
        if iscoroutinefunction(endpoint):
            @wraps(endpoint)
            async def guarded(*args, current_user: User = Depends(get_current_user), **kwargs):
                ensure_role(current_user, required_roles)
                return await endpoint(*args, current_user=current_user, **kwargs)
        else:
            @wraps(endpoint)
            def guarded(*args, current_user: User = Depends(get_current_user), **kwargs):
                ensure_role(current_user, required_roles)
                return endpoint(*args, current_user=current_user, **kwargs)
        return guarded

    return decorator
