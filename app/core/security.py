"""
Token utilities for realtime terminal logins
"""
from datetime import datetime, timedelta
from typing import Dict, Optional
from jose import JWTError, jwt
from app.core.config import settings


REALTIME_LOGIN_ROLE = "employee"


def create_access_token(data: Dict, expires_minutes: Optional[int] = None) -> str:
    """Create a JWT access token"""
    to_encode = data.copy()

    if expires_minutes is None:
        expires_minutes = settings.JWT_EXPIRE_MINUTES

    expire = datetime.utcnow() + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )


def create_realtime_login_token(user_id: int, machine_id: int) -> str:
    """
    Issue the bearer token handed to a user who badged in at a watched terminal

    Payload contract: {USERID, role: "employee", machineId}
    """
    return create_access_token(
        {"USERID": user_id, "role": REALTIME_LOGIN_ROLE, "machineId": machine_id}
    )


def decode_token(token: str) -> Dict:
    """Decode and verify a JWT token"""
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise ValueError("Invalid token")
