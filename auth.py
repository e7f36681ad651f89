"""
Authentication gate: bcrypt password hashing, JWT issue/verify, and the
FastAPI dependencies that attach the current user to a request.

A token is accepted from the ``Authorization: Bearer`` header or from the
httponly ``jwt`` cookie. Tokens issued before the user's last password change
are rejected.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header, Request

from config import Settings
from database import as_utc, oid, utcnow
from errors import AuthenticationError, BadRequestError, PermissionDeniedError
from schemas import User

log = logging.getLogger(__name__)

JWT_ALGO = "HS256"
COOKIE_NAME = "jwt"


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds)).decode()


def check_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


def new_user(username: str, email: str, password: str, rounds: int = 12) -> User:
    return User(
        username=username.strip(),
        email=email.lower(),
        password_hash=hash_password(password, rounds),
    )


def password_change(new_password: str, rounds: int = 12) -> dict:
    # Backdated one second so a token issued in the same request stays valid.
    return {
        "password_hash": hash_password(new_password, rounds),
        "password_changed_at": utcnow() - timedelta(seconds=1),
    }


def create_token(user_doc: dict, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc["email"],
        "is_admin": user_doc.get("is_admin", False),
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expires_in_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGO)


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Your token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token. Please log in again.")


def password_changed_after(user_doc: dict, issued_at: int) -> bool:
    changed_at = as_utc(user_doc.get("password_changed_at"))
    if changed_at is None:
        return False
    return issued_at < int(changed_at.timestamp())


def extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization:
        parts = authorization.split(" ")
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    return request.cookies.get(COOKIE_NAME)


def find_active_user(db, user_id: str) -> Optional[dict]:
    return db["user"].find_one({"_id": oid(user_id), "active": {"$ne": False}})


def authenticate(request: Request, token: Optional[str]) -> dict:
    if not token:
        log.warning("Authentication failed: no token provided")
        raise AuthenticationError("You are not logged in. Please log in to get access.")
    settings = request.app.state.settings
    payload = decode_token(token, settings)
    try:
        user = find_active_user(request.app.state.db, payload.get("sub", ""))
    except BadRequestError:
        raise AuthenticationError("Invalid token. Please log in again.")
    if not user:
        log.warning("Authentication failed: user %s no longer exists", payload.get("sub"))
        raise AuthenticationError("The user belonging to this token no longer exists.")
    if password_changed_after(user, payload.get("iat", 0)):
        log.warning("Authentication failed: user %s recently changed password", user["email"])
        raise AuthenticationError("User recently changed password. Please log in again.")
    return user


def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    return authenticate(request, extract_token(request, authorization))


def get_optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[dict]:
    token = extract_token(request, authorization)
    if not token:
        return None
    try:
        return authenticate(request, token)
    except AuthenticationError:
        return None


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        log.warning("Admin access denied for %s", user.get("email"))
        raise PermissionDeniedError("You do not have permission to perform this action")
    return user
