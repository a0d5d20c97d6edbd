"""
Authentication helpers: password hashing, the session cookie and the FastAPI
dependencies that resolve the signed-in user from it.

Sessions live server-side in storage; the cookie only carries an opaque token.
"""

from typing import Optional

from fastapi import Depends, Request, Response
from passlib.context import CryptContext

from config import Settings
from database import Record, Storage

SESSION_COOKIE = "divineshop.sid"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def public_user(user: Record) -> Record:
    """Strip credentials before a user record leaves the API."""
    return {k: v for k, v in user.items() if k not in ("password", "password_hash")}


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def set_session_cookie(response: Response, token: str, settings: Settings):
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_max_age,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings):
    response.delete_cookie(SESSION_COOKIE, httponly=True, secure=settings.is_production, samesite="lax")


def get_optional_user(request: Request, storage: Storage = Depends(get_storage)) -> Optional[Record]:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    user_id = storage.get_session_user_id(token)
    if user_id is None:
        return None
    return storage.get_user(user_id)
