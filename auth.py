"""
Email/password accounts, profiles, roles and session tokens.

Roles gate which routes a caller may use; this is not a security boundary
beyond the API itself.
"""

import secrets
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, Header
from pydantic import BaseModel, EmailStr
from pymongo.errors import DuplicateKeyError

from config import settings
from database import Store, get_store, utcnow
from exceptions import AuthenticationError, AuthorizationError, ConflictError, InvalidInputError
from logging_config import logger
from schemas import Profile, Role, Session, User, UserRole


class AppUser(BaseModel):
    id: str
    username: str
    role: Role
    email: EmailStr

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(raw: str) -> str:
    # bcrypt only looks at the first 72 bytes
    hashed = bcrypt.hashpw(raw.encode("utf-8")[:72], bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(raw: str, stored: str) -> bool:
    try:
        return bcrypt.checkpw(raw.encode("utf-8")[:72], stored.encode("utf-8"))
    except ValueError:
        return False


def make_token() -> str:
    return secrets.token_urlsafe(32)


def register(
    store: Store,
    email: str,
    password: str,
    username: str,
    role: Role = "student",
    invite_code: Optional[str] = None,
) -> AppUser:
    username = username.strip()
    if not username or not password:
        raise InvalidInputError("Username and password are required")
    if role == "admin" and settings.ADMIN_INVITE_CODE and invite_code != settings.ADMIN_INVITE_CODE:
        raise AuthorizationError("Admin invite code required or incorrect")

    email = email.strip().lower()
    if store.find_document("users", {"email": email}):
        raise ConflictError("Email already registered", code="EMAIL_TAKEN")
    try:
        user = store.create_document("users", User(email=email, password_hash=hash_password(password)).model_dump())
    except DuplicateKeyError:
        raise ConflictError("Email already registered", code="EMAIL_TAKEN")
    store.create_document("profiles", Profile(user_id=user["id"], username=username).model_dump())
    store.create_document("user_roles", UserRole(user_id=user["id"], role=role).model_dump())
    logger.info(f"Registered {role} {email}")
    return AppUser(id=user["id"], username=username, role=role, email=email)


def load_user(store: Store, user_id: str) -> Optional[AppUser]:
    """Profile + role lookup; None when either row is missing."""
    user = store.find_document("users", {"id": user_id})
    profile = store.find_document("profiles", {"user_id": user_id})
    role = store.find_document("user_roles", {"user_id": user_id})
    if not user or not profile or not role:
        return None
    return AppUser(id=user_id, username=profile["username"], role=role["role"], email=user["email"])


def login(store: Store, email: str, password: str) -> dict:
    user = store.find_document("users", {"email": email.strip().lower()})
    if not user or not user.get("is_active", True) or not verify_password(password, user["password_hash"]):
        logger.info(f"Failed login for {email}")
        raise AuthenticationError("Invalid email or password")
    app_user = load_user(store, user["id"])
    if app_user is None:
        raise AuthenticationError("Account is missing its profile or role")

    token = make_token()
    expires_at = utcnow() + timedelta(hours=settings.SESSION_TTL_HOURS)
    store.create_document("sessions", Session(user_id=user["id"], token=token, expires_at=expires_at).model_dump())
    logger.info(f"Login {app_user.email} as {app_user.role}")
    return {"token": token, "expires_at": expires_at, "user": app_user}


def logout(store: Store, token: str) -> bool:
    return store.delete_documents("sessions", {"token": token}) > 0


def resolve_session(store: Store, token: Optional[str]) -> AppUser:
    if not token:
        raise AuthenticationError("Missing auth token")
    session = store.find_document("sessions", {"token": token})
    if not session:
        raise AuthenticationError("Invalid session")
    if session["expires_at"] <= utcnow():
        store.delete_document("sessions", session["id"])
        raise AuthenticationError("Session expired")
    user = load_user(store, session["user_id"])
    if user is None:
        raise AuthenticationError("Invalid user")
    return user


# -----------------------------
# FastAPI dependencies
# -----------------------------
def get_current_user(
    x_auth_token: Optional[str] = Header(None),
    store: Store = Depends(get_store),
) -> AppUser:
    return resolve_session(store, x_auth_token)


def require_admin(current: AppUser = Depends(get_current_user)) -> AppUser:
    if not current.is_admin:
        raise AuthorizationError()
    return current


def require_student(current: AppUser = Depends(get_current_user)) -> AppUser:
    if current.role != "student":
        raise AuthorizationError()
    return current
