import logging
import os
import secrets
import time
from typing import Annotated, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlmodel import select

from db import SessionDep
from models import User
from schemas import LoginData, UserCreate, UserRead

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
serializer = URLSafeTimedSerializer(SECRET_KEY)

SESSION_TTL_SECONDS = 60 * 60 * 3
REMEMBER_TTL_SECONDS = 60 * 60 * 24 * 30


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_session_token(user_id: int, role: str, remember: bool = False) -> str:
    """
    Store user_id + role in the signed token.
    Example data:
        {"user_id": 3, "role": "admin", "remember": false}
    """
    return serializer.dumps({"user_id": user_id, "role": role, "remember": remember})


def verify_session_token(token: str, now: Optional[float] = None) -> Optional[dict]:
    """
    Returns the token data if valid, or None if invalid/expired.
    Normal sessions last 3 hours, "remember me" sessions 30 days.
    """
    try:
        data, signed_at = serializer.loads(
            token, max_age=REMEMBER_TTL_SECONDS, return_timestamp=True
        )
    except BadSignature:
        return None
    if not data.get("remember"):
        now = time.time() if now is None else now
        if now - signed_at.timestamp() > SESSION_TTL_SECONDS:
            return None
    return data


def get_current_user_and_role(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias="session"),
) -> dict:
    """
    Reads the 'session' cookie, verifies the token,
    looks up the user, and returns {"user": User, "role": str}.
    Raises 401 if not logged in / invalid.
    """
    if session_token is None:
        raise HTTPException(status_code=401, detail="Not logged in")

    data = verify_session_token(session_token)
    if not data:
        raise HTTPException(
            status_code=401, detail="Invalid or expired session")

    user = session.get(User, data["user_id"])
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=401, detail="User not found for this session")

    return {"user": user, "role": user.user_role}


CurrentUserRoleDep = Annotated[dict, Depends(get_current_user_and_role)]


def require_role(current: dict, *roles: str) -> User:
    if current["role"] not in roles:
        raise HTTPException(
            status_code=403,
            detail=f"Only {' or '.join(roles)} users can do this",
        )
    return current["user"]


def _set_session_cookie(response: Response, token: str, remember: bool) -> None:
    response.set_cookie(
        key="session",
        value=token,
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=REMEMBER_TTL_SECONDS if remember else SESSION_TTL_SECONDS,
    )


@router.post("/register", response_model=UserRead, status_code=201)
def register(user_in: UserCreate, session: SessionDep):
    """
    Register a new user with a hashed password.
    """
    existing = session.exec(
        select(User).where(User.email == user_in.email)
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=user_in.email,
        name=user_in.name,
        password_hash=hash_password(user_in.password),
        user_role=user_in.user_role,
        division_id=user_in.division_id,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("registered user %s as %s", user.id, user.user_role)
    return user


@router.post("/login")
def login(payload: LoginData, session: SessionDep, response: Response):
    """
    Log in with email + password and set a signed session cookie.
    """
    user = session.exec(
        select(User).where(User.email == payload.email)
    ).first()

    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(
            status_code=400, detail="Invalid email or password"
        )
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    token = create_session_token(user.id, user.user_role, payload.remember_me)
    _set_session_cookie(response, token, payload.remember_me)
    return {"message": "Login successful", "role": user.user_role}


@router.post("/logout")
def logout(response: Response):
    """
    Clear the session cookie.
    """
    response.delete_cookie("session")
    return {"message": "Logged out"}


@router.get("/me", response_model=UserRead)
def read_me(current: CurrentUserRoleDep):
    """
    Get info about the currently logged-in user.
    """
    return current["user"]
