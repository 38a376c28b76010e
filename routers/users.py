# routers/users.py
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from db import SessionDep
from models import User
from schemas import UserRead
from .auth import CurrentUserRoleDep

router = APIRouter(tags=["users"])


@router.get("/", response_model=List[UserRead])
def list_users(
    session: SessionDep,
    current: CurrentUserRoleDep,
    division_id: Optional[int] = None,
    user_role: Optional[str] = None,
):
    """
    List users, optionally filtered by division and role.
    """
    query = select(User)
    if division_id is not None:
        query = query.where(User.division_id == division_id)
    if user_role is not None:
        query = query.where(User.user_role == user_role)
    return session.exec(query).all()


@router.get("/{user_id}", response_model=UserRead)
def get_user(user_id: int, session: SessionDep, current: CurrentUserRoleDep):
    """
    Get a single user by ID.
    """
    user = session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user
