from typing import List, Literal, Optional

from fastapi import APIRouter, HTTPException
from sqlmodel import col, select

from db import SessionDep
from models import ROLE_ADMIN, Item
from schemas import ItemCreate, ItemRead
from .auth import CurrentUserRoleDep, require_role

router = APIRouter(tags=["items"])


@router.get("/{item_id}", response_model=ItemRead)
def get_item(item_id: int, session: SessionDep):
    """
    Get a single item by ID.
    """
    item = session.get(Item, item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


@router.post("/", response_model=ItemRead, status_code=201)
def create_item(item_in: ItemCreate, session: SessionDep, current: CurrentUserRoleDep):
    """
    Add an inventory item. Admins only.
    """
    require_role(current, ROLE_ADMIN)

    if item_in.item_no:
        existing = session.exec(
            select(Item).where(Item.item_no == item_in.item_no)
        ).first()
        if existing:
            raise HTTPException(
                status_code=400,
                detail=f"Item number {item_in.item_no} already exists",
            )

    item = Item(**item_in.model_dump())
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@router.get("/", response_model=List[ItemRead])
def list_items(
    session: SessionDep,
    category_id: Optional[int] = None,
    search: Optional[str] = None,
    stock_status: Optional[Literal["available", "low_stock", "out_of_stock"]] = None,
):
    """
    List items, optionally filtered by category, name search and stock status.
    """
    query = select(Item).order_by(col(Item.item_name))

    if category_id is not None:
        query = query.where(Item.category_id == category_id)

    if search:
        query = query.where(col(Item.item_name).ilike(f"%{search}%"))

    items = session.exec(query).all()

    if stock_status is not None:
        items = [item for item in items if item.stock_status == stock_status]
    return items
