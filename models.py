from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


ROLE_REQUESTER = "requester"
ROLE_FOCAL_PERSON = "focal_person"
ROLE_DIVISION_CHIEF = "division_chief"
ROLE_ADMIN = "admin"
ROLES = (ROLE_REQUESTER, ROLE_FOCAL_PERSON, ROLE_DIVISION_CHIEF, ROLE_ADMIN)

# request.status values
PENDING = "pending"
EVALUATOR_APPROVED = "evaluator_approved"
ADMIN_APPROVED = "admin_approved"
FINAL_APPROVED = "final_approved"
REJECTED = "rejected"
CANCELLED = "cancelled"
REQUEST_STATUSES = (
    PENDING,
    EVALUATOR_APPROVED,
    ADMIN_APPROVED,
    FINAL_APPROVED,
    REJECTED,
    CANCELLED,
)

# evaluator_status / admin_status values
STAGE_PENDING = "pending"
STAGE_APPROVED = "approved"
STAGE_REJECTED = "rejected"

NOTIFICATION_TYPES = (
    "request_created",
    "request_approved",
    "request_rejected",
    "request_under_review",
    "request_ready_pickup",
    "request_completed",
    "urgent_request",
    "general",
)
PRIORITIES = ("low", "medium", "high", "urgent")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Division(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    is_active: bool = True


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    name: str
    password_hash: str
    user_role: str = ROLE_REQUESTER
    division_id: Optional[int] = Field(default=None, foreign_key="division.id")
    is_active: bool = True


class Category(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)


class Item(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    item_no: Optional[str] = Field(default=None, unique=True)
    item_name: str = "Unnamed Item"
    category_id: Optional[int] = Field(default=None, foreign_key="category.id")
    description: Optional[str] = None
    unit: str = "Piece"
    quantity_on_hand: int = Field(default=0, ge=0)
    reorder_level: Optional[int] = None
    reorder_quantity: Optional[int] = None
    location: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def stock_status(self) -> str:
        if self.quantity_on_hand <= 0:
            return "out_of_stock"
        if self.reorder_level is not None and self.quantity_on_hand <= self.reorder_level:
            return "low_stock"
        return "available"


class Request(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    requester_id: int = Field(foreign_key="user.id", index=True)

    # Cached copy of workflow.derive_status(); rewritten on every engine write.
    status: str = Field(default=PENDING, index=True)
    is_urgent: bool = False
    remarks: Optional[str] = None
    needed_date: Optional[date] = None
    request_date: Optional[date] = None

    evaluator_id: Optional[int] = Field(default=None, foreign_key="user.id")
    evaluator_status: str = STAGE_PENDING
    evaluator_remarks: Optional[str] = None
    evaluator_approved_at: Optional[datetime] = None

    admin_id: Optional[int] = Field(default=None, foreign_key="user.id")
    admin_status: str = STAGE_PENDING
    admin_remarks: Optional[str] = None
    admin_approved_at: Optional[datetime] = None

    ready_for_pickup: bool = False
    received_by: Optional[str] = None
    is_done: Optional[datetime] = None

    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    cancel_reason: Optional[str] = None

    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RequestItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(foreign_key="request.id", index=True)
    item_id: int = Field(foreign_key="item.id")

    quantity: int
    remarks: Optional[str] = None
    needed_date: Optional[date] = None


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    request_id: Optional[int] = Field(default=None, foreign_key="request.id", index=True)

    title: str
    message: str
    type: str = "general"
    is_read: bool = False
    read_at: Optional[datetime] = None
    priority: str = "medium"
    action_required: bool = False
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    sender_name: str = "System"
    sender_email: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class RequestAuditEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(foreign_key="request.id", index=True)
    actor_id: Optional[int] = Field(default=None, foreign_key="user.id")
    actor_name: str
    action: str
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
