from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["requester", "focal_person", "division_chief", "admin"]
Decision = Literal["approve", "reject"]


class UserCreate(BaseModel):
    email: EmailStr
    name: str
    password: str = Field(min_length=6)
    user_role: Role = "requester"
    division_id: Optional[int] = None


class UserRead(BaseModel):
    id: int
    email: EmailStr
    name: str
    user_role: str
    division_id: Optional[int]
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class LoginData(BaseModel):
    email: EmailStr
    password: str
    remember_me: bool = False


class ItemCreate(BaseModel):
    item_no: Optional[str] = None
    item_name: str
    category_id: Optional[int] = None
    description: Optional[str] = None
    unit: str = "Piece"
    quantity_on_hand: int = Field(default=0, ge=0)
    reorder_level: Optional[int] = Field(default=None, ge=0)
    reorder_quantity: Optional[int] = Field(default=None, ge=0)
    location: Optional[str] = None


class ItemRead(BaseModel):
    id: int
    item_no: Optional[str]
    item_name: str
    category_id: Optional[int]
    description: Optional[str]
    unit: str
    quantity_on_hand: int
    reorder_level: Optional[int]
    reorder_quantity: Optional[int]
    location: Optional[str]
    stock_status: str

    model_config = ConfigDict(from_attributes=True)


class RequestItemCreate(BaseModel):
    item_id: int
    quantity: int = Field(gt=0)
    remarks: Optional[str] = None
    needed_date: Optional[date] = None


class RequestCreate(BaseModel):
    items: List[RequestItemCreate] = Field(min_length=1)
    is_urgent: bool = False
    remarks: Optional[str] = None
    needed_date: Optional[date] = None
    request_date: Optional[date] = None


class DecisionData(BaseModel):
    decision: Decision
    remarks: Optional[str] = None


class ReceiveData(BaseModel):
    received_by: str = Field(min_length=1, max_length=255)


class CancelData(BaseModel):
    reason: Optional[str] = None


class RequestUpdate(BaseModel):
    is_urgent: Optional[bool] = None
    remarks: Optional[str] = None
    needed_date: Optional[date] = None


class RequestItemRead(BaseModel):
    id: int
    item_id: int
    item_name: Optional[str] = None
    quantity: int
    remarks: Optional[str]
    needed_date: Optional[date]

    model_config = ConfigDict(from_attributes=True)


class RequestRead(BaseModel):
    id: int
    requester_id: int
    status: str
    display_status: str
    is_urgent: bool
    remarks: Optional[str]
    needed_date: Optional[date]
    request_date: Optional[date]
    evaluator_id: Optional[int]
    evaluator_status: str
    evaluator_remarks: Optional[str]
    evaluator_approved_at: Optional[datetime]
    admin_id: Optional[int]
    admin_status: str
    admin_remarks: Optional[str]
    admin_approved_at: Optional[datetime]
    ready_for_pickup: bool
    received_by: Optional[str]
    is_done: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancel_reason: Optional[str]
    created_at: datetime
    updated_at: datetime
    items: List[RequestItemRead] = []


class TimelineEvent(BaseModel):
    id: int
    action: str
    actor_id: Optional[int]
    actor_name: str
    details: dict
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationRead(BaseModel):
    id: int
    user_id: int
    request_id: Optional[int]
    title: str
    message: str
    type: str
    is_read: bool
    read_at: Optional[datetime]
    priority: str
    action_required: bool
    data: Optional[dict]
    sender_name: str
    sender_email: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
