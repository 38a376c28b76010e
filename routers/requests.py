from datetime import date
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from sqlmodel import Session, col, select

from db import SessionDep
from models import (
    ROLE_ADMIN,
    ROLE_DIVISION_CHIEF,
    ROLE_FOCAL_PERSON,
    Item,
    Request as RequestModel,
    RequestItem,
    User,
)
from read_models import (
    division_stats,
    most_requested_items,
    request_stats,
    request_timeline,
)
from schemas import (
    CancelData,
    DecisionData,
    ReceiveData,
    RequestCreate,
    RequestItemRead,
    RequestRead,
    RequestUpdate,
    TimelineEvent,
)
from workflow import RequestWorkflow, display_status
from .auth import CurrentUserRoleDep, require_role

router = APIRouter(tags=["requests"])


def _to_read(session: Session, req: RequestModel) -> RequestRead:
    rows = session.exec(
        select(RequestItem, Item.item_name)
        .join(Item, col(Item.id) == RequestItem.item_id)
        .where(RequestItem.request_id == req.id)
        .order_by(col(RequestItem.id))
    ).all()
    items = []
    for line, item_name in rows:
        read = RequestItemRead.model_validate(line)
        read.item_name = item_name
        items.append(read)
    return RequestRead(
        **req.model_dump(),
        display_status=display_status(req),
        items=items,
    )


def _get_or_404(session: Session, request_id: int) -> RequestModel:
    req = session.get(RequestModel, request_id)
    if req is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return req


def _ensure_same_division(session: Session, req: RequestModel, chief: User) -> None:
    requester = session.get(User, req.requester_id)
    if (
        requester is None
        or chief.division_id is None
        or requester.division_id != chief.division_id
    ):
        raise HTTPException(
            status_code=403,
            detail="You can only evaluate requests from your own division.",
        )


def _ensure_can_modify(session: Session, req: RequestModel, current: dict) -> None:
    """
    Admins and the requester may change a request. A division chief may also
    change requests filed by focal persons of the same division.
    """
    user = current["user"]
    role = current["role"]
    if role == ROLE_ADMIN or req.requester_id == user.id:
        return
    requester = session.get(User, req.requester_id)
    if requester is None:
        raise HTTPException(status_code=403, detail="Not authorized to change this request.")
    if role == ROLE_FOCAL_PERSON and requester.user_role == ROLE_DIVISION_CHIEF:
        raise HTTPException(
            status_code=403,
            detail="Requests submitted by a division chief can only be changed by that chief or an admin.",
        )
    if (
        role == ROLE_DIVISION_CHIEF
        and requester.user_role == ROLE_FOCAL_PERSON
        and user.division_id is not None
        and requester.division_id == user.division_id
    ):
        return
    raise HTTPException(status_code=403, detail="Not authorized to change this request.")


@router.post("/", response_model=RequestRead, status_code=201)
def create_request(request_data: RequestCreate, session: SessionDep, current: CurrentUserRoleDep):
    req = RequestWorkflow(session).create_request(
        current["user"],
        request_data.items,
        is_urgent=request_data.is_urgent,
        remarks=request_data.remarks,
        needed_date=request_data.needed_date,
        request_date=request_data.request_date,
    )
    return _to_read(session, req)


@router.get("/", response_model=List[RequestRead])
def list_requests(
    session: SessionDep,
    current: CurrentUserRoleDep,
    requester_id: Optional[int] = None,
    division_id: Optional[int] = None,
    status: Optional[str] = None,
    is_urgent: Optional[bool] = None,
):
    """
    List requests. Division chiefs only see their own division; requesters
    only see their own requests.
    """
    user = current["user"]
    role = current["role"]

    query = select(RequestModel).order_by(col(RequestModel.created_at).desc(), col(RequestModel.id).desc())
    if role == ROLE_DIVISION_CHIEF:
        division_id = user.division_id
    elif role != ROLE_ADMIN:
        requester_id = user.id

    if requester_id is not None:
        query = query.where(RequestModel.requester_id == requester_id)
    if division_id is not None:
        query = query.join(User, col(User.id) == RequestModel.requester_id).where(
            User.division_id == division_id
        )
    if status is not None:
        query = query.where(RequestModel.status == status)
    if is_urgent is not None:
        query = query.where(RequestModel.is_urgent == is_urgent)
    return [_to_read(session, req) for req in session.exec(query).all()]


@router.get("/mine", response_model=List[RequestRead])
def my_requests(session: SessionDep, current: CurrentUserRoleDep, status: Optional[str] = None):
    query = (
        select(RequestModel)
        .where(RequestModel.requester_id == current["user"].id)
        .order_by(col(RequestModel.created_at).desc(), col(RequestModel.id).desc())
    )
    if status is not None:
        query = query.where(RequestModel.status == status)
    return [_to_read(session, req) for req in session.exec(query).all()]


@router.get("/stats")
def get_request_stats(
    session: SessionDep,
    current: CurrentUserRoleDep,
    division_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
):
    if current["role"] == ROLE_DIVISION_CHIEF:
        division_id = current["user"].division_id
    return request_stats(session, division_id=division_id, date_from=date_from, date_to=date_to)


@router.get("/division-stats")
def get_division_stats(session: SessionDep, current: CurrentUserRoleDep):
    require_role(current, ROLE_ADMIN)
    return division_stats(session)


@router.get("/most-requested")
def get_most_requested_items(
    session: SessionDep,
    current: CurrentUserRoleDep,
    limit: int = Query(default=10, ge=1, le=100),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
):
    return most_requested_items(session, limit=limit, date_from=date_from, date_to=date_to)


@router.get("/{request_id}", response_model=RequestRead)
def get_request(request_id: int, session: SessionDep, current: CurrentUserRoleDep):
    req = _get_or_404(session, request_id)
    return _to_read(session, req)


@router.get("/{request_id}/timeline", response_model=List[TimelineEvent])
def get_request_timeline(request_id: int, session: SessionDep, current: CurrentUserRoleDep):
    return request_timeline(session, request_id)


@router.post("/{request_id}/evaluate", response_model=RequestRead)
def evaluate_request(
    request_id: int,
    data: DecisionData,
    session: SessionDep,
    current: CurrentUserRoleDep,
):
    chief = require_role(current, ROLE_DIVISION_CHIEF)
    _ensure_same_division(session, _get_or_404(session, request_id), chief)
    req = RequestWorkflow(session).evaluate(request_id, chief, data.decision, data.remarks)
    return _to_read(session, req)


@router.post("/{request_id}/approve", response_model=RequestRead)
def approve_request(
    request_id: int,
    data: DecisionData,
    session: SessionDep,
    current: CurrentUserRoleDep,
):
    admin = require_role(current, ROLE_ADMIN)
    req = RequestWorkflow(session).approve(request_id, admin, data.decision, data.remarks)
    return _to_read(session, req)


@router.post("/{request_id}/ready-for-pickup", response_model=RequestRead)
def mark_ready_for_pickup(request_id: int, session: SessionDep, current: CurrentUserRoleDep):
    admin = require_role(current, ROLE_ADMIN)
    req = RequestWorkflow(session).mark_ready_for_pickup(request_id, admin)
    return _to_read(session, req)


@router.post("/{request_id}/receive", response_model=RequestRead)
def mark_received(
    request_id: int,
    data: ReceiveData,
    session: SessionDep,
    current: CurrentUserRoleDep,
):
    user = current["user"]
    req = _get_or_404(session, request_id)
    if current["role"] != ROLE_ADMIN and req.requester_id != user.id:
        raise HTTPException(
            status_code=403,
            detail="Only the requester or an admin can confirm receipt.",
        )
    req = RequestWorkflow(session).mark_received(request_id, data.received_by, actor=user)
    return _to_read(session, req)


@router.post("/{request_id}/cancel", response_model=RequestRead)
def cancel_request(
    request_id: int,
    session: SessionDep,
    current: CurrentUserRoleDep,
    data: Optional[CancelData] = None,
):
    user = current["user"]
    _ensure_can_modify(session, _get_or_404(session, request_id), current)
    reason = data.reason if data is not None else None
    req = RequestWorkflow(session).cancel(request_id, user, reason=reason)
    return _to_read(session, req)


@router.patch("/{request_id}", response_model=RequestRead)
def update_request(
    request_id: int,
    data: RequestUpdate,
    session: SessionDep,
    current: CurrentUserRoleDep,
):
    _ensure_can_modify(session, _get_or_404(session, request_id), current)
    req = RequestWorkflow(session).update_details(
        request_id, current["user"], **data.model_dump(exclude_unset=True)
    )
    return _to_read(session, req)
