"""Dashboard and history queries over requests."""
from datetime import date, datetime, time, timezone
from typing import List, Optional

from sqlalchemy import case, func
from sqlmodel import Session, col, select

from errors import NotFound
from models import (
    REQUEST_STATUSES,
    STAGE_APPROVED,
    Division,
    Item,
    Request,
    RequestAuditEntry,
    RequestItem,
    User,
)
from workflow import OPEN_STATUSES


def _filter_dates(stmt, date_from: Optional[date], date_to: Optional[date]):
    if date_from is not None:
        stmt = stmt.where(Request.created_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc))
    if date_to is not None:
        stmt = stmt.where(Request.created_at <= datetime.combine(date_to, time.max, tzinfo=timezone.utc))
    return stmt


def request_stats(
    session: Session,
    division_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> dict:
    """
    Count requests per status.

    Every status is present in the result (zero when unused), plus ``total``
    and ``urgent_active``: urgent requests still moving through approval.
    """
    urgent_active = func.sum(
        case(
            (col(Request.is_urgent) & col(Request.status).in_(OPEN_STATUSES), 1),
            else_=0,
        )
    )
    stmt = select(Request.status, func.count(col(Request.id)), urgent_active).group_by(
        Request.status
    )
    if division_id is not None:
        stmt = stmt.join(User, col(User.id) == Request.requester_id).where(
            User.division_id == division_id
        )
    stmt = _filter_dates(stmt, date_from, date_to)

    counts = {status: 0 for status in REQUEST_STATUSES}
    urgent = 0
    for status, count, urgent_count in session.exec(stmt).all():
        counts[status] = count
        urgent += urgent_count or 0
    counts["total"] = sum(counts[status] for status in REQUEST_STATUSES)
    counts["urgent_active"] = urgent
    return counts


def division_stats(session: Session) -> List[dict]:
    """Open and urgent-open request counts for every active division."""
    is_open = col(Request.status).in_(OPEN_STATUSES)
    stmt = (
        select(
            Division.id,
            Division.name,
            func.sum(case((is_open, 1), else_=0)),
            func.sum(case((is_open & col(Request.is_urgent), 1), else_=0)),
        )
        .join(User, col(User.division_id) == Division.id, isouter=True)
        .join(Request, col(Request.requester_id) == User.id, isouter=True)
        .where(Division.is_active == True)  # noqa: E712
        .group_by(Division.id, Division.name)
        .order_by(Division.name)
    )
    return [
        {
            "division_id": division_id,
            "division_name": name,
            "active_total": int(active or 0),
            "active_urgent": int(urgent or 0),
        }
        for division_id, name, active, urgent in session.exec(stmt).all()
    ]


def most_requested_items(
    session: Session,
    limit: int = 10,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[dict]:
    """Items ranked by the quantity handed out through admin-approved requests."""
    total = func.sum(RequestItem.quantity).label("total_quantity")
    stmt = (
        select(
            Item.id,
            Item.item_name,
            Item.unit,
            total,
            func.count(func.distinct(RequestItem.request_id)),
        )
        .join(RequestItem, col(RequestItem.item_id) == Item.id)
        .join(Request, col(Request.id) == RequestItem.request_id)
        .where(Request.admin_status == STAGE_APPROVED)
    )
    stmt = (
        _filter_dates(stmt, date_from, date_to)
        .group_by(Item.id, Item.item_name, Item.unit)
        .order_by(total.desc(), Item.id)
        .limit(limit)
    )
    return [
        {
            "item_id": item_id,
            "item_name": name,
            "unit": unit,
            "total_quantity": int(quantity),
            "request_count": int(requests),
        }
        for item_id, name, unit, quantity, requests in session.exec(stmt).all()
    ]


def request_timeline(session: Session, request_id: int) -> List[RequestAuditEntry]:
    if session.get(Request, request_id) is None:
        raise NotFound("Request", request_id)
    stmt = (
        select(RequestAuditEntry)
        .where(RequestAuditEntry.request_id == request_id)
        .order_by(col(RequestAuditEntry.created_at), col(RequestAuditEntry.id))
    )
    return list(session.exec(stmt).all())

