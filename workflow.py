"""
Request approval workflow.

A request moves pending -> evaluator_approved -> admin_approved ->
final_approved (ready for pickup) -> done (received), or ends rejected or
cancelled. Its status is never written directly: derive_status() computes it
from the stage fields and the stored column is only a cache for queries.

Every mutating operation runs inside one transaction that
  * re-reads the request row (FOR UPDATE where the database supports it),
  * checks the operation's precondition against the derived status,
  * claims the row by bumping ``version`` with a conditional UPDATE,
  * applies the change and appends one audit entry.
Notifications go out after the commit and never undo it.
"""
import logging
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import update
from sqlmodel import Session, col, select

from errors import InsufficientStock, InvalidTransition, NotFound, ValidationError
from models import (
    ADMIN_APPROVED,
    CANCELLED,
    EVALUATOR_APPROVED,
    FINAL_APPROVED,
    PENDING,
    REJECTED,
    ROLE_ADMIN,
    ROLE_DIVISION_CHIEF,
    STAGE_APPROVED,
    STAGE_PENDING,
    STAGE_REJECTED,
    Item,
    Request,
    RequestAuditEntry,
    RequestItem,
    User,
    utcnow,
)
from notifications import DatabaseNotificationSink, NotificationSink

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"
DECISIONS = {APPROVE: STAGE_APPROVED, REJECT: STAGE_REJECTED}

OPEN_STATUSES = (PENDING, EVALUATOR_APPROVED, ADMIN_APPROVED)
CANCELLABLE_STATUSES = (PENDING, EVALUATOR_APPROVED)
EDITABLE_STATUSES = (PENDING, EVALUATOR_APPROVED)
EDITABLE_FIELDS = ("is_urgent", "remarks", "needed_date")

# Fields recorded in audit entries when they change.
TRACKED_FIELDS = (
    "status",
    "is_urgent",
    "remarks",
    "needed_date",
    "evaluator_id",
    "evaluator_status",
    "evaluator_remarks",
    "evaluator_approved_at",
    "admin_id",
    "admin_status",
    "admin_remarks",
    "admin_approved_at",
    "ready_for_pickup",
    "received_by",
    "is_done",
    "cancelled_at",
    "cancelled_by_id",
    "cancel_reason",
)


def derive_status(
    evaluator_status: str,
    admin_status: str,
    ready_for_pickup: bool,
    is_done: Optional[datetime] = None,
    cancelled: bool = False,
) -> str:
    """
    Compute a request's status from its stage fields.

    Cancellation overrides everything; otherwise the first matching rule
    wins. ``is_done`` does not change the status: a received request stays
    final_approved and is_terminal() reports it as finished.
    """
    if cancelled:
        return CANCELLED
    if evaluator_status == STAGE_REJECTED:
        return REJECTED
    if admin_status == STAGE_REJECTED:
        return REJECTED
    if evaluator_status == STAGE_PENDING:
        return PENDING
    if evaluator_status == STAGE_APPROVED and admin_status == STAGE_PENDING:
        return EVALUATOR_APPROVED
    if admin_status == STAGE_APPROVED and not ready_for_pickup:
        return ADMIN_APPROVED
    if ready_for_pickup:
        return FINAL_APPROVED
    raise ValueError(
        f"unknown stage combination: evaluator={evaluator_status!r}, admin={admin_status!r}"
    )


def status_of(req: Request) -> str:
    return derive_status(
        req.evaluator_status,
        req.admin_status,
        req.ready_for_pickup,
        req.is_done,
        cancelled=req.cancelled_at is not None,
    )


def is_terminal(req: Request) -> bool:
    return req.is_done is not None or status_of(req) in (REJECTED, CANCELLED)


def display_status(req: Request) -> str:
    """Label shown to people tracking the request."""
    status = status_of(req)
    if status == CANCELLED:
        return "Cancelled"
    if status == REJECTED:
        return "Rejected"
    if req.is_done is not None:
        return "Completed"
    if status == FINAL_APPROVED:
        return "Ready for Pickup"
    if status == PENDING:
        return "Awaiting Division Chief Approval"
    if status == EVALUATOR_APPROVED:
        return "Awaiting Admin Approval"
    return "Admin is preparing the items"


def _jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _snapshot(req: Request) -> dict:
    return {name: getattr(req, name) for name in TRACKED_FIELDS}


def _diff(before: dict, after: dict) -> dict:
    return {
        name: [_jsonable(before[name]), _jsonable(after[name])]
        for name in TRACKED_FIELDS
        if before[name] != after[name]
    }


class RequestWorkflow:
    """Runs workflow operations against one database session."""

    def __init__(
        self,
        session: Session,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.sink = sink if sink is not None else DatabaseNotificationSink(session)
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_request(self, request_id: int) -> Request:
        req = self.session.get(Request, request_id)
        if req is None:
            raise NotFound("Request", request_id)
        return req

    def request_items(self, request_id: int) -> List[RequestItem]:
        stmt = (
            select(RequestItem)
            .where(RequestItem.request_id == request_id)
            .order_by(col(RequestItem.id))
        )
        return list(self.session.exec(stmt).all())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create_request(
        self,
        requester: User,
        items: Sequence,
        is_urgent: bool = False,
        remarks: Optional[str] = None,
        needed_date: Optional[date] = None,
        request_date: Optional[date] = None,
    ) -> Request:
        """
        Open a new request for ``items`` (objects with item_id, quantity and
        optional remarks / needed_date, e.g. schemas.RequestItemCreate).
        """
        if not items:
            raise ValidationError("A request needs at least one item")
        for line in items:
            if line.quantity is None or line.quantity <= 0:
                raise ValidationError(
                    f"Quantity for item {line.item_id} must be a positive number"
                )

        item_ids = {line.item_id for line in items}
        found = set(
            self.session.exec(select(Item.id).where(col(Item.id).in_(item_ids))).all()
        )
        missing = sorted(item_ids - found)
        if missing:
            raise NotFound("Item", missing[0])

        now = self.clock()
        req = Request(
            requester_id=requester.id,
            is_urgent=is_urgent,
            remarks=remarks,
            needed_date=needed_date,
            request_date=request_date or now.date(),
            created_at=now,
            updated_at=now,
        )
        req.status = status_of(req)
        try:
            self.session.add(req)
            self.session.flush()
            for line in items:
                self.session.add(
                    RequestItem(
                        request_id=req.id,
                        item_id=line.item_id,
                        quantity=line.quantity,
                        remarks=getattr(line, "remarks", None),
                        needed_date=getattr(line, "needed_date", None),
                    )
                )
            self._audit(
                req,
                requester,
                "created",
                {
                    "status": [None, req.status],
                    "items": [
                        {"item_id": line.item_id, "quantity": line.quantity}
                        for line in items
                    ],
                    "is_urgent": is_urgent,
                },
                now,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(req)
        logger.info(
            "request %s created by user %s with %d line(s), urgent=%s",
            req.id,
            requester.id,
            len(items),
            is_urgent,
        )

        self._notify_created(req, requester)
        return self._finish(req)

    def evaluate(
        self,
        request_id: int,
        evaluator: User,
        decision: str,
        remarks: Optional[str] = None,
    ) -> Request:
        stage_status = self._decision(decision, remarks)
        now = self.clock()
        with self._transition(request_id, evaluator, f"evaluate_{decision}", (PENDING,), now) as req:
            req.evaluator_id = evaluator.id
            req.evaluator_status = stage_status
            req.evaluator_remarks = remarks
            if req.evaluator_approved_at is None:
                req.evaluator_approved_at = now

        requester = self.session.get(User, req.requester_id)
        if stage_status == STAGE_APPROVED:
            self._dispatch(
                req,
                req.requester_id,
                "Request Under Review",
                f"Your supply request #{req.id} was approved by {evaluator.name} "
                "and is now waiting for admin approval",
                "request_under_review",
                self._priority(req, informational=True),
                sender=evaluator,
                data={"approved_by": evaluator.name, "stage": "evaluator"},
            )
            for admin in self._admins(exclude=req.requester_id):
                self._dispatch(
                    req,
                    admin.id,
                    "Request Ready for Admin Review",
                    f"Supply request #{req.id} from {requester.name if requester else 'unknown'} "
                    f"was approved by {evaluator.name} and needs your approval",
                    "request_under_review",
                    self._priority(req),
                    action_required=True,
                    sender=evaluator,
                    data={"approved_by": evaluator.name, "stage": "evaluator"},
                )
        else:
            self._notify_rejected(req, evaluator, remarks, "evaluator")
        return self._finish(req)

    def approve(
        self,
        request_id: int,
        admin: User,
        decision: str,
        remarks: Optional[str] = None,
    ) -> Request:
        stage_status = self._decision(decision, remarks)
        now = self.clock()
        with self._transition(request_id, admin, f"admin_{decision}", (EVALUATOR_APPROVED,), now) as req:
            req.admin_id = admin.id
            req.admin_status = stage_status
            req.admin_remarks = remarks
            if req.admin_approved_at is None:
                req.admin_approved_at = now
            if stage_status == STAGE_APPROVED:
                self._deduct_stock(req, now)

        if stage_status == STAGE_APPROVED:
            self._dispatch(
                req,
                req.requester_id,
                "Request Approved",
                f"Your supply request #{req.id} was approved by {admin.name}; "
                "the items are being prepared",
                "request_approved",
                self._priority(req),
                sender=admin,
                data={"approved_by": admin.name, "stage": "admin"},
            )
        else:
            self._notify_rejected(req, admin, remarks, "admin")
        return self._finish(req)

    def mark_ready_for_pickup(self, request_id: int, actor: User) -> Request:
        now = self.clock()
        with self._transition(request_id, actor, "ready_for_pickup", (ADMIN_APPROVED,), now) as req:
            req.ready_for_pickup = True

        self._dispatch(
            req,
            req.requester_id,
            "Request Ready for Pickup",
            f"The items for your supply request #{req.id} are ready for pickup",
            "request_ready_pickup",
            self._priority(req),
            sender=actor,
        )
        return self._finish(req)

    def mark_received(
        self,
        request_id: int,
        received_by: str,
        actor: Optional[User] = None,
    ) -> Request:
        received_by = (received_by or "").strip()
        if not received_by:
            raise ValidationError("The name of the person receiving the items is required")
        now = self.clock()
        with self._transition(request_id, actor, "received", (FINAL_APPROVED,), now) as req:
            req.received_by = received_by
            req.is_done = now

        self._dispatch(
            req,
            req.requester_id,
            "Request Completed",
            f"Supply request #{req.id} was received by {received_by}",
            "request_completed",
            self._priority(req, informational=True),
            sender=actor,
            data={"received_by": received_by},
        )
        return self._finish(req)

    def update_details(self, request_id: int, actor: User, **changes) -> Request:
        """
        Change is_urgent, remarks or needed_date while the request is still
        waiting for a reviewer. Only the keyword arguments given are applied;
        passing remarks=None or needed_date=None clears them.
        """
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"These fields cannot be edited: {', '.join(unknown)}")
        if not changes:
            raise ValidationError("Nothing to update")
        if "is_urgent" in changes and changes["is_urgent"] is None:
            raise ValidationError("is_urgent must be true or false")
        now = self.clock()
        needed_date = changes.get("needed_date")
        if needed_date is not None and needed_date < now.date():
            raise ValidationError("The needed date cannot be in the past")

        with self._transition(request_id, actor, "updated", EDITABLE_STATUSES, now) as req:
            for name, value in changes.items():
                setattr(req, name, value)
        return self._finish(req)

    def cancel(
        self,
        request_id: int,
        actor: User,
        reason: Optional[str] = None,
    ) -> Request:
        now = self.clock()
        with self._transition(request_id, actor, "cancelled", CANCELLABLE_STATUSES, now) as req:
            previous = status_of(req)
            req.cancelled_at = now
            req.cancelled_by_id = actor.id
            req.cancel_reason = reason

        message = f"Supply request #{req.id} was cancelled by {actor.name}"
        if reason:
            message += f": {reason}"
        self._dispatch(
            req,
            req.requester_id,
            "Request Cancelled",
            message,
            "general",
            self._priority(req, informational=True),
            sender=actor,
            data={"cancelled_by": actor.name, "reason": reason},
        )
        if previous == PENDING:
            requester = self.session.get(User, req.requester_id)
            reviewers = self._division_chiefs(requester) if requester else []
        else:
            reviewers = self._admins(exclude=req.requester_id)
        for reviewer in reviewers:
            if reviewer.id == actor.id:
                continue
            self._dispatch(
                req,
                reviewer.id,
                "Request Cancelled",
                message,
                "general",
                self._priority(req, informational=True),
                sender=actor,
                data={"cancelled_by": actor.name, "reason": reason},
            )
        return self._finish(req)

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------
    @contextmanager
    def _transition(
        self,
        request_id: int,
        actor: Optional[User],
        action: str,
        allowed: Iterable[str],
        now: datetime,
    ):
        try:
            req = self._load(request_id)
            current = status_of(req)
            if req.status != current:
                logger.error(
                    "request %s stored status %r disagrees with derived %r",
                    req.id,
                    req.status,
                    current,
                )
            if req.is_done is not None:
                raise InvalidTransition(
                    f"Request {req.id} is already completed", current_status=current
                )
            if current not in allowed:
                raise InvalidTransition(
                    f"Request {req.id} is {current}; {action} is not allowed",
                    current_status=current,
                )
            self._claim(req)
            before = _snapshot(req)

            yield req

            req.status = status_of(req)
            req.updated_at = now
            self._audit(req, actor, action, _diff(before, _snapshot(req)), now)
            self.session.add(req)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(req)
        logger.info(
            "request %s: %s by %s (%s -> %s)",
            req.id,
            action,
            actor.id if actor is not None else None,
            current,
            req.status,
        )

    def _load(self, request_id: int) -> Request:
        stmt = (
            select(Request)
            .where(Request.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        req = self.session.exec(stmt).first()
        if req is None:
            raise NotFound("Request", request_id)
        return req

    def _claim(self, req: Request) -> None:
        """Bump the row version; fails if another writer bumped it first."""
        table = Request.__table__
        seen = req.version
        result = self.session.connection().execute(
            update(table)
            .where(table.c.id == req.id, table.c.version == seen)
            .values(version=seen + 1)
        )
        if result.rowcount != 1:
            raise InvalidTransition(
                f"Request {req.id} was changed by someone else; reload it and try again",
                current_status=req.status,
            )
        req.version = seen + 1

    def _deduct_stock(self, req: Request, now: datetime) -> None:
        totals = defaultdict(int)
        for line in self.request_items(req.id):
            totals[line.item_id] += line.quantity

        table = Item.__table__
        conn = self.session.connection()
        # fixed order so concurrent approvals lock items the same way
        for item_id in sorted(totals):
            quantity = totals[item_id]
            result = conn.execute(
                update(table)
                .where(table.c.id == item_id, table.c.quantity_on_hand >= quantity)
                .values(
                    quantity_on_hand=table.c.quantity_on_hand - quantity,
                    updated_at=now,
                )
            )
            if result.rowcount == 1:
                continue
            item = self.session.exec(
                select(Item)
                .where(Item.id == item_id)
                .execution_options(populate_existing=True)
            ).first()
            if item is None:
                raise NotFound("Item", item_id)
            logger.warning(
                "request %s: item %s short, requested %s, available %s",
                req.id,
                item_id,
                quantity,
                item.quantity_on_hand,
            )
            raise InsufficientStock(item_id, item.item_name, quantity, item.quantity_on_hand)

    def _audit(
        self,
        req: Request,
        actor: Optional[User],
        action: str,
        details: dict,
        now: datetime,
    ) -> None:
        self.session.add(
            RequestAuditEntry(
                request_id=req.id,
                actor_id=actor.id if actor is not None else None,
                actor_name=actor.name if actor is not None else "System",
                action=action,
                details=details,
                created_at=now,
            )
        )

    def _finish(self, req: Request) -> Request:
        self.session.refresh(req)
        return req

    @staticmethod
    def _decision(decision: str, remarks: Optional[str]) -> str:
        if decision not in DECISIONS:
            raise ValidationError(f"Decision must be one of {sorted(DECISIONS)}, not {decision!r}")
        if decision == REJECT and not (remarks or "").strip():
            raise ValidationError("Remarks are required when rejecting a request")
        return DECISIONS[decision]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    @staticmethod
    def _priority(req: Request, informational: bool = False) -> str:
        if req.is_urgent:
            return "urgent"
        return "low" if informational else "medium"

    def _division_chiefs(self, requester: User) -> List[User]:
        if requester.division_id is None:
            return []
        stmt = select(User).where(
            User.user_role == ROLE_DIVISION_CHIEF,
            User.division_id == requester.division_id,
            User.is_active == True,  # noqa: E712
            User.id != requester.id,
        )
        return list(self.session.exec(stmt).all())

    def _admins(self, exclude: Optional[int] = None) -> List[User]:
        stmt = select(User).where(User.user_role == ROLE_ADMIN, User.is_active == True)  # noqa: E712
        return [user for user in self.session.exec(stmt).all() if user.id != exclude]

    def _dispatch(
        self,
        req: Request,
        user_id: int,
        title: str,
        message: str,
        type: str,
        priority: str,
        action_required: bool = False,
        sender: Optional[User] = None,
        data: Optional[dict] = None,
    ) -> None:
        payload = {
            "request_id": req.id,
            "status": req.status,
            "is_urgent": req.is_urgent,
        }
        payload.update(data or {})
        try:
            self.sink.create_notification(
                user_id=user_id,
                title=title,
                message=message,
                type=type,
                request_id=req.id,
                priority=priority,
                action_required=action_required,
                data=payload,
                sender_name=sender.name if sender is not None else "System",
                sender_email=sender.email if sender is not None else None,
            )
        except Exception:
            # the transition is already committed
            logger.exception(
                "failed to notify user %s about request %s (%s)", user_id, req.id, type
            )

    def _notify_created(self, req: Request, requester: User) -> None:
        self._dispatch(
            req,
            requester.id,
            "Request Submitted",
            f"Your supply request #{req.id} has been submitted successfully",
            "request_created",
            self._priority(req, informational=True),
            data={"requester_name": requester.name},
        )
        for chief in self._division_chiefs(requester):
            self._dispatch(
                req,
                chief.id,
                "New Request for Review",
                f"New supply request #{req.id} from {requester.name} needs your review",
                "request_created",
                self._priority(req),
                action_required=True,
                sender=requester,
                data={"requester_name": requester.name},
            )
        if req.is_urgent:
            for admin in self._admins(exclude=requester.id):
                self._dispatch(
                    req,
                    admin.id,
                    "Urgent Request",
                    f"Urgent supply request #{req.id} submitted by {requester.name}",
                    "urgent_request",
                    "urgent",
                    sender=requester,
                    data={"requester_name": requester.name},
                )

    def _notify_rejected(
        self,
        req: Request,
        rejector: User,
        reason: Optional[str],
        stage: str,
    ) -> None:
        who = "division chief" if stage == "evaluator" else "administrator"
        message = f"Your supply request #{req.id} was rejected by the {who}"
        if reason:
            message += f". Reason: {reason}"
        self._dispatch(
            req,
            req.requester_id,
            "Request Rejected",
            message,
            "request_rejected",
            self._priority(req),
            sender=rejector,
            data={"rejected_by": rejector.name, "stage": stage, "reason": reason},
        )
