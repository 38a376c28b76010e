import logging
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlmodel import select

from errors import InsufficientStock, InvalidTransition, NotFound, ValidationError
from models import Notification, Request, RequestAuditEntry, RequestItem
from notifications import NotificationSink
from schemas import RequestItemCreate
from workflow import RequestWorkflow


def lines(*pairs):
    return [RequestItemCreate(item_id=item.id, quantity=quantity) for item, quantity in pairs]


def notifications_for(session, user, request_id=None):
    query = select(Notification).where(Notification.user_id == user.id).order_by(Notification.id)
    if request_id is not None:
        query = query.where(Notification.request_id == request_id)
    return session.exec(query).all()


def frozen(session, request_id):
    session.expire_all()
    return session.get(Request, request_id).model_dump()


@pytest.fixture
def paper_and_ink(make_item):
    return make_item("Bond Paper A4", 10), make_item("Printer Ink", 10)


@pytest.fixture
def opened(workflow, requester, paper_and_ink):
    paper, ink = paper_and_ink
    return workflow.create_request(requester, lines((paper, 3), (ink, 5)))


class TestCreateRequest:
    def test_new_request_is_pending(self, session, opened):
        assert opened.status == "pending"
        assert opened.evaluator_status == "pending"
        assert opened.admin_status == "pending"
        assert opened.ready_for_pickup is False
        assert opened.request_date is not None
        stored = session.exec(select(RequestItem).where(RequestItem.request_id == opened.id)).all()
        assert sorted(line.quantity for line in stored) == [3, 5]

    def test_empty_item_list_is_rejected(self, workflow, requester):
        with pytest.raises(ValidationError):
            workflow.create_request(requester, [])

    @pytest.mark.parametrize("quantity", [0, -2])
    def test_non_positive_quantity_is_rejected(self, session, workflow, requester, make_item, quantity):
        item = make_item("Stapler", 4)
        line = RequestItemCreate.model_construct(item_id=item.id, quantity=quantity)
        with pytest.raises(ValidationError):
            workflow.create_request(requester, [line])
        assert session.exec(select(Request)).all() == []

    def test_unknown_item(self, workflow, requester):
        with pytest.raises(NotFound):
            workflow.create_request(requester, [RequestItemCreate(item_id=999, quantity=1)])

    def test_notifies_requester_and_division_chief(self, session, workflow, requester, chief, admin, paper_and_ink):
        paper, _ = paper_and_ink
        req = workflow.create_request(requester, lines((paper, 1)))

        mine = notifications_for(session, requester, req.id)
        assert [(n.type, n.priority) for n in mine] == [("request_created", "low")]

        for_chief = notifications_for(session, chief, req.id)
        assert len(for_chief) == 1
        assert for_chief[0].type == "request_created"
        assert for_chief[0].action_required is True
        assert for_chief[0].priority == "medium"

        # admins only hear about urgent requests at creation time
        assert notifications_for(session, admin, req.id) == []

    def test_urgent_request_alerts_admins(self, session, workflow, requester, chief, admin, paper_and_ink):
        paper, _ = paper_and_ink
        req = workflow.create_request(requester, lines((paper, 1)), is_urgent=True)

        assert [n.type for n in notifications_for(session, admin, req.id)] == ["urgent_request"]
        assert notifications_for(session, chief, req.id)[0].priority == "urgent"
        assert notifications_for(session, requester, req.id)[0].priority == "urgent"


class TestScenarios:
    def test_evaluate_then_approve_deducts_stock(self, session, workflow, chief, admin, opened, paper_and_ink):
        paper, ink = paper_and_ink

        req = workflow.evaluate(opened.id, chief, "approve")
        assert req.status == "evaluator_approved"

        req = workflow.approve(req.id, admin, "approve")
        assert req.status == "admin_approved"
        session.refresh(paper)
        session.refresh(ink)
        assert (paper.quantity_on_hand, ink.quantity_on_hand) == (7, 5)

    def test_short_stock_rolls_back_whole_approval(self, session, workflow, requester, chief, admin, make_item):
        paper = make_item("Bond Paper A4", 10)
        ink = make_item("Printer Ink", 2)
        req = workflow.create_request(requester, lines((paper, 3), (ink, 5)))
        workflow.evaluate(req.id, chief, "approve")

        with pytest.raises(InsufficientStock) as excinfo:
            workflow.approve(req.id, admin, "approve")

        err = excinfo.value
        assert (err.item_id, err.requested, err.available) == (ink.id, 5, 2)
        session.refresh(paper)
        session.refresh(ink)
        assert (paper.quantity_on_hand, ink.quantity_on_hand) == (10, 2)
        after = frozen(session, req.id)
        assert after["status"] == "evaluator_approved"
        assert after["admin_status"] == "pending"
        assert after["admin_approved_at"] is None

    def test_rejected_request_cannot_be_approved(self, session, workflow, chief, admin, opened):
        req = workflow.evaluate(opened.id, chief, "reject", remarks="budget")
        assert req.status == "rejected"
        assert req.evaluator_remarks == "budget"

        with pytest.raises(InvalidTransition):
            workflow.approve(req.id, admin, "approve")

    def test_pickup_requires_admin_approval(self, workflow, chief, admin, opened):
        workflow.evaluate(opened.id, chief, "approve")
        with pytest.raises(InvalidTransition):
            workflow.mark_ready_for_pickup(opened.id, admin)

    def test_full_happy_path(self, session, workflow, chief, admin, opened):
        workflow.evaluate(opened.id, chief, "approve")
        workflow.approve(opened.id, admin, "approve")
        req = workflow.mark_ready_for_pickup(opened.id, admin)
        assert req.status == "final_approved"
        assert req.ready_for_pickup is True

        req = workflow.mark_received(opened.id, "Juan Dela Cruz", actor=admin)
        assert req.received_by == "Juan Dela Cruz"
        assert req.is_done is not None
        assert req.status == "final_approved"

        with pytest.raises(InvalidTransition):
            workflow.mark_received(opened.id, "Juan Dela Cruz", actor=admin)

    def test_cancel(self, session, workflow, requester, chief, admin, paper_and_ink, opened):
        req = workflow.cancel(opened.id, requester)
        assert req.status == "cancelled"
        assert req.cancelled_by_id == requester.id
        assert req.evaluator_status == "pending"

        paper, _ = paper_and_ink
        other = workflow.create_request(requester, lines((paper, 1)))
        workflow.evaluate(other.id, chief, "approve")
        workflow.approve(other.id, admin, "approve")
        with pytest.raises(InvalidTransition):
            workflow.cancel(other.id, requester)
        assert frozen(session, other.id)["status"] == "admin_approved"


class TestGuards:
    def test_evaluator_stamp_is_write_once(self, session, chief, opened):
        earlier = datetime(2025, 1, 2, 8, 0, tzinfo=timezone.utc)
        req = session.get(Request, opened.id)
        req.evaluator_approved_at = earlier
        session.add(req)
        session.commit()

        later = RequestWorkflow(session, clock=lambda: earlier + timedelta(days=3))
        req = later.evaluate(opened.id, chief, "approve")
        assert req.evaluator_approved_at == earlier

        with pytest.raises(InvalidTransition):
            later.evaluate(opened.id, chief, "reject", remarks="changed my mind")
        assert frozen(session, opened.id)["evaluator_approved_at"] == earlier

    def test_rejection_needs_remarks(self, session, workflow, chief, opened):
        with pytest.raises(ValidationError):
            workflow.evaluate(opened.id, chief, "reject", remarks="  ")
        assert frozen(session, opened.id)["status"] == "pending"

    def test_unknown_decision(self, workflow, chief, opened):
        with pytest.raises(ValidationError):
            workflow.evaluate(opened.id, chief, "maybe")

    def test_missing_request(self, workflow, chief):
        with pytest.raises(NotFound):
            workflow.evaluate(12345, chief, "approve")

    def test_received_by_is_required(self, workflow, chief, admin, opened):
        workflow.evaluate(opened.id, chief, "approve")
        workflow.approve(opened.id, admin, "approve")
        workflow.mark_ready_for_pickup(opened.id, admin)
        with pytest.raises(ValidationError):
            workflow.mark_received(opened.id, "   ", actor=admin)

    @pytest.mark.parametrize("ending", ["evaluator_reject", "admin_reject", "cancel", "received"])
    def test_terminal_requests_refuse_every_operation(self, session, workflow, requester, chief, admin, opened, ending):
        if ending == "evaluator_reject":
            workflow.evaluate(opened.id, chief, "reject", remarks="not needed")
        elif ending == "cancel":
            workflow.cancel(opened.id, requester)
        else:
            workflow.evaluate(opened.id, chief, "approve")
            if ending == "admin_reject":
                workflow.approve(opened.id, admin, "reject", remarks="no budget")
            else:
                workflow.approve(opened.id, admin, "approve")
                workflow.mark_ready_for_pickup(opened.id, admin)
                workflow.mark_received(opened.id, "Juan Dela Cruz", actor=admin)

        before = frozen(session, opened.id)
        attempts = [
            lambda: workflow.evaluate(opened.id, chief, "approve"),
            lambda: workflow.approve(opened.id, admin, "approve"),
            lambda: workflow.mark_ready_for_pickup(opened.id, admin),
            lambda: workflow.mark_received(opened.id, "Someone Else", actor=admin),
            lambda: workflow.cancel(opened.id, requester),
            lambda: workflow.update_details(opened.id, requester, is_urgent=True),
        ]
        for attempt in attempts:
            with pytest.raises(InvalidTransition):
                attempt()
        assert frozen(session, opened.id) == before


class TestUpdateDetails:
    def test_edits_are_applied_and_audited(self, session, workflow, requester, opened):
        req = workflow.update_details(
            opened.id, requester, is_urgent=True, remarks="for the audit team", needed_date=date(2099, 1, 15)
        )

        assert (req.is_urgent, req.remarks, req.needed_date) == (True, "for the audit team", date(2099, 1, 15))
        assert req.status == "pending"
        entry = session.exec(
            select(RequestAuditEntry)
            .where(RequestAuditEntry.request_id == opened.id)
            .order_by(RequestAuditEntry.id)
        ).all()[-1]
        assert entry.action == "updated"
        assert entry.actor_id == requester.id
        assert entry.details == {
            "is_urgent": [False, True],
            "remarks": [None, "for the audit team"],
            "needed_date": [None, "2099-01-15"],
        }

    def test_only_given_fields_change(self, session, workflow, requester, paper_and_ink):
        paper, _ = paper_and_ink
        req = workflow.create_request(requester, lines((paper, 1)), remarks="keep me")
        workflow.update_details(req.id, requester, is_urgent=True)
        assert frozen(session, req.id)["remarks"] == "keep me"

        workflow.update_details(req.id, requester, remarks=None)
        assert frozen(session, req.id)["remarks"] is None

    def test_allowed_after_evaluation(self, workflow, requester, chief, opened):
        workflow.evaluate(opened.id, chief, "approve")
        req = workflow.update_details(opened.id, requester, remarks="pick up at the annex")
        assert req.status == "evaluator_approved"
        assert req.remarks == "pick up at the annex"

    def test_refused_once_admin_approved(self, session, workflow, requester, chief, admin, opened):
        workflow.evaluate(opened.id, chief, "approve")
        workflow.approve(opened.id, admin, "approve")
        before = frozen(session, opened.id)
        with pytest.raises(InvalidTransition):
            workflow.update_details(opened.id, requester, is_urgent=True)
        assert frozen(session, opened.id) == before

    @pytest.mark.parametrize(
        "changes",
        [{}, {"status": "final_approved"}, {"is_urgent": None}, {"needed_date": date(2000, 1, 1)}],
    )
    def test_bad_edits(self, session, workflow, requester, opened, changes):
        before = frozen(session, opened.id)
        with pytest.raises(ValidationError):
            workflow.update_details(opened.id, requester, **changes)
        assert frozen(session, opened.id) == before

    def test_marking_urgent_raises_later_notification_priority(self, session, workflow, requester, chief, opened):
        workflow.update_details(opened.id, requester, is_urgent=True)
        workflow.evaluate(opened.id, chief, "approve")
        note = notifications_for(session, requester, opened.id)[-1]
        assert note.type == "request_under_review"
        assert note.priority == "urgent"


class TestSideEffects:
    def test_one_requester_notification_per_transition(self, session, workflow, requester, chief, admin, opened):
        steps = [
            (lambda: workflow.evaluate(opened.id, chief, "approve"), "request_under_review", "low"),
            (lambda: workflow.approve(opened.id, admin, "approve"), "request_approved", "medium"),
            (lambda: workflow.mark_ready_for_pickup(opened.id, admin), "request_ready_pickup", "medium"),
            (lambda: workflow.mark_received(opened.id, "Maria Santos", actor=requester), "request_completed", "low"),
        ]
        for step, expected_type, expected_priority in steps:
            seen = len(notifications_for(session, requester, opened.id))
            step()
            new = notifications_for(session, requester, opened.id)[seen:]
            assert [(n.type, n.priority, n.request_id) for n in new] == [
                (expected_type, expected_priority, opened.id)
            ]

    def test_admins_are_asked_to_review_after_evaluation(self, session, workflow, chief, admin, opened):
        workflow.evaluate(opened.id, chief, "approve")
        notes = notifications_for(session, admin, opened.id)
        assert [n.type for n in notes] == ["request_under_review"]
        assert notes[0].action_required is True
        assert notes[0].sender_name == chief.name

    def test_rejection_reason_reaches_requester(self, session, workflow, requester, chief, opened):
        workflow.evaluate(opened.id, chief, "reject", remarks="budget")
        note = notifications_for(session, requester, opened.id)[-1]
        assert note.type == "request_rejected"
        assert "budget" in note.message
        assert note.data["reason"] == "budget"
        assert note.data["stage"] == "evaluator"

    def test_cancel_notifies_requester_and_reviewers(self, session, workflow, requester, chief, admin, opened):
        workflow.cancel(opened.id, requester, reason="ordered elsewhere")
        assert notifications_for(session, requester, opened.id)[-1].title == "Request Cancelled"
        assert notifications_for(session, chief, opened.id)[-1].title == "Request Cancelled"

    def test_notification_failure_does_not_block_transition(self, session, chief, opened, caplog):
        class BrokenSink(NotificationSink):
            def create_notification(self, *args, **kwargs):
                raise RuntimeError("broadcast server unreachable")

        flaky = RequestWorkflow(session, sink=BrokenSink())
        with caplog.at_level(logging.ERROR, logger="workflow"):
            req = flaky.evaluate(opened.id, chief, "approve")

        assert req.status == "evaluator_approved"
        assert frozen(session, opened.id)["status"] == "evaluator_approved"
        assert "failed to notify" in caplog.text

    def test_every_operation_appends_one_audit_entry(self, session, workflow, requester, chief, admin, opened):
        workflow.evaluate(opened.id, chief, "approve")
        workflow.approve(opened.id, admin, "approve")
        workflow.mark_ready_for_pickup(opened.id, admin)
        workflow.mark_received(opened.id, "Juan Dela Cruz", actor=requester)

        entries = session.exec(
            select(RequestAuditEntry)
            .where(RequestAuditEntry.request_id == opened.id)
            .order_by(RequestAuditEntry.id)
        ).all()
        assert [e.action for e in entries] == [
            "created",
            "evaluate_approve",
            "admin_approve",
            "ready_for_pickup",
            "received",
        ]
        assert entries[1].actor_id == chief.id
        assert entries[1].details["status"] == ["pending", "evaluator_approved"]
        assert entries[1].details["evaluator_status"] == ["pending", "approved"]
        assert entries[3].details["ready_for_pickup"] == [False, True]
        assert entries[4].details["received_by"] == [None, "Juan Dela Cruz"]

    def test_failed_operation_leaves_no_audit_entry(self, session, workflow, admin, opened):
        with pytest.raises(InvalidTransition):
            workflow.approve(opened.id, admin, "approve")
        actions = session.exec(
            select(RequestAuditEntry.action).where(RequestAuditEntry.request_id == opened.id)
        ).all()
        assert actions == ["created"]
