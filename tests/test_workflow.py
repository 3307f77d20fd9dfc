from datetime import date, timedelta

import pytest

from policywiki.permissions import PermissionSet
from policywiki.workflow import (
    InvalidTransition,
    UnknownAction,
    available_actions,
    can_transition,
    effective_status,
    get_documents_requiring_review,
    is_review_due_soon,
    transition,
)


@pytest.mark.parametrize(
    "current, action, expected",
    [
        ("draft", "submit", "pending_review"),
        ("pending_review", "approve", "approved"),
        ("pending_review", "reject", "draft"),
        ("approved", "publish", "published"),
        ("draft", "archive", "archived"),
        ("approved", "archive", "archived"),
        ("published", "archive", "archived"),
        ("published", "request_review", "pending_review"),
        ("archived", "restore", "draft"),
    ],
)
def test_valid_transitions(db, make_document, admin, current, action, expected):
    doc = make_document("Workflow Doc", status=current)

    transition(db, doc, action, admin.id)
    db.commit()

    assert doc.status == expected


@pytest.mark.parametrize(
    "current, action",
    [
        ("archived", "publish"),
        ("draft", "publish"),
        ("draft", "approve"),
        ("published", "submit"),
        ("pending_review", "archive"),
        ("published", "restore"),
    ],
)
def test_invalid_transitions_raise(db, make_document, admin, current, action):
    doc = make_document("Workflow Doc", status=current)

    with pytest.raises(InvalidTransition) as excinfo:
        transition(db, doc, action, admin.id)

    assert excinfo.value.status_code == 409
    assert not can_transition(current, action)


def test_unknown_action(db, make_document, admin):
    doc = make_document("Workflow Doc", status="draft")

    with pytest.raises(UnknownAction):
        transition(db, doc, "teleport", admin.id)


def test_timestamps_and_approver(db, make_document, make_user):
    approver = make_user("approver@example.com", roles=["approver"])
    doc = make_document("Workflow Doc", status="pending_review")

    transition(db, doc, "approve", approver.id)
    transition(db, doc, "publish", approver.id)
    db.commit()
    assert doc.approver_id == approver.id
    assert doc.published_at is not None

    transition(db, doc, "archive", approver.id)
    db.commit()
    assert doc.archived_at is not None

    transition(db, doc, "restore", approver.id)
    db.commit()
    assert doc.archived_at is None
    assert doc.status == "draft"


def test_transition_is_audited(db, models, make_document, admin):
    doc = make_document("Workflow Doc", status="draft")

    transition(db, doc, "submit", admin.id)
    db.commit()

    entry = (
        db.query(models.AuditLog)
        .filter_by(object_type="document", object_id=doc.id, action="submit")
        .one()
    )
    assert entry.actor_id == admin.id
    assert entry.changes == {"from": "draft", "to": "pending_review"}


def test_available_actions_respects_permissions():
    contributor = PermissionSet.from_strings(["submit_approval", "archive"])

    assert available_actions("draft", contributor) == ["submit", "archive"]
    assert available_actions("pending_review", contributor) == []
    assert available_actions("pending_review", PermissionSet(wildcard=True)) == [
        "approve",
        "reject",
    ]


def test_effective_status_expired(make_document):
    today = date(2025, 6, 1)
    overdue = make_document("Overdue", status="published", review_due=date(2025, 5, 31))
    current = make_document("Current", status="published", review_due=date(2025, 6, 1))
    draft = make_document("Draft", status="draft", review_due=date(2020, 1, 1))

    assert effective_status(overdue, today) == "expired"
    assert effective_status(current, today) == "published"
    assert effective_status(draft, today) == "draft"


def test_is_review_due_soon():
    today = date(2025, 6, 1)

    assert is_review_due_soon(today + timedelta(days=30), today) == (True, 30)
    assert is_review_due_soon(today + timedelta(days=31), today) == (False, 31)
    assert is_review_due_soon(today - timedelta(days=2), today) == (True, -2)


def test_documents_requiring_review(db, make_document, make_user):
    owner = make_user("owner@example.com", roles=["contributor"])
    today = date(2025, 6, 1)
    make_document("Soon", review_due=today + timedelta(days=10), owner_id=owner.id)
    make_document("Later", review_due=today + timedelta(days=90), owner_id=owner.id)
    make_document("Overdue", review_due=today - timedelta(days=5))
    make_document("Draft Soon", status="draft", review_due=today + timedelta(days=1))

    everyone = get_documents_requiring_review(db, today=today)
    mine = get_documents_requiring_review(db, user_id=owner.id, today=today)

    assert [d.title for d in everyone] == ["Overdue", "Soon"]
    assert [d.title for d in mine] == ["Soon"]


def test_transition_api(client, login, make_document, make_user):
    doc = make_document("Api Doc", status="draft")
    login()

    resp = client.post(f"/api/documents/{doc.id}/transition", json={"action": "submit"})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "pending_review"

    resp = client.post(f"/api/documents/{doc.id}/transition", json={"action": "restore"})
    assert resp.status_code == 409
    assert "error" in resp.get_json()

    resp = client.post(f"/api/documents/{doc.id}/transition", json={"action": "teleport"})
    assert resp.status_code == 400

    resp = client.post("/api/documents/99999/transition", json={"action": "submit"})
    assert resp.status_code == 404


def test_transition_api_requires_permission(client, login, make_document, make_user):
    doc = make_document("Api Doc", status="pending_review")
    make_user("reader@example.com", roles=["reader"])
    login("reader@example.com")

    resp = client.post(f"/api/documents/{doc.id}/transition", json={"action": "approve"})

    assert resp.status_code == 403


def test_transition_api_requires_login(client, make_document):
    doc = make_document("Api Doc", status="draft")

    resp = client.post(f"/api/documents/{doc.id}/transition", json={"action": "submit"})

    assert resp.status_code == 401
