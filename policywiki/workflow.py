"""Document status lifecycle.

Statuses move along an explicit transition table; any edge not listed is
rejected.  ``expired`` is never written by a transition: a published document
whose review date has passed is reported as expired by
:func:`effective_status`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import or_

from policywiki.audit import log_action
from policywiki.models import Document, DocumentStatus, utcnow
from policywiki.permissions import Permission, PermissionSet

logger = logging.getLogger(__name__)

REVIEW_DUE_SOON_DAYS = int(os.environ.get("REVIEW_DUE_SOON_DAYS", "30"))
DEFAULT_REVIEW_PERIOD_DAYS = 365


class WorkflowError(Exception):
    status_code = 400


class UnknownAction(WorkflowError):
    status_code = 400

    def __init__(self, action):
        super().__init__(f"Unknown workflow action: {action}")
        self.action = action


class InvalidTransition(WorkflowError):
    status_code = 409

    def __init__(self, action, current):
        super().__init__(f"Cannot {action} a document in status {current}")
        self.action = action
        self.current = current


@dataclass(frozen=True)
class Transition:
    action: str
    sources: frozenset
    target: DocumentStatus
    permission: Permission


_D = DocumentStatus

TRANSITIONS: dict[str, Transition] = {
    t.action: t
    for t in (
        Transition("submit", frozenset({_D.DRAFT}), _D.PENDING_REVIEW, Permission.SUBMIT_APPROVAL),
        Transition("approve", frozenset({_D.PENDING_REVIEW}), _D.APPROVED, Permission.APPROVE),
        Transition("reject", frozenset({_D.PENDING_REVIEW}), _D.DRAFT, Permission.REJECT),
        Transition("publish", frozenset({_D.APPROVED}), _D.PUBLISHED, Permission.SCHEDULE_PUBLICATION),
        Transition(
            "archive",
            frozenset({_D.DRAFT, _D.APPROVED, _D.PUBLISHED}),
            _D.ARCHIVED,
            Permission.ARCHIVE,
        ),
        Transition("request_review", frozenset({_D.PUBLISHED}), _D.PENDING_REVIEW, Permission.SUBMIT_APPROVAL),
        Transition("restore", frozenset({_D.ARCHIVED}), _D.DRAFT, Permission.ARCHIVE),
    )
}

# Path followed by the upload form's "Save & Publish" button.
PUBLISH_PATH = ("submit", "approve", "publish")


def get_transition(action: str) -> Transition:
    try:
        return TRANSITIONS[action]
    except KeyError:
        raise UnknownAction(action) from None


def can_transition(current: str, action: str) -> bool:
    transition = TRANSITIONS.get(action)
    if transition is None:
        return False
    return DocumentStatus(current) in transition.sources


def available_actions(current: str, permissions: PermissionSet) -> list[str]:
    """Actions that are valid from ``current`` and granted by ``permissions``."""
    return [
        t.action
        for t in TRANSITIONS.values()
        if DocumentStatus(current) in t.sources and permissions.allows(t.permission)
    ]


def transition(db, document: Document, action: str, actor_id: int | None) -> Document:
    """Apply ``action`` to ``document`` within the caller's transaction.

    The caller commits.  Permission checks happen at the route boundary.
    """
    rule = get_transition(action)
    current = DocumentStatus(document.status)
    if current not in rule.sources:
        raise InvalidTransition(action, current.value)

    now = utcnow()
    document.status = rule.target.value
    if rule.target is DocumentStatus.PUBLISHED:
        document.published_at = now
    elif rule.target is DocumentStatus.ARCHIVED:
        document.archived_at = now
    elif current is DocumentStatus.ARCHIVED:
        document.archived_at = None
    if action == "approve" and actor_id is not None:
        document.approver_id = actor_id

    db.flush()
    log_action(
        actor_id,
        action,
        "document",
        document.id,
        changes={"from": current.value, "to": rule.target.value},
        connection=db.connection(),
    )
    logger.info(
        "Document %s moved %s -> %s by %s", document.id, current.value, rule.target.value, actor_id
    )
    return document


def required_permissions(actions) -> list[Permission]:
    return [get_transition(a).permission for a in actions]


# -- review dates ------------------------------------------------------------


def default_review_due(effective_date: date) -> date:
    return effective_date + timedelta(days=DEFAULT_REVIEW_PERIOD_DAYS)


def is_review_due_soon(review_due: date, today: date | None = None) -> tuple[bool, int]:
    """Return ``(is_due, days_until)`` for a review date."""
    today = today or date.today()
    days_until = (review_due - today).days
    return days_until <= REVIEW_DUE_SOON_DAYS, days_until


def effective_status(document: Document, today: date | None = None) -> str:
    today = today or date.today()
    if (
        document.status == DocumentStatus.PUBLISHED.value
        and document.review_due is not None
        and document.review_due < today
    ):
        return DocumentStatus.EXPIRED.value
    return document.status


def get_documents_requiring_review(db, user_id: int | None = None, today: date | None = None):
    today = today or date.today()
    horizon = today + timedelta(days=REVIEW_DUE_SOON_DAYS)
    query = db.query(Document).filter(
        Document.status == DocumentStatus.PUBLISHED.value,
        Document.review_due <= horizon,
    )
    if user_id:
        query = query.filter(or_(Document.owner_id == user_id, Document.reviewer_id == user_id))
    return query.order_by(Document.review_due.asc()).all()
