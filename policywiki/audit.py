"""Append-only audit trail.

Every privileged action (logins, workflow transitions, uploads, role
changes) and every insert/update/delete of a :class:`~policywiki.models.Document`
ends up as a row in ``audit_logs``.  Writes are best effort: a failing audit
insert is logged and never undoes the action that triggered it.
"""

from __future__ import annotations

import logging

from flask import g, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from policywiki.models import AuditLog, engine, utcnow

logger = logging.getLogger(__name__)


def _request_metadata() -> tuple[str | None, str | None]:
    if not has_request_context():
        return None, None
    ip_address = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    ip_address = ip_address.split(",")[0].strip() or "unknown"
    user_agent = request.headers.get("User-Agent", "unknown")
    return ip_address, user_agent


def _current_actor_id() -> int | None:
    if not has_request_context():
        return None
    user = g.get("user")
    return user.id if user is not None else None


def log_action(
    actor_id=None,
    action=None,
    object_type=None,
    object_id=None,
    *,
    changes=None,
    connection=None,
):
    """Persist an audit log entry.

    When ``actor_id`` is omitted the user bound to the current request is
    used.  ``connection`` lets mapper event hooks write inside the flush that
    triggered them.
    """
    if actor_id is None:
        actor_id = _current_actor_id()
    ip_address, user_agent = _request_metadata()

    data = {
        "actor_id": actor_id,
        "action": action,
        "object_type": object_type,
        "object_id": object_id,
        "changes": changes,
        "ip_address": ip_address,
        "user_agent": user_agent,
        "created_at": utcnow(),
    }

    if connection is not None:
        connection.execute(AuditLog.__table__.insert(), [data])
        return

    # Separate session so the caller's unit of work is left untouched.
    Session = sessionmaker(bind=engine)
    session = Session()
    try:
        session.execute(AuditLog.__table__.insert(), [data])
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to write audit log %s %s:%s", action, object_type, object_id)
    finally:
        session.close()


def recent_activity(db, object_type: str, object_id: int, limit: int = 20):
    """Return the newest audit entries for a single object."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.object_type == object_type, AuditLog.object_id == object_id)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .all()
    )
