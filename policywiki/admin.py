"""Administration pages: dashboard, uploads, approvals and user management."""

import logging
from datetime import date

from flask import Blueprint, abort, g, redirect, render_template, request, url_for
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

from policywiki.audit import log_action
from policywiki.auth import login_required, permission_required
from policywiki.documents import (
    add_version,
    auto_classify_content_type,
    ensure_unique_slug,
    generate_slug,
)
from policywiki.models import (
    BusinessUnit,
    Category,
    ContentType,
    Document,
    DocumentStatus,
    Role,
    Session,
    Tag,
    User,
    UserRole,
    UserStatus,
    get_session,
)
from policywiki import storage
from policywiki.permissions import Permission
from policywiki.workflow import (
    PUBLISH_PATH,
    WorkflowError,
    default_review_due,
    get_documents_requiring_review,
    get_transition,
    required_permissions,
    transition,
)

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

# Workflow steps applied right after an upload, keyed by the submit button.
UPLOAD_ACTIONS = {
    "draft": (),
    "submit": PUBLISH_PATH[:1],
    "publish": PUBLISH_PATH,
}


def _form_int(name):
    value = request.form.get(name)
    if value in (None, ""):
        return None
    return int(value)


def _form_date(name):
    value = request.form.get(name)
    if value in (None, ""):
        return None
    return date.fromisoformat(value)


def _form_flag(name):
    return request.form.get(name) in ("1", "on", "true", "yes")


def _upload_context(db, form=None, errors=None):
    return {
        "categories": (
            db.query(Category)
            .options(joinedload(Category.children))
            .filter(Category.parent_id.is_(None))
            .order_by(Category.sort_order)
            .all()
        ),
        "business_units": db.query(BusinessUnit).order_by(BusinessUnit.name).all(),
        "tags": db.query(Tag).order_by(Tag.label).all(),
        "reviewers": (
            db.query(User)
            .filter(User.status == UserStatus.ACTIVE.value)
            .order_by(User.name)
            .all()
        ),
        "content_types": [c.value for c in ContentType],
        "form": form or {},
        "errors": errors or {},
    }


@admin_bp.route("/")
@permission_required(Permission.UPLOAD, Permission.MANAGE_USERS, redirect_to="public.home")
def dashboard():
    today = date.today()
    db = get_session()
    try:
        counts = dict(
            db.query(Document.status, func.count(Document.id)).group_by(Document.status).all()
        )
        overdue = (
            db.query(func.count(Document.id))
            .filter(
                Document.status == DocumentStatus.PUBLISHED.value,
                Document.review_due < today,
            )
            .scalar()
        )
        stats = {
            "total": sum(counts.values()),
            "published": counts.get(DocumentStatus.PUBLISHED.value, 0),
            "pending_review": counts.get(DocumentStatus.PENDING_REVIEW.value, 0),
            "overdue": overdue,
        }
        scope = None if g.permissions.allows(Permission.MANAGE_USERS) else g.user.id
        review_docs = get_documents_requiring_review(db, user_id=scope, today=today)
        recent = (
            db.query(Document)
            .options(joinedload(Document.category), joinedload(Document.owner))
            .order_by(Document.created_at.desc(), Document.id.desc())
            .limit(10)
            .all()
        )
        return render_template(
            "admin/dashboard.html",
            stats=stats,
            review_docs=review_docs,
            recent=recent,
            today=today,
        )
    finally:
        db.close()


@admin_bp.route("/upload", methods=["GET", "POST"])
@permission_required(Permission.UPLOAD, redirect_to="admin.dashboard")
def upload():
    db = get_session()
    try:
        if request.method == "GET":
            return render_template("admin/upload.html", **_upload_context(db))

        form = request.form.to_dict()
        errors = {}
        title = (form.get("title") or "").strip()
        uploaded = request.files.get("file")
        action = form.get("action") or "draft"

        if not title:
            errors["title"] = "Title is required"
        if not (uploaded and uploaded.filename):
            errors["file"] = "File is required"
        if action not in UPLOAD_ACTIONS:
            errors["action"] = "Unknown action"
        try:
            category_id = _form_int("category_id")
            subcategory_id = _form_int("subcategory_id")
            business_unit_id = _form_int("business_unit_id")
            reviewer_id = _form_int("reviewer_id")
            tag_ids = [
                int(t)
                for t in request.form.getlist("tags") + request.form.getlist("tags[]")
                if t
            ]
        except ValueError:
            errors["form"] = "Malformed identifier"
            category_id = subcategory_id = business_unit_id = reviewer_id = None
            tag_ids = []
        try:
            effective_date = _form_date("effective_date")
            review_due = _form_date("review_due")
        except ValueError:
            errors["effective_date"] = "Dates must use YYYY-MM-DD"
            effective_date = None
        if title and not generate_slug(title):
            errors["title"] = "Title must contain letters or digits"
        if category_id is None:
            errors.setdefault("category_id", "Category is required")
        elif db.get(Category, category_id) is None:
            errors["category_id"] = "Unknown category"
        if subcategory_id is not None:
            sub = db.get(Category, subcategory_id)
            if sub is None or sub.parent_id is None or sub.parent_id != category_id:
                errors["subcategory_id"] = "Unknown subcategory for this category"
        if business_unit_id is not None and db.get(BusinessUnit, business_unit_id) is None:
            errors["business_unit_id"] = "Unknown business unit"
        if reviewer_id is not None:
            reviewer = db.get(User, reviewer_id)
            if reviewer is None or reviewer.status != UserStatus.ACTIVE.value:
                errors["reviewer_id"] = "Unknown reviewer"
        tags = db.query(Tag).filter(Tag.id.in_(tag_ids)).all() if tag_ids else []
        if len(tags) != len(set(tag_ids)):
            errors["tags"] = "Unknown tag"
        if effective_date is None:
            errors.setdefault("effective_date", "Effective date is required")

        content_type = form.get("content_type") or None
        if content_type is not None and content_type not in {c.value for c in ContentType}:
            errors["content_type"] = "Unknown content type"

        if errors:
            return render_template(
                "admin/upload.html", **_upload_context(db, form=form, errors=errors)
            ), 400

        steps = UPLOAD_ACTIONS[action]
        missing = [p for p in required_permissions(steps) if not g.permissions.allows(p)]
        if missing:
            logger.warning(
                "Upload action %s denied for user %s: missing %s",
                action,
                g.user.id,
                [p.value for p in missing],
            )
            abort(403)

        data = uploaded.read()
        doc = Document(
            title=title,
            slug=ensure_unique_slug(db, generate_slug(title)),
            summary=(form.get("summary") or "").strip() or None,
            content_type=content_type or auto_classify_content_type(title),
            status=DocumentStatus.DRAFT.value,
            owner_id=g.user.id,
            reviewer_id=reviewer_id,
            effective_date=effective_date,
            review_due=review_due or default_review_due(effective_date),
            category_id=category_id,
            subcategory_id=subcategory_id,
            business_unit_id=business_unit_id,
            external_reference=form.get("external_reference") or None,
            jurisdiction=form.get("jurisdiction") or None,
            standard_alignment=form.get("standard_alignment") or None,
            download_allowed=_form_flag("download_allowed") if "download_allowed" in form else True,
            public_access=_form_flag("public_access"),
        )
        if tags:
            doc.tags = tags
        db.add(doc)
        db.flush()
        version = add_version(
            db,
            doc,
            data,
            uploaded.filename,
            uploaded.mimetype,
            g.user.id,
            change_reason=form.get("change_reason") or "Initial upload",
            commit=False,
        )
        file_key = version.file_key
        # Document, first version and workflow steps commit together.
        try:
            for step in steps:
                transition(db, doc, step, g.user.id)
            db.commit()
        except (WorkflowError, SQLAlchemyError):
            db.rollback()
            storage.storage_client.delete(file_key)
            raise
        logger.info("User %s uploaded document %s (%s)", g.user.id, doc.id, doc.slug)
        return redirect(url_for("public.document_detail", slug=doc.slug))
    finally:
        db.close()


@admin_bp.route("/approvals")
@permission_required(Permission.APPROVE, redirect_to="admin.dashboard")
def approvals():
    db = get_session()
    try:
        pending = (
            db.query(Document)
            .options(joinedload(Document.category), joinedload(Document.owner))
            .filter(Document.status == DocumentStatus.PENDING_REVIEW.value)
            .order_by(Document.updated_at.desc())
            .all()
        )
        return render_template("admin/approvals.html", documents=pending)
    finally:
        db.close()


@admin_bp.post("/documents/<int:doc_id>/transition")
@login_required
def document_transition(doc_id):
    action = request.form.get("action", "")
    rule = get_transition(action)
    if not g.permissions.allows(rule.permission):
        logger.warning(
            "Transition %s on document %s denied for user %s", action, doc_id, g.user.id
        )
        return redirect(url_for("admin.dashboard"))

    db = get_session()
    try:
        doc = db.get(Document, doc_id)
        if doc is None:
            abort(404)
        try:
            transition(db, doc, action, g.user.id)
        except WorkflowError:
            db.rollback()
            raise
        db.commit()
        slug = doc.slug
    finally:
        db.close()

    target = request.form.get("next")
    if target and target.startswith("/") and not target.startswith("//"):
        return redirect(target)
    return redirect(url_for("public.document_detail", slug=slug))


@admin_bp.post("/documents/<int:doc_id>/versions")
@permission_required(Permission.REPLACE_FILES, redirect_to="admin.dashboard")
def upload_version(doc_id):
    uploaded = request.files.get("file")
    if not (uploaded and uploaded.filename):
        abort(400, description="File is required")
    db = get_session()
    try:
        doc = db.get(Document, doc_id)
        if doc is None:
            abort(404)
        version = add_version(
            db,
            doc,
            uploaded.read(),
            uploaded.filename,
            uploaded.mimetype,
            g.user.id,
            change_reason=request.form.get("change_reason") or None,
        )
        logger.info(
            "User %s uploaded version %s of document %s",
            g.user.id,
            version.version_number,
            doc_id,
        )
        slug = doc.slug
    finally:
        db.close()
    return redirect(url_for("public.document_detail", slug=slug))


@admin_bp.route("/users")
@permission_required(Permission.MANAGE_USERS, redirect_to="admin.dashboard")
def users():
    db = get_session()
    try:
        rows = (
            db.query(User)
            .options(joinedload(User.role_links).joinedload(UserRole.role))
            .order_by(User.name)
            .all()
        )
        roles = db.query(Role).order_by(Role.id).all()
        return render_template(
            "admin/users.html",
            users=rows,
            roles=roles,
            statuses=[s.value for s in UserStatus],
        )
    finally:
        db.close()


@admin_bp.post("/users/<int:user_id>/roles")
@permission_required(Permission.MANAGE_ROLES, redirect_to="admin.dashboard")
def assign_roles(user_id):
    """Replace the user's role assignments with the submitted role ids."""
    try:
        role_ids = {int(r) for r in request.form.getlist("role_ids") if r}
    except ValueError:
        abort(400, description="Malformed role id")

    db = get_session()
    try:
        user = db.get(User, user_id)
        if user is None:
            abort(404)
        roles = db.query(Role).filter(Role.id.in_(role_ids)).all() if role_ids else []
        if len(roles) != len(role_ids):
            abort(400, description="Unknown role")

        current = {link.role_id for link in user.role_links}
        wanted = {role.id for role in roles}
        for link in list(user.role_links):
            if link.role_id not in wanted:
                db.delete(link)
        for role_id in wanted - current:
            db.add(UserRole(user_id=user.id, role_id=role_id, assigned_by=g.user.id))
        log_action(
            g.user.id,
            "assign_roles",
            "user",
            user.id,
            changes={
                "added": sorted(wanted - current),
                "removed": sorted(current - wanted),
            },
            connection=db.connection(),
        )
        db.commit()
    finally:
        db.close()
    return redirect(url_for("admin.users"))


@admin_bp.post("/users/<int:user_id>/status")
@permission_required(Permission.MANAGE_USERS, redirect_to="admin.dashboard")
def set_user_status(user_id):
    """Activate, deactivate or suspend an account.

    Leaving the active state ends every open session of the user.
    """
    status = request.form.get("status", "")
    if status not in {s.value for s in UserStatus}:
        abort(400, description="Unknown status")
    if user_id == g.user.id:
        abort(400, description="You cannot change your own status")

    db = get_session()
    try:
        user = db.get(User, user_id)
        if user is None:
            abort(404)
        previous = user.status
        user.status = status
        if status != UserStatus.ACTIVE.value:
            db.query(Session).filter(Session.user_id == user.id).delete(
                synchronize_session=False
            )
        log_action(
            g.user.id,
            "set_status",
            "user",
            user.id,
            changes={"from": previous, "to": status},
            connection=db.connection(),
        )
        db.commit()
    finally:
        db.close()
    return redirect(url_for("admin.users"))
