"""Reader facing pages: browsing, document detail, downloads and bookmarks."""

import io
import logging

from flask import (
    Blueprint,
    abort,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
    url_for,
)
from sqlalchemy import func
from sqlalchemy.orm import joinedload

from policywiki.audit import log_action
from policywiki.auth import login_required, permission_required, wants_json
from policywiki.documents import (
    get_current_version,
    get_document_by_slug,
    get_document_versions,
    get_related_documents,
)
from policywiki.models import (
    Bookmark,
    Category,
    Document,
    DocumentStatus,
    DocumentView,
    Tag,
    document_tags,
    get_session,
)
from policywiki.permissions import Permission, current_permissions
from policywiki.search import SearchOptions, search_documents
from policywiki import storage
from policywiki.workflow import available_actions, is_review_due_soon

logger = logging.getLogger(__name__)

public_bp = Blueprint("public", __name__)

LISTING_LIMIT = 50
RECENT_LIMIT = 20


def _can_view(doc: Document) -> bool:
    if doc.status == DocumentStatus.PUBLISHED.value:
        return True
    return current_permissions().allows(Permission.READ_DRAFT)


def _published(**kwargs) -> SearchOptions:
    return SearchOptions(status=DocumentStatus.PUBLISHED.value, **kwargs)


@public_bp.route("/")
def home():
    db = get_session()
    try:
        categories = (
            db.query(Category)
            .filter(Category.parent_id.is_(None))
            .order_by(Category.sort_order, Category.name)
            .all()
        )
        recent = search_documents(db, _published(sort_by="relevance", limit=5)).documents
        return render_template("home.html", categories=categories, recent=recent)
    finally:
        db.close()


@public_bp.route("/categories/<slug>")
def category(slug):
    db = get_session()
    try:
        cat = (
            db.query(Category)
            .filter(Category.slug == slug, Category.parent_id.is_(None))
            .one_or_none()
        )
        if cat is None:
            abort(404)
        result = search_documents(db, _published(category=cat.id, limit=LISTING_LIMIT))
        return render_template(
            "category.html",
            category=cat,
            parent=None,
            subcategories=cat.children,
            documents=result.documents,
            total=result.total,
        )
    finally:
        db.close()


@public_bp.route("/categories/<slug>/<subslug>")
def subcategory(slug, subslug):
    db = get_session()
    try:
        parent = (
            db.query(Category)
            .filter(Category.slug == slug, Category.parent_id.is_(None))
            .one_or_none()
        )
        if parent is None:
            abort(404)
        sub = (
            db.query(Category)
            .filter(Category.slug == subslug, Category.parent_id == parent.id)
            .one_or_none()
        )
        if sub is None:
            abort(404)
        query = (
            db.query(Document)
            .options(joinedload(Document.category), joinedload(Document.owner))
            .filter(
                Document.subcategory_id == sub.id,
                Document.status == DocumentStatus.PUBLISHED.value,
            )
            .order_by(Document.title)
        )
        documents = query.limit(LISTING_LIMIT).all()
        return render_template(
            "category.html",
            category=sub,
            parent=parent,
            subcategories=[],
            documents=documents,
            total=len(documents),
        )
    finally:
        db.close()


@public_bp.route("/documents/<slug>")
def document_detail(slug):
    db = get_session()
    try:
        doc = get_document_by_slug(db, slug)
        if doc is None or not _can_view(doc):
            abort(404)

        user = g.get("user")
        bookmarked = False
        if user is not None:
            db.add(
                DocumentView(
                    document_id=doc.id,
                    user_id=user.id,
                    session_id=g.get("session_id"),
                )
            )
            db.commit()
            bookmarked = (
                db.query(Bookmark)
                .filter_by(user_id=user.id, document_id=doc.id)
                .first()
                is not None
            )

        review_due_soon, days_until_review = is_review_due_soon(doc.review_due)
        return render_template(
            "document_detail.html",
            doc=doc,
            current_version=get_current_version(db, doc.id),
            versions=get_document_versions(db, doc.id),
            related=get_related_documents(db, doc.id),
            bookmarked=bookmarked,
            actions=available_actions(doc.status, g.permissions) if user is not None else [],
            review_due_soon=review_due_soon,
            days_until_review=days_until_review,
        )
    finally:
        db.close()


@public_bp.route("/documents/<slug>/download")
def download(slug):
    """Send the current version of a document to the browser.

    S3 backends redirect to a presigned URL; the filesystem backend streams
    the bytes so the permission check cannot be bypassed.
    """
    db = get_session()
    try:
        doc = get_document_by_slug(db, slug)
        if doc is None or not _can_view(doc):
            abort(404)
        if not doc.download_allowed:
            abort(403)
        user = g.get("user")
        if user is None:
            if not doc.public_access:
                return redirect(url_for("auth.login", next=request.path))
        elif not g.permissions.allows(Permission.DOWNLOAD_ALLOWED):
            abort(403)

        version = get_current_version(db, doc.id)
        if version is None:
            abort(404)
        file_key = version.file_key
        filename = file_key.rsplit("/", 1)[-1]
        mime_type = doc.mime_type or "application/octet-stream"
        doc_id = doc.id
        version_number = version.version_number
    finally:
        db.close()

    log_action(
        user.id if user is not None else None,
        "download",
        "document",
        doc_id,
        changes={"version": version_number},
    )

    if isinstance(storage.storage_client, storage.FSBackend):
        data = storage.storage_client.get(file_key)
        if data is None:
            logger.error("Stored file missing for key %s", file_key)
            abort(404)
        return send_file(
            io.BytesIO(data),
            mimetype=mime_type,
            as_attachment=True,
            download_name=filename,
        )
    url = storage.storage_client.generate_presigned_url(file_key, filename=filename)
    if not url:
        abort(404)
    return redirect(url)


@public_bp.post("/documents/<slug>/bookmark")
@permission_required(Permission.CREATE_BOOKMARKS)
def toggle_bookmark(slug):
    """Add the bookmark when missing, remove it otherwise."""
    db = get_session()
    try:
        doc = get_document_by_slug(db, slug)
        if doc is None or not _can_view(doc):
            abort(404)
        existing = (
            db.query(Bookmark).filter_by(user_id=g.user.id, document_id=doc.id).first()
        )
        if existing is not None:
            db.delete(existing)
            bookmarked = False
        else:
            db.add(Bookmark(user_id=g.user.id, document_id=doc.id))
            bookmarked = True
        db.commit()
    finally:
        db.close()

    if wants_json():
        return jsonify(bookmarked=bookmarked)
    return redirect(url_for("public.document_detail", slug=slug))


@public_bp.route("/search")
def search():
    query = (request.args.get("q") or "").strip()
    if not query:
        return render_template("search.html", query="", documents=[], total=0)
    try:
        options = SearchOptions.from_args(request.args)
    except ValueError as exc:
        abort(400, description=str(exc))
    options.status = DocumentStatus.PUBLISHED.value
    if "limit" not in request.args:
        options.limit = LISTING_LIMIT

    db = get_session()
    try:
        result = search_documents(db, options)
        return render_template(
            "search.html", query=query, documents=result.documents, total=result.total
        )
    finally:
        db.close()


@public_bp.route("/recent")
def recent():
    db = get_session()
    try:
        documents = search_documents(db, _published(sort_by="date", limit=RECENT_LIMIT)).documents
        return render_template("recent.html", documents=documents)
    finally:
        db.close()


@public_bp.route("/bookmarks")
@login_required
def bookmarks():
    db = get_session()
    try:
        documents = (
            db.query(Document)
            .options(joinedload(Document.category), joinedload(Document.owner))
            .join(Bookmark, Bookmark.document_id == Document.id)
            .filter(Bookmark.user_id == g.user.id)
            .order_by(Bookmark.created_at.desc())
            .all()
        )
        return render_template("bookmarks.html", documents=documents)
    finally:
        db.close()


@public_bp.route("/tags/<slug>")
def tag(slug):
    db = get_session()
    try:
        tag_row = db.query(Tag).filter_by(slug=slug).one_or_none()
        if tag_row is None:
            abort(404)
        documents = (
            db.query(Document)
            .options(joinedload(Document.category), joinedload(Document.owner))
            .join(document_tags, document_tags.c.document_id == Document.id)
            .filter(
                document_tags.c.tag_id == tag_row.id,
                Document.status == DocumentStatus.PUBLISHED.value,
            )
            .order_by(Document.updated_at.desc())
            .all()
        )
        popular = (
            db.query(Tag, func.count(document_tags.c.document_id))
            .join(document_tags, document_tags.c.tag_id == Tag.id)
            .group_by(Tag.id)
            .order_by(func.count(document_tags.c.document_id).desc())
            .limit(10)
            .all()
        )
        return render_template("tag.html", tag=tag_row, documents=documents, popular=popular)
    finally:
        db.close()
