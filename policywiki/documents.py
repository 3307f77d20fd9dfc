"""Helpers around documents: slugs, file handling, versions and lookups."""

from __future__ import annotations

import hashlib
import logging
import re

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

from policywiki.audit import log_action
from policywiki.models import (
    ContentType,
    Document,
    DocumentVersion,
    FileType,
    RelatedDocument,
)
from policywiki import storage

logger = logging.getLogger(__name__)

# ASCII word characters only; slugs end up in URLs.
_NON_WORD = re.compile(r"[^A-Za-z0-9_\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")

# Text-like uploads whose bytes are copied into ``search_content``.
_TEXT_FILE_TYPES = {FileType.TEXT.value, FileType.MARKDOWN.value, FileType.HTML.value}
_HTML_TAG = re.compile(r"<[^>]+>")


def generate_slug(title: str) -> str:
    slug = _NON_WORD.sub("", title.lower())
    slug = _WHITESPACE.sub("-", slug)
    slug = _HYPHENS.sub("-", slug)
    return slug.strip().strip("-")


def ensure_unique_slug(db, base_slug: str, document_id: int | None = None, model=Document) -> str:
    """Return ``base_slug`` or the first free ``base_slug-N``.

    ``document_id`` excludes the row being edited so re-saving a document
    keeps its slug.  Works for any model with ``slug`` and ``id`` columns.
    """
    slug = base_slug
    counter = 1
    while True:
        query = db.query(model.id).filter(model.slug == slug)
        if document_id is not None:
            query = query.filter(model.id != document_id)
        if query.first() is None:
            return slug
        slug = f"{base_slug}-{counter}"
        counter += 1


def detect_file_type(mime_type: str | None) -> str:
    mime = (mime_type or "").lower()
    if "pdf" in mime:
        return FileType.PDF.value
    if "wordprocessingml" in mime or "msword" in mime:
        return FileType.DOCX.value
    if "spreadsheetml" in mime or "excel" in mime:
        return FileType.XLSX.value
    if "csv" in mime:
        return FileType.CSV.value
    if "presentationml" in mime or "powerpoint" in mime:
        return FileType.PPTX.value
    if "html" in mime:
        return FileType.HTML.value
    if "markdown" in mime:
        return FileType.MARKDOWN.value
    if "image" in mime:
        return FileType.IMAGE.value
    return FileType.TEXT.value


_CLASSIFY_RULES = (
    (("policy",), ContentType.POLICY),
    (("procedure", "sop"), ContentType.PROCEDURE),
    (("work instruction",), ContentType.WORK_INSTRUCTION),
    (("form", "template"), ContentType.FORM),
    (("guideline", "guide"), ContentType.GUIDELINE),
    (("register", "log"), ContentType.REGISTER),
    (("checklist",), ContentType.CHECKLIST),
    (("faq",), ContentType.FAQ),
)


def auto_classify_content_type(title: str, content: str | None = None) -> str:
    """Guess a content type from keywords in the title.

    Falls back to ``policy`` when nothing matches.
    """
    title_lower = title.lower()
    if "policy statement" in f"{title_lower} {content or ''}".lower():
        return ContentType.POLICY.value
    for keywords, content_type in _CLASSIFY_RULES:
        if any(k in title_lower for k in keywords):
            return content_type.value
    return ContentType.POLICY.value


def extract_search_content(data: bytes, file_type: str) -> str:
    """Plain text for the ``search_content`` column.

    Only text, markdown and HTML uploads are read; binary formats yield an
    empty string.
    """
    if file_type not in _TEXT_FILE_TYPES:
        return ""
    text = data.decode("utf-8", errors="replace")
    if file_type == FileType.HTML.value:
        text = _HTML_TAG.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def calculate_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def add_version(
    db,
    document: Document,
    data: bytes,
    filename: str,
    mime_type: str | None,
    uploader_id: int,
    change_reason: str | None = None,
    commit: bool = True,
) -> DocumentVersion:
    """Store ``data`` as the new current version of ``document``.

    The object is written first; clearing the old current flag and inserting
    the new row are committed together.  If the commit fails the stored
    object is removed again and the error propagates.

    With ``commit=False`` the rows are only flushed and the caller owns the
    transaction, including removing the object if it rolls back.
    """
    if document.id is None:
        db.flush()
    last = (
        db.query(func.max(DocumentVersion.version_number))
        .filter(DocumentVersion.document_id == document.id)
        .scalar()
    )
    version_number = (last or 0) + 1
    key = storage.document_key(document.id, version_number, filename)
    storage.storage_client.put(key, data, content_type=mime_type)

    try:
        db.query(DocumentVersion).filter(
            DocumentVersion.document_id == document.id,
            DocumentVersion.is_current.is_(True),
        ).update({"is_current": False}, synchronize_session=False)
        version = DocumentVersion(
            document_id=document.id,
            version_number=version_number,
            file_key=key,
            file_size=len(data),
            checksum=calculate_checksum(data),
            uploader_id=uploader_id,
            change_reason=change_reason,
            is_current=True,
        )
        db.add(version)
        file_type = detect_file_type(mime_type)
        document.file_type = file_type
        document.mime_type = mime_type
        content = extract_search_content(data, file_type)
        if content:
            document.search_content = content
        db.flush()
        log_action(
            uploader_id,
            "upload_version",
            "document",
            document.id,
            changes={"version": version_number, "file_key": key, "checksum": version.checksum},
            connection=db.connection(),
        )
        if commit:
            db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record version %s of document %s", version_number, document.id)
        storage.storage_client.delete(key)
        raise

    logger.info("Stored version %s of document %s at %s", version_number, document.id, key)
    return version


def get_document_by_slug(db, slug: str) -> Document | None:
    return (
        db.query(Document)
        .options(
            joinedload(Document.category),
            joinedload(Document.subcategory),
            joinedload(Document.business_unit),
            joinedload(Document.owner),
            joinedload(Document.tags),
        )
        .filter(Document.slug == slug)
        .one_or_none()
    )


def get_current_version(db, document_id: int) -> DocumentVersion | None:
    return (
        db.query(DocumentVersion)
        .filter(
            DocumentVersion.document_id == document_id,
            DocumentVersion.is_current.is_(True),
        )
        .one_or_none()
    )


def get_document_versions(db, document_id: int) -> list[DocumentVersion]:
    return (
        db.query(DocumentVersion)
        .options(joinedload(DocumentVersion.uploader))
        .filter(DocumentVersion.document_id == document_id)
        .order_by(DocumentVersion.version_number.desc())
        .all()
    )


def get_related_documents(db, document_id: int) -> list[tuple[Document, str]]:
    rows = (
        db.query(Document, RelatedDocument.relationship_type)
        .join(RelatedDocument, RelatedDocument.related_document_id == Document.id)
        .filter(RelatedDocument.document_id == document_id)
        .order_by(Document.title)
        .all()
    )
    return [(doc, rel_type) for doc, rel_type in rows]
