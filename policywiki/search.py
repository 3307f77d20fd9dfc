"""Document search.

Search is deliberately simple: free text is a case-insensitive substring
match on title, summary and the extracted ``search_content``; every other
option is an equality or range filter.  There is no ranking, so the
``relevance`` sort falls back to most recently updated first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import NamedTuple

from sqlalchemy import or_, select
from sqlalchemy.orm import joinedload

from policywiki.models import Document, DocumentStatus, document_tags

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
SORT_KEYS = ("relevance", "date", "title")


@dataclass
class SearchOptions:
    query: str | None = None
    content_type: str | None = None
    category: int | None = None
    business_unit: int | None = None
    status: str | None = None
    owner: int | None = None
    tags: list[int] = field(default_factory=list)
    from_date: date | None = None
    to_date: date | None = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    sort_by: str = "relevance"
    include_archived: bool = False

    @classmethod
    def from_args(cls, args, **overrides) -> "SearchOptions":
        """Build options from request query arguments.

        Raises ``ValueError`` for malformed numbers, dates or enum values.
        """

        def _int(name):
            value = args.get(name)
            if value in (None, ""):
                return None
            return int(value)

        def _date(name):
            value = args.get(name)
            if value in (None, ""):
                return None
            return date.fromisoformat(value)

        tags = []
        for raw in args.getlist("tags") if hasattr(args, "getlist") else []:
            tags.extend(int(t) for t in str(raw).split(",") if t.strip())

        options = cls(
            query=(args.get("q") or "").strip() or None,
            content_type=args.get("type") or None,
            category=_int("category"),
            business_unit=_int("business_unit"),
            status=args.get("status") or None,
            owner=_int("owner"),
            tags=tags,
            from_date=_date("from"),
            to_date=_date("to"),
            limit=_int("limit") or DEFAULT_LIMIT,
            offset=_int("offset") or 0,
            sort_by=args.get("sort") or "relevance",
            include_archived=args.get("include_archived") in ("1", "true", "yes"),
        )
        for key, value in overrides.items():
            if getattr(options, key) is None:
                setattr(options, key, value)
        options.validate()
        return options

    def validate(self) -> None:
        if self.status is not None:
            DocumentStatus(self.status)
        if self.sort_by not in SORT_KEYS:
            raise ValueError(f"Invalid sort key: {self.sort_by}")
        if self.limit < 1 or self.offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        self.limit = min(self.limit, MAX_LIMIT)


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SearchResult(NamedTuple):
    documents: list
    total: int


def build_query(db, options: SearchOptions):
    query = db.query(Document)

    if options.query:
        pattern = f"%{escape_like(options.query)}%"
        query = query.filter(
            or_(
                Document.title.ilike(pattern, escape="\\"),
                Document.summary.ilike(pattern, escape="\\"),
                Document.search_content.ilike(pattern, escape="\\"),
            )
        )
    if options.content_type:
        query = query.filter(Document.content_type == options.content_type)
    if options.category:
        query = query.filter(Document.category_id == options.category)
    if options.business_unit:
        query = query.filter(Document.business_unit_id == options.business_unit)

    if options.status:
        query = query.filter(Document.status == options.status)
    elif not options.include_archived:
        query = query.filter(Document.status != DocumentStatus.ARCHIVED.value)

    if options.owner:
        query = query.filter(Document.owner_id == options.owner)
    if options.from_date:
        query = query.filter(Document.effective_date >= options.from_date)
    if options.to_date:
        query = query.filter(Document.effective_date <= options.to_date)
    if options.tags:
        tagged = select(document_tags.c.document_id).where(
            document_tags.c.tag_id.in_(options.tags)
        )
        query = query.filter(Document.id.in_(tagged))
    return query


def _order(query, sort_by: str):
    if sort_by == "title":
        return query.order_by(Document.title.asc(), Document.id.asc())
    if sort_by == "date":
        return query.order_by(Document.effective_date.desc(), Document.id.desc())
    return query.order_by(Document.updated_at.desc(), Document.id.desc())


def search_documents(db, options: SearchOptions) -> SearchResult:
    query = build_query(db, options)
    total = query.count()
    documents = (
        _order(query, options.sort_by)
        .options(joinedload(Document.category), joinedload(Document.owner))
        .limit(options.limit)
        .offset(options.offset)
        .all()
    )
    return SearchResult(documents, total)


def document_summary(doc: Document) -> dict:
    """JSON representation used by the search API."""
    return {
        "id": doc.id,
        "title": doc.title,
        "slug": doc.slug,
        "summary": doc.summary,
        "content_type": doc.content_type,
        "status": doc.status,
        "file_type": doc.file_type,
        "effective_date": doc.effective_date.isoformat() if doc.effective_date else None,
        "review_due": doc.review_due.isoformat() if doc.review_due else None,
        "category_name": doc.category.name if doc.category else None,
        "category_slug": doc.category.slug if doc.category else None,
        "owner_name": doc.owner.name if doc.owner else None,
        "updated_at": doc.updated_at.isoformat() if doc.updated_at else None,
    }
