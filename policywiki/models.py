import os
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    ForeignKey,
    DateTime,
    Date,
    JSON,
    Enum,
    UniqueConstraint,
    Boolean,
    Table,
    Index,
    event,
    inspect,
)
from sqlalchemy.orm import (
    declarative_base,
    relationship,
    sessionmaker,
    scoped_session,
)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///policywiki.db")

engine = create_engine(DATABASE_URL)
SessionLocal = scoped_session(sessionmaker(bind=engine))
Base = declarative_base()


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on
    # for every new connection.
    if engine.dialect.name != "sqlite":
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RoleEnum(PyEnum):
    READER = "reader"
    CONTRIBUTOR = "contributor"
    APPROVER = "approver"
    ADMINISTRATOR = "administrator"
    SYSTEM_OWNER = "system_owner"


class UserStatus(PyEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class DocumentStatus(PyEnum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    EXPIRED = "expired"


class ContentType(PyEnum):
    POLICY = "policy"
    PROCEDURE = "procedure"
    WORK_INSTRUCTION = "work_instruction"
    FORM = "form"
    TEMPLATE = "template"
    GUIDELINE = "guideline"
    REGISTER = "register"
    CHECKLIST = "checklist"
    FAQ = "faq"


class FileType(PyEnum):
    PDF = "pdf"
    DOCX = "docx"
    XLSX = "xlsx"
    CSV = "csv"
    PPTX = "pptx"
    HTML = "html"
    MARKDOWN = "markdown"
    IMAGE = "image"
    TEXT = "text"


class RelationshipType(PyEnum):
    RELATED = "related"
    SUPERSEDES = "supersedes"
    SUPERSEDED_BY = "superseded_by"
    REFERENCED_IN = "referenced_in"


def _values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    role_id = Column(
        Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True
    )
    assigned_at = Column(DateTime, default=utcnow, nullable=False)
    assigned_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))

    user = relationship("User", foreign_keys=[user_id], back_populates="role_links")
    role = relationship("Role", back_populates="user_links")
    assigner = relationship("User", foreign_keys=[assigned_by])


class Role(Base):
    __tablename__ = "roles"
    id = Column(Integer, primary_key=True)
    name = Column(Enum(*_values(RoleEnum), name="role_name", native_enum=False), unique=True, nullable=False)
    description = Column(String)
    # JSON array of permission strings, interpreted at read time.
    permissions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user_links = relationship(
        UserRole, back_populates="role", cascade="all, delete-orphan", passive_deletes=True
    )


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    status = Column(
        Enum(*_values(UserStatus), name="user_status", native_enum=False),
        default=UserStatus.ACTIVE.value,
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login_at = Column(DateTime)

    role_links = relationship(
        UserRole,
        foreign_keys=[UserRole.user_id],
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    sessions = relationship(
        "Session", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    bookmarks = relationship(
        "Bookmark", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def roles(self) -> list[Role]:
        return [link.role for link in self.role_links]

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value


class Category(Base):
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), index=True)
    description = Column(Text)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    parent = relationship("Category", remote_side=[id], back_populates="children")
    children = relationship(
        "Category",
        back_populates="parent",
        order_by="Category.sort_order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class BusinessUnit(Base):
    __tablename__ = "business_units"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    slug = Column(String, unique=True, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Tag(Base):
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True)
    label = Column(String, unique=True, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False)
    color = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)


document_tags = Table(
    "document_tags",
    Base.metadata,
    Column("document_id", ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("created_at", DateTime, default=utcnow),
)


class Document(Base):
    __tablename__ = "documents"
    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    summary = Column(Text)
    content_type = Column(
        Enum(*_values(ContentType), name="content_type", native_enum=False),
        nullable=False,
        index=True,
    )
    status = Column(
        Enum(*_values(DocumentStatus), name="document_status", native_enum=False),
        default=DocumentStatus.DRAFT.value,
        nullable=False,
        index=True,
    )
    file_type = Column(
        Enum(*_values(FileType), name="file_type", native_enum=False),
        default=FileType.TEXT.value,
        nullable=False,
    )
    mime_type = Column(String)

    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"))
    approver_id = Column(Integer, ForeignKey("users.id"))

    effective_date = Column(Date, nullable=False, index=True)
    review_due = Column(Date, nullable=False, index=True)
    published_at = Column(DateTime)
    archived_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    subcategory_id = Column(Integer, ForeignKey("categories.id"))
    business_unit_id = Column(Integer, ForeignKey("business_units.id"), index=True)

    external_reference = Column(String)
    jurisdiction = Column(String)
    standard_alignment = Column(String)

    download_allowed = Column(Boolean, default=True, nullable=False)
    public_access = Column(Boolean, default=False, nullable=False)

    search_content = Column(Text)

    owner = relationship("User", foreign_keys=[owner_id])
    reviewer = relationship("User", foreign_keys=[reviewer_id])
    approver = relationship("User", foreign_keys=[approver_id])
    category = relationship("Category", foreign_keys=[category_id])
    subcategory = relationship("Category", foreign_keys=[subcategory_id])
    business_unit = relationship("BusinessUnit")
    tags = relationship(Tag, secondary=document_tags, order_by=Tag.label)


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    id = Column(Integer, primary_key=True)
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_number = Column(Integer, nullable=False)
    file_key = Column(String, nullable=False)
    file_size = Column(Integer)
    checksum = Column(String, nullable=False)
    uploader_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    change_reason = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    is_current = Column(Boolean, default=False, nullable=False)

    document = relationship(Document, back_populates="versions")
    uploader = relationship("User")

    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version"),
        Index("idx_versions_current", "document_id", "is_current"),
    )


class RelatedDocument(Base):
    __tablename__ = "related_documents"
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    related_document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    relationship_type = Column(
        Enum(*_values(RelationshipType), name="relationship_type", native_enum=False),
        default=RelationshipType.RELATED.value,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)

    document = relationship(Document, foreign_keys=[document_id])
    related = relationship(Document, foreign_keys=[related_document_id])


class Session(Base):
    __tablename__ = "sessions"
    id = Column(String(64), primary_key=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_activity = Column(DateTime, default=utcnow, nullable=False)

    user = relationship(User, back_populates="sessions")


class Bookmark(Base):
    __tablename__ = "bookmarks"
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship(User, back_populates="bookmarks")
    document = relationship(Document)


class DocumentView(Base):
    __tablename__ = "document_views"
    id = Column(Integer, primary_key=True)
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    session_id = Column(String(64))
    viewed_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    action = Column(String, nullable=False)
    object_type = Column(String, nullable=False)
    object_id = Column(Integer)
    changes = Column(JSON)
    ip_address = Column(String)
    user_agent = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    actor = relationship("User")

    __table_args__ = (Index("idx_audit_object", "object_type", "object_id"),)


# establish relationships defined after class declarations
Document.versions = relationship(
    DocumentVersion,
    back_populates="document",
    order_by=DocumentVersion.version_number.desc(),
    cascade="all, delete-orphan",
    passive_deletes=True,
)
Document.related_links = relationship(
    RelatedDocument,
    foreign_keys=[RelatedDocument.document_id],
    cascade="all, delete-orphan",
    passive_deletes=True,
    overlaps="document",
)
Document.bookmarks = relationship(
    Bookmark, cascade="all, delete-orphan", passive_deletes=True, overlaps="document"
)


_AUDIT_SKIP_FIELDS = {"id", "created_at", "updated_at", "search_content"}


def _capture_changes(target):
    state = inspect(target)
    changes: dict[str, dict[str, object]] = {}
    for attr in state.mapper.column_attrs:
        if attr.key in _AUDIT_SKIP_FIELDS:
            continue
        hist = state.get_history(attr.key, True)
        if hist.has_changes():
            old = hist.deleted[0] if hist.deleted else None
            new = hist.added[0] if hist.added else None
            changes[attr.key] = {"old": _jsonable(old), "new": _jsonable(new)}
    return changes


def _jsonable(value):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


@event.listens_for(Document, "after_insert")
def _log_document_insert(mapper, connection, target):
    from policywiki.audit import log_action

    log_action(
        action="create",
        object_type="document",
        object_id=target.id,
        changes={"title": target.title, "slug": target.slug, "status": target.status},
        connection=connection,
    )


@event.listens_for(Document, "after_update")
def _log_document_update(mapper, connection, target):
    from policywiki.audit import log_action

    changes = _capture_changes(target)
    if changes:
        log_action(
            action="update",
            object_type="document",
            object_id=target.id,
            changes=changes,
            connection=connection,
        )


@event.listens_for(Document, "after_delete")
def _log_document_delete(mapper, connection, target):
    from policywiki.audit import log_action

    log_action(
        action="delete",
        object_type="document",
        object_id=target.id,
        changes={"title": target.title, "slug": target.slug},
        connection=connection,
    )


def get_session():
    return SessionLocal()


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_session",
    "utcnow",
    "RoleEnum",
    "UserStatus",
    "DocumentStatus",
    "ContentType",
    "FileType",
    "RelationshipType",
    "User",
    "Role",
    "UserRole",
    "Category",
    "BusinessUnit",
    "Tag",
    "document_tags",
    "Document",
    "DocumentVersion",
    "RelatedDocument",
    "Session",
    "Bookmark",
    "DocumentView",
    "AuditLog",
]
