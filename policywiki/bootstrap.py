"""Schema creation and default data.

:func:`init_db` runs once when the application starts.  Both steps are
idempotent: tables are only created when missing and seed rows are only
inserted into an empty ``roles`` table, so a second process starting at the
same time does no harm.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from sqlalchemy import func, inspect

from policywiki.auth import hash_password
from policywiki.models import (
    Base,
    BusinessUnit,
    Category,
    Document,
    Role,
    RoleEnum,
    Tag,
    User,
    UserRole,
    UserStatus,
    engine,
    get_session,
)
from policywiki.permissions import DEFAULT_ROLE_PERMISSIONS

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("users", "roles", "documents", "sessions")

DEFAULT_CATEGORIES = [
    ("Policies", "policies", "Organizational policies and governance documents", 10),
    ("Procedures", "procedures", "Standard operating procedures and work instructions", 20),
    ("Forms", "forms", "Templates and forms for operational use", 30),
    ("Templates", "templates", "Document templates and formatting guides", 40),
    ("Guidelines", "guidelines", "Best practice guidelines and recommendations", 50),
    ("Standards", "standards", "Quality and compliance standards", 60),
    ("Registers", "registers", "Logs, registers, and record keeping documents", 70),
]

DEFAULT_SUBCATEGORIES = {
    "policies": [
        ("Consumer Rights", "consumer-rights", "Consumer dignity, autonomy, and rights", 10),
        ("Finance and Accountability", "finance-accountability", "Financial governance and transparency", 20),
        ("Privacy and Information Management", "privacy-information", "Privacy, confidentiality, and data protection", 30),
        ("Risk Management and Compliance", "risk-compliance", "Enterprise risk and regulatory compliance", 40),
        ("Governance and Oversight", "governance-oversight", "Organizational governance structure", 50),
    ],
}

DEFAULT_BUSINESS_UNITS = [
    ("Clinical Services", "clinical-services", "Clinical care delivery and health services"),
    ("Quality and Safety", "quality-safety", "Quality assurance and safety management"),
    ("Finance and Administration", "finance-admin", "Financial management and administrative support"),
    ("Human Resources", "human-resources", "Workforce management and employee relations"),
    ("Governance and Risk", "governance-risk", "Corporate governance and risk management"),
    ("Information Technology", "information-technology", "IT systems and digital services"),
    ("Consumer Services", "consumer-services", "Consumer support and engagement"),
]

DEFAULT_TAGS = [
    ("ACQS Standard 1", "acqs-standard-1", "#3B82F6"),
    ("ACQS Standard 8", "acqs-standard-8", "#8B5CF6"),
    ("Aged Care Act 1997", "aged-care-act-1997", "#10B981"),
    ("Privacy Act", "privacy-act", "#F59E0B"),
    ("Mandatory", "mandatory", "#EF4444"),
    ("Review Required", "review-required", "#F59E0B"),
    ("High Priority", "high-priority", "#DC2626"),
    ("Clinical", "clinical", "#06B6D4"),
    ("Financial", "financial", "#84CC16"),
    ("Regulatory", "regulatory", "#A855F7"),
    ("Audit Ready", "audit-ready", "#10B981"),
]


def is_database_initialized() -> bool:
    tables = set(inspect(engine).get_table_names())
    return all(name in tables for name in REQUIRED_TABLES)


def _run_migrations() -> None:
    from alembic import command
    from alembic.config import Config

    repo_root = Path(__file__).resolve().parent.parent
    cfg = Config(str(repo_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(repo_root / "alembic"))
    url = engine.url.render_as_string(hide_password=False)
    cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def create_schema() -> None:
    """Create missing tables.

    SQLite databases (development and tests) are created straight from the
    model metadata; every other backend goes through Alembic.
    """
    if engine.dialect.name == "sqlite":
        Base.metadata.create_all(bind=engine)
    else:
        _run_migrations()


def seed_roles(session) -> None:
    for role_enum, (description, permissions) in DEFAULT_ROLE_PERMISSIONS.items():
        if not session.query(Role).filter_by(name=role_enum.value).first():
            session.add(
                Role(name=role_enum.value, description=description, permissions=permissions)
            )
    session.flush()


def seed_admin_user(session) -> User:
    """Create the initial administrator and give it the ``system_owner`` role."""
    email = os.getenv("INITIAL_ADMIN_EMAIL", "admin@agewithcare.com")
    password = os.getenv("INITIAL_ADMIN_PASSWORD", "Admin123!")
    name = os.getenv("INITIAL_ADMIN_NAME", "System Administrator")

    admin = session.query(User).filter_by(email=email).first()
    if not admin:
        admin = User(
            email=email,
            name=name,
            password_hash=hash_password(password),
            status=UserStatus.ACTIVE.value,
        )
        session.add(admin)
        session.flush()

    owner_role = session.query(Role).filter_by(name=RoleEnum.SYSTEM_OWNER.value).one()
    if owner_role not in admin.roles:
        session.add(UserRole(user_id=admin.id, role_id=owner_role.id))
        session.flush()
    return admin


def seed_taxonomy(session) -> None:
    for name, slug, description, order in DEFAULT_CATEGORIES:
        if not session.query(Category).filter_by(slug=slug).first():
            session.add(Category(name=name, slug=slug, description=description, sort_order=order))
    session.flush()
    for parent_slug, children in DEFAULT_SUBCATEGORIES.items():
        parent = session.query(Category).filter_by(slug=parent_slug).one()
        for name, slug, description, order in children:
            if not session.query(Category).filter_by(slug=slug).first():
                session.add(
                    Category(
                        name=name,
                        slug=slug,
                        parent_id=parent.id,
                        description=description,
                        sort_order=order,
                    )
                )
    for name, slug, description in DEFAULT_BUSINESS_UNITS:
        if not session.query(BusinessUnit).filter_by(slug=slug).first():
            session.add(BusinessUnit(name=name, slug=slug, description=description))
    for label, slug, color in DEFAULT_TAGS:
        if not session.query(Tag).filter_by(slug=slug).first():
            session.add(Tag(label=label, slug=slug, color=color))
    session.flush()


def seed_database() -> dict:
    session = get_session()
    try:
        if session.query(Role.id).first() is not None:
            return {"success": True, "message": "Database already seeded"}
        seed_roles(session)
        seed_admin_user(session)
        seed_taxonomy(session)
        session.commit()
        logger.info("Database seeded")
        return {"success": True, "message": "Database seeded successfully"}
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> dict:
    """Create the schema if needed, then seed default data."""
    already = is_database_initialized()
    if not already:
        logger.info("Initializing database schema")
        create_schema()
    seed = seed_database()
    return {
        "init": {
            "success": True,
            "message": "Database already initialized" if already else "Database initialized successfully",
        },
        "seed": seed,
    }


def database_status() -> dict:
    if not is_database_initialized():
        return {"initialized": False}
    session = get_session()
    try:
        return {
            "initialized": True,
            "stats": {
                "users": session.query(func.count(User.id)).scalar(),
                "documents": session.query(func.count(Document.id)).scalar(),
                "categories": session.query(func.count(Category.id)).scalar(),
            },
        }
    finally:
        session.close()
