from __future__ import annotations

import logging
from enum import Enum as PyEnum
from typing import Iterable

from flask import g, has_request_context

from policywiki.models import Role, RoleEnum, SessionLocal, UserRole

logger = logging.getLogger(__name__)

WILDCARD = "*"


class Permission(PyEnum):
    READ_PUBLISHED = "read_published"
    READ_DRAFT = "read_draft"
    UPLOAD = "upload"
    EDIT_METADATA = "edit_metadata"
    SUBMIT_APPROVAL = "submit_approval"
    REPLACE_FILES = "replace_files"
    CREATE_PAGES = "create_pages"
    APPROVE = "approve"
    REJECT = "reject"
    SCHEDULE_PUBLICATION = "schedule_publication"
    ARCHIVE = "archive"
    MANAGE_USERS = "manage_users"
    MANAGE_ROLES = "manage_roles"
    MANAGE_TAXONOMIES = "manage_taxonomies"
    MANAGE_RETENTION = "manage_retention"
    MANAGE_FILE_TYPES = "manage_file_types"
    DOWNLOAD_ALLOWED = "download_allowed"
    CREATE_BOOKMARKS = "create_bookmarks"
    VIEW_ANALYTICS = "view_analytics"


_READER = [
    Permission.READ_PUBLISHED,
    Permission.DOWNLOAD_ALLOWED,
    Permission.CREATE_BOOKMARKS,
]
_CONTRIBUTOR = _READER + [
    Permission.READ_DRAFT,
    Permission.UPLOAD,
    Permission.EDIT_METADATA,
    Permission.SUBMIT_APPROVAL,
    Permission.REPLACE_FILES,
    Permission.CREATE_PAGES,
]
_APPROVER = _CONTRIBUTOR + [
    Permission.APPROVE,
    Permission.REJECT,
    Permission.SCHEDULE_PUBLICATION,
    Permission.ARCHIVE,
]
_ADMINISTRATOR = _APPROVER + [
    Permission.MANAGE_USERS,
    Permission.MANAGE_ROLES,
    Permission.MANAGE_TAXONOMIES,
    Permission.MANAGE_RETENTION,
    Permission.MANAGE_FILE_TYPES,
    Permission.VIEW_ANALYTICS,
]

# Seeded role grants, stored on ``Role.permissions`` as JSON arrays.
DEFAULT_ROLE_PERMISSIONS: dict[RoleEnum, tuple[str, list[str]]] = {
    RoleEnum.READER: ("Views published content", [p.value for p in _READER]),
    RoleEnum.CONTRIBUTOR: ("Uploads and edits content", [p.value for p in _CONTRIBUTOR]),
    RoleEnum.APPROVER: ("Reviews and publishes content", [p.value for p in _APPROVER]),
    RoleEnum.ADMINISTRATOR: ("Full administrative access", [p.value for p in _ADMINISTRATOR]),
    RoleEnum.SYSTEM_OWNER: ("Complete system control", [WILDCARD]),
}


class PermissionSet:
    """Immutable set of granted permissions.

    The wildcard grants everything, including permissions added after the
    role was stored.
    """

    __slots__ = ("_granted", "_wildcard")

    def __init__(self, granted: Iterable[Permission] = (), wildcard: bool = False):
        self._granted = frozenset(granted)
        self._wildcard = wildcard

    @classmethod
    def from_strings(cls, values: Iterable[str] | None) -> "PermissionSet":
        granted = set()
        wildcard = False
        for value in values or []:
            if value == WILDCARD:
                wildcard = True
                continue
            try:
                granted.add(Permission(value))
            except ValueError:
                logger.warning("Ignoring unknown permission %r", value)
        return cls(granted, wildcard)

    @property
    def wildcard(self) -> bool:
        return self._wildcard

    def allows(self, permission: Permission | str) -> bool:
        if self._wildcard:
            return True
        if isinstance(permission, str):
            if permission == WILDCARD:
                return False
            try:
                permission = Permission(permission)
            except ValueError:
                return False
        return permission in self._granted

    def allows_any(self, *permissions: Permission | str) -> bool:
        return any(self.allows(p) for p in permissions)

    def union(self, other: "PermissionSet") -> "PermissionSet":
        return PermissionSet(
            self._granted | other._granted, self._wildcard or other._wildcard
        )

    def to_list(self) -> list[str]:
        values = sorted(p.value for p in self._granted)
        if self._wildcard:
            values.insert(0, WILDCARD)
        return values

    def __bool__(self) -> bool:
        return self._wildcard or bool(self._granted)

    def __contains__(self, permission) -> bool:
        return self.allows(permission)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PermissionSet):
            return NotImplemented
        return self._granted == other._granted and self._wildcard == other._wildcard

    def __hash__(self) -> int:
        return hash((self._granted, self._wildcard))

    def __repr__(self) -> str:
        return f"PermissionSet({self.to_list()!r})"


EMPTY = PermissionSet()


def role_permission_set(role: Role) -> PermissionSet:
    return PermissionSet.from_strings(role.permissions)


def get_user_permissions(user_id: int | None, db=None) -> PermissionSet:
    """Union of the permission sets of every role assigned to ``user_id``."""
    if user_id is None:
        return EMPTY
    owns_session = db is None
    if owns_session:
        # Independent of the request-scoped session, which may hold live objects.
        db = SessionLocal.session_factory()
    try:
        roles = (
            db.query(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(UserRole.user_id == user_id)
            .all()
        )
        result = EMPTY
        for role in roles:
            result = result.union(role_permission_set(role))
        return result
    finally:
        if owns_session:
            db.close()


def has_permission(user_id: int | None, permission: Permission | str, db=None) -> bool:
    return get_user_permissions(user_id, db).allows(permission)


def current_permissions() -> PermissionSet:
    """Permissions of the signed-in user, computed once per request."""
    if not has_request_context():
        return EMPTY
    if "permissions" not in g:
        user = g.get("user")
        g.permissions = get_user_permissions(user.id if user is not None else None)
    return g.permissions
