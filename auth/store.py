"""
auth/store.py -- SQLAlchemy Core persistence for users, organizations and memberships.

Pattern: Repository + Data Mapper. UserStore and MembershipStore are the
repositories; the _row_to_* functions are the mappers. Route and service code
never touches SQL directly.

These tables belong to the directory application proper (people, org CRUD).
The security core only needs the slice kept here: credential lookup for
login, the global role, organization ownership and membership roles.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are normalized (strip + lowercase) on write and on lookup so two
  spellings of the same address cannot create two accounts.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Organization, OrganizationMembership, User
from core.database import now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("created_by_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)

organization_members = Table(
    "organization_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False, index=True),
    Column("user_id", Integer, nullable=False),
    Column("role", String(30), nullable=False),
    Column("added_by_id", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records (the credential store).

    Usage:
        store = UserStore(engine)
        uid = store.create_user(User(email="a@example.com", name="A", hashed_password=hash_password("...")))
        user = store.get_by_email("a@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    email=normalize_email(user.email),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        """Replace the stored hash. Returns False if user_id was not found.

        Callers must revoke the user's refresh tokens afterwards; the store
        does not know about sessions.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=now_iso())
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Organizations and memberships
# ---------------------------------------------------------------------------


class MembershipStore:
    """Repository for Organization ownership and OrganizationMembership rows.

    Permission checks are NOT done here -- see auth/permissions.py. Every
    mutating method assumes the caller already passed require_permission().
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def create_organization(self, org: Organization) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                organizations.insert().values(
                    name=org.name,
                    created_by_id=org.created_by_id,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self.engine.connect() as conn:
            row = conn.execute(organizations.select().where(organizations.c.id == org_id)).fetchone()
        if row is None:
            return None
        return Organization(id=row.id, name=row.name, created_by_id=row.created_by_id, created_at=row.created_at)

    def get_membership(self, org_id: int, user_id: int) -> Optional[OrganizationMembership]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _member_select().where(
                    (organization_members.c.organization_id == org_id) & (organization_members.c.user_id == user_id)
                )
            ).fetchone()
        return _row_to_membership(row) if row is not None else None

    def get_member(self, org_id: int, member_id: int) -> Optional[OrganizationMembership]:
        """Look up a membership by its own id, scoped to org_id (IDOR guard)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _member_select().where(
                    (organization_members.c.id == member_id) & (organization_members.c.organization_id == org_id)
                )
            ).fetchone()
        return _row_to_membership(row) if row is not None else None

    def list_members(self, org_id: int) -> list[OrganizationMembership]:
        """Return explicit members (the owner has no row) newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _member_select()
                .where(organization_members.c.organization_id == org_id)
                .order_by(organization_members.c.created_at.desc(), organization_members.c.id.desc())
            ).fetchall()
        return [_row_to_membership(r) for r in rows]

    def add_member(self, membership: OrganizationMembership) -> int:
        """Insert a membership row. Raises IntegrityError on a duplicate (org, user) pair."""
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                organization_members.insert().values(
                    organization_id=membership.organization_id,
                    user_id=membership.user_id,
                    role=membership.role,
                    added_by_id=membership.added_by_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def update_member_role(self, org_id: int, member_id: int, role: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                organization_members.update()
                .where((organization_members.c.id == member_id) & (organization_members.c.organization_id == org_id))
                .values(role=role, updated_at=now_iso())
            )
        return result.rowcount > 0

    def remove_member(self, org_id: int, member_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                organization_members.delete().where(
                    (organization_members.c.id == member_id) & (organization_members.c.organization_id == org_id)
                )
            )
        return result.rowcount > 0


def _member_select():
    return select(
        organization_members,
        users.c.name.label("user_name"),
        users.c.email.label("user_email"),
    ).select_from(organization_members.outerjoin(users, organization_members.c.user_id == users.c.id))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        role=row.role,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
    )


def _row_to_membership(row) -> OrganizationMembership:
    return OrganizationMembership(
        id=row.id,
        organization_id=row.organization_id,
        user_id=row.user_id,
        role=row.role,
        added_by_id=row.added_by_id,
        created_at=row.created_at,
        user_name=row.user_name,
        user_email=row.user_email,
    )
