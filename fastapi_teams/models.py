"""SQLAlchemy models for teams, roles, groups, permissions and abilities."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column, relationship
from sqlalchemy.types import TypeEngine

from fastapi_teams.settings import PrimaryKeyType, get_settings

__all__ = [
    "Base",
    "Team",
    "Role",
    "Group",
    "Permission",
    "EntityPermission",
    "Ability",
    "EntityAbility",
    "GroupUser",
    "Membership",
    "Invitation",
    "TeamAuditLog",
    "key_type",
]


def key_type(kind: PrimaryKeyType | None = None) -> TypeEngine[Any]:
    """Column type for identifiers, chosen by ``primary_key_type``."""
    kind = kind or get_settings().primary_key_type
    if kind == "uuid":
        return Uuid()
    if kind == "int":
        return Integer()
    # SQLite only autoincrements INTEGER PRIMARY KEY columns.
    return BigInteger().with_variant(Integer(), "sqlite")


KEY_TYPE = key_type()


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class Base(DeclarativeBase):
    pass


class KeyPrimaryKeyMixin:
    """Primary key column whose type follows the configured key type."""

    @declared_attr
    def id(cls) -> Mapped[Any]:
        if isinstance(KEY_TYPE, Uuid):
            return mapped_column(KEY_TYPE, primary_key=True, default=uuid.uuid4)
        return mapped_column(KEY_TYPE, primary_key=True, autoincrement=True)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class Team(KeyPrimaryKeyMixin, TimestampMixin, Base):
    """Tenant boundary; its owner bypasses every check inside it."""

    __tablename__ = "teams"

    owner_id: Mapped[Any] = mapped_column(KEY_TYPE, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    roles: Mapped[list[Role]] = relationship("Role", back_populates="team", cascade="all, delete-orphan")
    groups: Mapped[list[Group]] = relationship("Group", back_populates="team", cascade="all, delete-orphan")
    memberships: Mapped[list[Membership]] = relationship(
        "Membership", back_populates="team", cascade="all, delete-orphan"
    )
    invitations: Mapped[list[Invitation]] = relationship(
        "Invitation", back_populates="team", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"Team(id={self.id!r}, name={self.name!r})"


class Role(KeyPrimaryKeyMixin, TimestampMixin, Base):
    """Team-scoped bundle of permissions, unique by (team, code)."""

    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("team_id", "code", name="uq_roles_team_code"),)

    team_id: Mapped[Any] = mapped_column(KEY_TYPE, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    team: Mapped[Team] = relationship("Team", back_populates="roles")

    def __repr__(self) -> str:
        return f"Role(id={self.id!r}, code={self.code!r})"


class Group(KeyPrimaryKeyMixin, TimestampMixin, Base):
    """Bundle of permissions; global when ``team_id`` is null."""

    __tablename__ = "groups"
    __table_args__ = (UniqueConstraint("team_id", "code", name="uq_groups_team_code"),)

    team_id: Mapped[Any | None] = mapped_column(
        KEY_TYPE, ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)

    team: Mapped[Team | None] = relationship("Team", back_populates="groups")

    def __repr__(self) -> str:
        return f"Group(id={self.id!r}, code={self.code!r})"


class Permission(KeyPrimaryKeyMixin, Base):
    """Global dotted permission code, shared by every team."""

    __tablename__ = "permissions"

    code: Mapped[str] = mapped_column(String(191), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(191), nullable=False)

    def __repr__(self) -> str:
        return f"Permission(code={self.code!r})"


class EntityPermission(Base):
    """Attachment of a permission to a role or a group."""

    __tablename__ = "entity_permission"

    entity_kind: Mapped[str] = mapped_column(String(20), primary_key=True)
    entity_id: Mapped[Any] = mapped_column(KEY_TYPE, primary_key=True)
    permission_id: Mapped[Any] = mapped_column(
        KEY_TYPE, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
    )


class Ability(KeyPrimaryKeyMixin, TimestampMixin, Base):
    """A permission bound to one concrete entity inside a team."""

    __tablename__ = "abilities"
    __table_args__ = (
        UniqueConstraint("team_id", "entity_type", "entity_id", "permission_id", name="uq_abilities_target"),
    )

    team_id: Mapped[Any] = mapped_column(KEY_TYPE, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(191), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    permission_id: Mapped[Any] = mapped_column(
        KEY_TYPE, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )

    permission: Mapped[Permission] = relationship("Permission")
    actors: Mapped[list[EntityAbility]] = relationship(
        "EntityAbility", back_populates="ability", cascade="all, delete-orphan"
    )


class EntityAbility(TimestampMixin, Base):
    """Pivot linking an ability to a role, group or user actor."""

    __tablename__ = "entity_ability"

    ability_id: Mapped[Any] = mapped_column(
        KEY_TYPE, ForeignKey("abilities.id", ondelete="CASCADE"), primary_key=True
    )
    actor_kind: Mapped[str] = mapped_column(String(20), primary_key=True)
    actor_id: Mapped[Any] = mapped_column(KEY_TYPE, primary_key=True)
    forbidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    ability: Mapped[Ability] = relationship("Ability", back_populates="actors")


class GroupUser(Base):
    __tablename__ = "group_user"

    group_id: Mapped[Any] = mapped_column(KEY_TYPE, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[Any] = mapped_column(KEY_TYPE, primary_key=True)


class Membership(KeyPrimaryKeyMixin, TimestampMixin, Base):
    """One user, one team, one role."""

    __tablename__ = "team_user"
    __table_args__ = (UniqueConstraint("team_id", "user_id", name="uq_team_user"),)

    team_id: Mapped[Any] = mapped_column(KEY_TYPE, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[Any] = mapped_column(KEY_TYPE, nullable=False, index=True)
    role_id: Mapped[Any] = mapped_column(KEY_TYPE, ForeignKey("roles.id"), nullable=False)

    team: Mapped[Team] = relationship("Team", back_populates="memberships")
    role: Mapped[Role] = relationship("Role")


class Invitation(KeyPrimaryKeyMixin, TimestampMixin, Base):
    """Pending e-mail invitation to join a team with a role."""

    __tablename__ = "invitations"
    __table_args__ = (UniqueConstraint("team_id", "email", name="uq_invitations_team_email"),)

    team_id: Mapped[Any] = mapped_column(KEY_TYPE, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role_id: Mapped[Any] = mapped_column(KEY_TYPE, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)

    team: Mapped[Team] = relationship("Team", back_populates="invitations")
    role: Mapped[Role] = relationship("Role")


class TeamAuditLog(KeyPrimaryKeyMixin, Base):
    __tablename__ = "team_audit_logs"

    team_id: Mapped[Any | None] = mapped_column(KEY_TYPE, nullable=True, index=True)
    user_id: Mapped[Any | None] = mapped_column(KEY_TYPE, nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[str | None] = mapped_column(String(191), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
