"""Read-oriented storage accessor for team-scoped roles, groups and abilities."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from sqlalchemy import delete, exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fastapi_teams.entities import ActorKind, ActorRef, EntityKind, EntityRef
from fastapi_teams.exceptions import ConflictError, NotFound
from fastapi_teams.models import (
    Ability,
    EntityAbility,
    EntityPermission,
    Group,
    GroupUser,
    Invitation,
    Membership,
    Permission,
    Role,
    Team,
)


def _permission_name(code: str) -> str:
    return code.replace(".", " ").capitalize()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error.

    Uniqueness violations surfacing at flush or commit are raised as
    ``ConflictError``.
    """
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(str(exc.orig)) from exc
    except Exception:
        session.rollback()
        raise


class TeamRepository:
    """Storage accessor over one SQLAlchemy session.

    The repository never commits; callers own the transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # Teams and memberships

    def get_team(self, team_id: Any) -> Team:
        team = self.session.get(Team, team_id)
        if team is None:
            raise NotFound(f"Team '{team_id}' not found.")
        return team

    def teams_for_user(self, user_id: Any) -> list[Team]:
        member_of = select(Membership.team_id).where(Membership.user_id == user_id)
        stmt = select(Team).where((Team.owner_id == user_id) | Team.id.in_(member_of)).order_by(Team.name)
        return list(self.session.scalars(stmt))

    def membership(self, team_id: Any, user_id: Any) -> Membership | None:
        stmt = select(Membership).where(Membership.team_id == team_id, Membership.user_id == user_id)
        return self.session.scalar(stmt)

    def memberships(self, team_id: Any) -> list[Membership]:
        stmt = select(Membership).where(Membership.team_id == team_id).order_by(Membership.id)
        return list(self.session.scalars(stmt))

    def role_in_use(self, role_id: Any) -> bool:
        return bool(self.session.scalar(select(exists().where(Membership.role_id == role_id))))

    # Roles and groups

    def role_by_id(self, role_id: Any) -> Role | None:
        return self.session.get(Role, role_id)

    def role_by_code(self, team_id: Any, code: str) -> Role | None:
        return self.session.scalar(select(Role).where(Role.team_id == team_id, Role.code == code))

    def roles(self, team_id: Any) -> list[Role]:
        return list(self.session.scalars(select(Role).where(Role.team_id == team_id).order_by(Role.code)))

    def group_by_code(self, team_id: Any | None, code: str) -> Group | None:
        team_clause = Group.team_id.is_(None) if team_id is None else Group.team_id == team_id
        return self.session.scalar(select(Group).where(team_clause, Group.code == code))

    def groups(self, team_id: Any | None) -> list[Group]:
        team_clause = Group.team_id.is_(None) if team_id is None else Group.team_id == team_id
        return list(self.session.scalars(select(Group).where(team_clause).order_by(Group.code)))

    def user_group_ids(self, user_id: Any, team_id: Any | None) -> list[Any]:
        """Groups of a user inside a team, or global groups when ``team_id`` is None."""
        team_clause = Group.team_id.is_(None) if team_id is None else Group.team_id == team_id
        stmt = (
            select(Group.id)
            .join(GroupUser, GroupUser.group_id == Group.id)
            .where(GroupUser.user_id == user_id, team_clause)
        )
        return list(self.session.scalars(stmt))

    def group_has_user(self, group_id: Any, user_id: Any) -> bool:
        stmt = select(exists().where(GroupUser.group_id == group_id, GroupUser.user_id == user_id))
        return bool(self.session.scalar(stmt))

    def attach_group_user(self, group_id: Any, user_id: Any) -> None:
        if not self.group_has_user(group_id, user_id):
            self.session.add(GroupUser(group_id=group_id, user_id=user_id))
            self.session.flush()

    def detach_group_user(self, group_id: Any, user_id: Any) -> None:
        self.session.execute(delete(GroupUser).where(GroupUser.group_id == group_id, GroupUser.user_id == user_id))

    # Permissions

    def permission_codes(self, kind: EntityKind, entity_ids: Sequence[Any]) -> list[str]:
        """Permission codes attached to the given roles or groups."""
        if not entity_ids:
            return []
        stmt = (
            select(Permission.code)
            .join(EntityPermission, EntityPermission.permission_id == Permission.id)
            .where(EntityPermission.entity_kind == kind.value, EntityPermission.entity_id.in_(entity_ids))
            .order_by(Permission.code)
        )
        return list(dict.fromkeys(self.session.scalars(stmt)))

    def role_has_any(self, role_id: Any, codes: Iterable[str]) -> bool:
        """Existence query: does the role hold any of the candidate codes."""
        codes = list(codes)
        if not codes:
            return False
        stmt = select(
            exists()
            .where(
                EntityPermission.entity_kind == EntityKind.ROLE.value,
                EntityPermission.entity_id == role_id,
                EntityPermission.permission_id == Permission.id,
            )
            .where(Permission.code.in_(codes))
        )
        return bool(self.session.scalar(stmt))

    def permission_ids(self, codes: Iterable[str]) -> list[Any]:
        codes = list(codes)
        if not codes:
            return []
        return list(self.session.scalars(select(Permission.id).where(Permission.code.in_(codes))))

    def get_or_create_permissions(self, codes: Iterable[str]) -> list[Permission]:
        """Return permissions for ``codes`` in order, creating the missing ones."""
        codes = list(dict.fromkeys(codes))
        if not codes:
            return []
        existing = {p.code: p for p in self.session.scalars(select(Permission).where(Permission.code.in_(codes)))}
        for code in codes:
            if code not in existing:
                permission = Permission(code=code, name=_permission_name(code))
                self.session.add(permission)
                existing[code] = permission
        self.session.flush()
        return [existing[code] for code in codes]

    def sync_permissions(self, kind: EntityKind, entity_id: Any, codes: Iterable[str]) -> tuple[set[str], set[str]]:
        """Replace the permissions of a role or group.

        Returns:
            Tuple of (granted codes, revoked codes).
        """
        current = set(self.permission_codes(kind, [entity_id]))
        permissions = self.get_or_create_permissions(codes)
        wanted = {p.code for p in permissions}

        self.session.execute(
            delete(EntityPermission).where(
                EntityPermission.entity_kind == kind.value,
                EntityPermission.entity_id == entity_id,
            )
        )
        for permission in permissions:
            self.session.add(EntityPermission(entity_kind=kind.value, entity_id=entity_id, permission_id=permission.id))
        self.session.flush()

        return wanted - current, current - wanted

    def detach_permissions(self, kind: EntityKind, entity_id: Any) -> None:
        self.session.execute(
            delete(EntityPermission).where(
                EntityPermission.entity_kind == kind.value,
                EntityPermission.entity_id == entity_id,
            )
        )

    # Abilities

    def ability_flags(
        self,
        team_id: Any,
        entity: EntityRef,
        permission_ids: Sequence[Any],
        kind: ActorKind,
        actor_ids: Sequence[Any],
    ) -> list[bool]:
        """Forbidden flags of the ability pivots matching one actor kind."""
        if not permission_ids or not actor_ids:
            return []
        stmt = (
            select(EntityAbility.forbidden)
            .join(Ability, Ability.id == EntityAbility.ability_id)
            .where(
                Ability.team_id == team_id,
                Ability.entity_type == entity.type,
                Ability.entity_id == str(entity.id),
                Ability.permission_id.in_(permission_ids),
                EntityAbility.actor_kind == kind.value,
                EntityAbility.actor_id.in_(actor_ids),
            )
        )
        return [bool(flag) for flag in self.session.scalars(stmt)]

    def actor_abilities(
        self, team_id: Any, entity: EntityRef, actor: ActorRef, forbidden_only: bool = False
    ) -> list[tuple[Ability, bool]]:
        stmt = (
            select(Ability, EntityAbility.forbidden)
            .join(EntityAbility, EntityAbility.ability_id == Ability.id)
            .where(
                Ability.team_id == team_id,
                Ability.entity_type == entity.type,
                Ability.entity_id == str(entity.id),
                EntityAbility.actor_kind == actor.kind.value,
                EntityAbility.actor_id == actor.id,
            )
        )
        if forbidden_only:
            stmt = stmt.where(EntityAbility.forbidden.is_(True))
        return [(ability, bool(forbidden)) for ability, forbidden in self.session.execute(stmt)]

    def get_or_create_ability(self, team_id: Any, entity: EntityRef, permission_id: Any) -> Ability:
        stmt = select(Ability).where(
            Ability.team_id == team_id,
            Ability.entity_type == entity.type,
            Ability.entity_id == str(entity.id),
            Ability.permission_id == permission_id,
        )
        ability = self.session.scalar(stmt)
        if ability is None:
            ability = Ability(
                team_id=team_id,
                entity_type=entity.type,
                entity_id=str(entity.id),
                permission_id=permission_id,
            )
            self.session.add(ability)
            self.session.flush()
        return ability

    def set_ability_actor(self, ability: Ability, actor: ActorRef, forbidden: bool) -> None:
        """Attach an actor to an ability, updating the flag if already attached."""
        pivot = self.session.get(EntityAbility, (ability.id, actor.kind.value, actor.id))
        if pivot is None:
            self.session.add(
                EntityAbility(ability_id=ability.id, actor_kind=actor.kind.value, actor_id=actor.id, forbidden=forbidden)
            )
        else:
            pivot.forbidden = forbidden
        self.session.flush()

    def detach_ability_actor(self, ability: Ability, actor: ActorRef) -> None:
        self.session.execute(
            delete(EntityAbility).where(
                EntityAbility.ability_id == ability.id,
                EntityAbility.actor_kind == actor.kind.value,
                EntityAbility.actor_id == actor.id,
            )
        )

    def detach_actor_everywhere(self, actor: ActorRef) -> None:
        self.session.execute(
            delete(EntityAbility).where(
                EntityAbility.actor_kind == actor.kind.value,
                EntityAbility.actor_id == actor.id,
            )
        )

    # Invitations

    def invitation(self, invitation_id: Any) -> Invitation | None:
        return self.session.get(Invitation, invitation_id)

    def invitation_for(self, team_id: Any, email: str) -> Invitation | None:
        stmt = select(Invitation).where(Invitation.team_id == team_id, Invitation.email == email)
        return self.session.scalar(stmt)

    def invitations_since(self, team_id: Any, since: Any) -> int:
        stmt = (
            select(func.count())
            .select_from(Invitation)
            .where(Invitation.team_id == team_id, Invitation.created_at >= since)
        )
        return self.session.scalar(stmt) or 0
