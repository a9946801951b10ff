"""Permission resolution for team members.

The resolver combines four sources into one decision:

1. Team ownership: owners are granted everything inside their team.
2. Role permissions: the single role a member holds in a team.
3. Group permissions: team-scoped groups, plus global groups for abilities.
4. Abilities: per-entity allow/forbid rows attached to the member's role,
   groups or the member directly, arbitrated by ``AccessLevel``.

Permission decisions go through two cache layers: an optional
``DecisionContext`` owned by the caller for one request, and the persistent
``PermissionCache`` shared across requests. Membership, role and group
mutations flush the persistent layer; a decision computed concurrently with
such a mutation may be cached before the flush lands and stay stale until
the next mutation or TTL expiry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from fastapi_teams.access import AccessArbiter, AccessLevel
from fastapi_teams.audit import AuditService
from fastapi_teams.cache import PermissionCache, fingerprint, subject_tag
from fastapi_teams.context import DecisionContext
from fastapi_teams.entities import (
    ActorKind,
    ActorRef,
    EntityKind,
    GroupRef,
    OwnedEntity,
    RoleRef,
    Scope,
    UserRef,
    entity_ref,
)
from fastapi_teams.exceptions import NotFound
from fastapi_teams.matching import WILDCARD, candidate_codes, matches
from fastapi_teams.models import Ability, Group, Role, Team
from fastapi_teams.repository import TeamRepository, atomic
from fastapi_teams.settings import TeamsSettings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

OWNER_PERMISSIONS = frozenset({WILDCARD})


def as_codes(codes: str | Iterable[str] | None) -> list[str]:
    """Normalize one code or an iterable of codes into a de-duplicated list."""
    if codes is None:
        return []
    if isinstance(codes, str):
        return [codes]
    return list(dict.fromkeys(codes))


def _scope(scope: str | Scope | None) -> Scope | None:
    return Scope(scope) if scope else None


class PermissionResolver:
    """Answers role, permission and ability questions for a user in a team.

    Args:
        session: SQLAlchemy session used for storage reads.
        cache: Persistent decision cache; built from ``settings`` if omitted.
        settings: Configuration; defaults to the environment.
        audit: Audit collaborator for ability mutations.
    """

    def __init__(
        self,
        session: Session,
        cache: PermissionCache | None = None,
        settings: TeamsSettings | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.cache = cache or PermissionCache(self.settings)
        self.audit = audit or AuditService(session, self.settings)
        self.repository = TeamRepository(session)

    # Membership queries

    def owns_team(self, user: Any, team: Team) -> bool:
        return user is not None and team.owner_id == user.id

    def belongs_to_team(self, user: Any, team: Team) -> bool:
        if user is None:
            return False
        return self.owns_team(user, team) or self.repository.membership(team.id, user.id) is not None

    def team_role(self, user: Any, team: Team) -> Role | None:
        """The role a member holds in ``team``; owners and outsiders have none."""
        if user is None:
            return None
        membership = self.repository.membership(team.id, user.id)
        return membership.role if membership is not None else None

    def all_teams(self, user: Any) -> list[Team]:
        """Teams the user owns or belongs to, sorted by name."""
        return self.repository.teams_for_user(user.id)

    # Decisions

    def _decide(
        self,
        context: DecisionContext | None,
        cache_key: str,
        tags: list[str],
        producer: Callable[[], T],
    ) -> T:
        def persistent() -> T:
            return self.cache.remember(cache_key, producer, tags=tags)

        if context is None:
            return persistent()
        return context.remember(DecisionContext.key(cache_key), persistent)  # type: ignore[no-any-return]

    def has_role(
        self,
        user: Any,
        team: Team,
        roles: str | Iterable[str],
        require_all: bool = False,
    ) -> bool:
        """Check the user's team role against one or more role codes.

        A member holds exactly one role per team, so with ``require_all`` the
        check only passes when every requested code equals that role.
        """
        if user is None:
            return False
        if self.owns_team(user, team):
            return True

        codes = as_codes(roles)
        if not codes:
            return False

        role = self.team_role(user, team)
        if role is None:
            return False

        if require_all:
            return all(code == role.code for code in codes)
        return role.code in codes

    def permissions_for(
        self,
        user: Any,
        team: Team,
        scope: str | Scope | None = None,
        context: DecisionContext | None = None,
    ) -> set[str]:
        """Permission codes reachable through the user's role and team groups."""
        if user is None:
            return set()
        if self.owns_team(user, team):
            return set(OWNER_PERMISSIONS)

        resolved_scope = _scope(scope)
        key = f"user_{user.id}_team_{team.id}_permissions_{resolved_scope or 'all'}"
        codes = self._decide(
            context,
            key,
            [subject_tag(user.id, team.id)],
            lambda: self._collect_permissions(user, team, resolved_scope),
        )
        return set(codes)

    def _collect_permissions(self, user: Any, team: Team, scope: Scope | None) -> list[str]:
        codes: list[str] = []

        if scope in (None, Scope.ROLE):
            membership = self.repository.membership(team.id, user.id)
            if membership is not None:
                codes.extend(self.repository.permission_codes(EntityKind.ROLE, [membership.role_id]))

        if scope in (None, Scope.GROUP):
            group_ids = self.repository.user_group_ids(user.id, team.id)
            codes.extend(self.repository.permission_codes(EntityKind.GROUP, group_ids))

        return sorted(set(codes))

    def has_permission(
        self,
        user: Any,
        team: Team,
        permissions: str | Iterable[str],
        require_all: bool = False,
        scope: str | Scope | None = None,
        context: DecisionContext | None = None,
    ) -> bool:
        """Check whether the user holds one (or all) of the given permissions.

        Owners always pass. An empty permission list or a missing user always fails.

        Args:
            user: The acting user; only ``user.id`` is read.
            team: The team the check applies to.
            permissions: One code or several codes.
            require_all: Require every code instead of any one of them.
            scope: Restrict to role-derived ("role") or group-derived ("group") grants.
            context: Request-scoped memo for repeated checks.
        """
        if user is None:
            return False
        if self.owns_team(user, team):
            return True

        codes = as_codes(permissions)
        if not codes:
            return False

        resolved_scope = _scope(scope)
        key = f"user_{user.id}_team_{team.id}_permission_{fingerprint(codes, require_all, resolved_scope)}"
        decision = self._decide(
            context,
            key,
            [subject_tag(user.id, team.id)],
            lambda: self._determine_permission(user, team, codes, require_all, resolved_scope, context),
        )
        logger.debug("Permission %s for user %s in team %s: %s", codes, user.id, team.id, decision)
        return bool(decision)

    def _determine_permission(
        self,
        user: Any,
        team: Team,
        codes: list[str],
        require_all: bool,
        scope: Scope | None,
        context: DecisionContext | None,
    ) -> bool:
        nodes = self.settings.active_wildcard_nodes

        if scope == Scope.ROLE:
            membership = self.repository.membership(team.id, user.id)
            if membership is None:
                return False
            checks = (self.repository.role_has_any(membership.role_id, candidate_codes(code, nodes)) for code in codes)
            return all(checks) if require_all else any(checks)

        if scope is None and not require_all:
            membership = self.repository.membership(team.id, user.id)
            if membership is not None:
                candidates = [c for code in codes for c in candidate_codes(code, nodes)]
                if self.repository.role_has_any(membership.role_id, candidates):
                    return True

        held = self.permissions_for(user, team, scope, context=context)
        checks = (matches(held, code, nodes) for code in codes)
        return all(checks) if require_all else any(checks)

    def _has_global_group_permission(self, user: Any, permission: str, context: DecisionContext | None) -> bool:
        codes = self._decide(
            context,
            f"user_{user.id}_global_permissions",
            [],
            lambda: self.repository.permission_codes(EntityKind.GROUP, self.repository.user_group_ids(user.id, None)),
        )
        return matches(codes, permission, self.settings.active_wildcard_nodes)

    def has_ability(
        self,
        user: Any,
        team: Team,
        permission: str,
        entity: Any,
        context: DecisionContext | None = None,
    ) -> bool:
        """Check whether the user may perform ``permission`` on one entity.

        Team owners and owners of the entity itself pass. Otherwise role,
        team group and global group permissions raise the allowed level, and
        ability rows for the entity attached to the user's role, groups or to
        the user directly raise the allowed or forbidden level. The check
        passes when the allowed level is at least the forbidden level.
        """
        if user is None:
            return False
        if self.owns_team(user, team):
            return True
        if isinstance(entity, OwnedEntity) and entity.is_owner(user):
            return True

        arbiter = AccessArbiter()

        if self.has_permission(user, team, permission, scope=Scope.ROLE, context=context):
            arbiter.allow(AccessLevel.ROLE_ALLOWED)
        if self.has_permission(user, team, permission, scope=Scope.GROUP, context=context):
            arbiter.allow(AccessLevel.GROUP_ALLOWED)
        if self._has_global_group_permission(user, permission, context):
            arbiter.allow(AccessLevel.GLOBAL_ALLOWED)

        target = entity_ref(entity)
        permission_ids = self.repository.permission_ids(candidate_codes(permission))

        if permission_ids:
            sources: list[tuple[ActorKind, list[Any]]] = []
            membership = self.repository.membership(team.id, user.id)
            if membership is not None:
                sources.append((ActorKind.ROLE, [membership.role_id]))
            sources.append((ActorKind.GROUP, self.repository.user_group_ids(user.id, team.id)))
            sources.append((ActorKind.USER, [user.id]))

            for kind, actor_ids in sources:
                for forbidden in self.repository.ability_flags(team.id, target, permission_ids, kind, actor_ids):
                    arbiter.record(kind, forbidden)

        logger.debug("Ability %s on %r for user %s in team %s: %r", permission, target, user.id, team.id, arbiter)
        return arbiter.granted

    def team_abilities(
        self, user: Any, team: Team, entity: Any, forbidden_only: bool = False
    ) -> list[tuple[Ability, bool]]:
        """Abilities attached directly to the user for one entity, with their forbidden flag."""
        return self.repository.actor_abilities(team.id, entity_ref(entity), UserRef(user.id), forbidden_only)

    # Ability mutations

    def allow_ability(self, user: Any, team: Team, permission: str, entity: Any, target: Any = None) -> None:
        """Allow ``target`` (the user by default) to perform ``permission`` on ``entity``."""
        self._update_ability(user, team, permission, entity, target, forbidden=False)

    def forbid_ability(self, user: Any, team: Team, permission: str, entity: Any, target: Any = None) -> None:
        """Forbid ``target`` (the user by default) from performing ``permission`` on ``entity``."""
        self._update_ability(user, team, permission, entity, target, forbidden=True)

    def revoke_ability(self, user: Any, team: Team, permission: str, entity: Any, target: Any = None) -> None:
        """Remove the ability row linking ``target`` to ``permission`` on ``entity``."""
        self._update_ability(user, team, permission, entity, target, detach=True)

    def _update_ability(
        self,
        user: Any,
        team: Team,
        permission: str,
        entity: Any,
        target: Any,
        forbidden: bool = False,
        detach: bool = False,
    ) -> None:
        actor = self._actor_for(user, target)
        with atomic(self.session):
            permission_row = self.repository.get_or_create_permissions([permission])[0]
            ability = self.repository.get_or_create_ability(team.id, entity_ref(entity), permission_row.id)
            if detach:
                self.repository.detach_ability_actor(ability, actor)
            else:
                self.repository.set_ability_actor(ability, actor, forbidden)
            if forbidden or detach:
                self.audit.log_permission_revoked(team, user, permission)
            else:
                self.audit.log_permission_granted(team, user, permission)
        logger.info(
            "Ability %s on %s/%s %s for %r in team %s",
            permission,
            ability.entity_type,
            ability.entity_id,
            "detached" if detach else ("forbidden" if forbidden else "allowed"),
            actor,
            team.id,
        )

    @staticmethod
    def _actor_for(user: Any, target: Any) -> ActorRef:
        if target is None:
            return UserRef(user.id)
        if isinstance(target, ActorRef):
            return target
        if isinstance(target, Role):
            return RoleRef(target.id)
        if isinstance(target, Group):
            return GroupRef(target.id)
        if isinstance(target, type(user)):
            return UserRef(target.id)
        relation = f"{type(target).__name__.lower()}s"
        raise NotFound(f"Relation '{relation}' not found on ability model.")
