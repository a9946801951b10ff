"""Team membership, role and group management.

Every mutation here runs in one transaction and flushes the persistent
permission cache before returning, since roles, groups and memberships all
feed cached permission decisions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from fastapi_teams.audit import AuditService
from fastapi_teams.cache import PermissionCache
from fastapi_teams.entities import EntityKind, GroupRef, RoleRef
from fastapi_teams.exceptions import ConfigurationError, ConflictError, NotFound, RateLimitExceeded
from fastapi_teams.models import Group, Invitation, Membership, Role, Team
from fastapi_teams.repository import TeamRepository, atomic
from fastapi_teams.resolver import as_codes
from fastapi_teams.settings import TeamsSettings, get_settings

logger = logging.getLogger(__name__)

UserLookup = Callable[[str], Any]


class MembershipManager:
    """Mutates teams and keeps cached permission decisions consistent.

    Args:
        session: SQLAlchemy session; the manager commits its own transactions.
        cache: Persistent decision cache to flush after mutations.
        settings: Configuration; defaults to the environment.
        audit: Audit collaborator notified of membership and grant changes.
        user_lookup: Resolves an e-mail address to a host user (or None).
            Required only for accepting invitations.
    """

    def __init__(
        self,
        session: Session,
        cache: PermissionCache | None = None,
        settings: TeamsSettings | None = None,
        audit: AuditService | None = None,
        user_lookup: UserLookup | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.cache = cache or PermissionCache(self.settings)
        self.audit = audit or AuditService(session, self.settings)
        self.user_lookup = user_lookup
        self.repository = TeamRepository(session)

    def _invalidate(self) -> None:
        self.cache.flush()

    # Teams

    def create_team(self, owner: Any, name: str) -> Team:
        with atomic(self.session):
            team = Team(owner_id=owner.id, name=name)
            self.session.add(team)
        logger.info("Team %s created for owner %s", team.id, owner.id)
        return team

    def delete_team(self, team: Team) -> None:
        with atomic(self.session):
            for role in self.repository.roles(team.id):
                self.repository.detach_permissions(EntityKind.ROLE, role.id)
                self.repository.detach_actor_everywhere(RoleRef(role.id))
            for group in self.repository.groups(team.id):
                self.repository.detach_permissions(EntityKind.GROUP, group.id)
                self.repository.detach_actor_everywhere(GroupRef(group.id))
            self.session.delete(team)
        self._invalidate()

    # Roles

    def get_role(self, team: Team, code: str) -> Role:
        role = self.repository.role_by_code(team.id, code)
        if role is None:
            raise NotFound(f"Role '{code}' not found in team '{team.id}'.")
        return role

    def role_permissions(self, team: Team, code: str) -> set[str]:
        role = self.get_role(team, code)
        return set(self.repository.permission_codes(EntityKind.ROLE, [role.id]))

    def roles(self, team: Team) -> list[tuple[Role, list[str]]]:
        """All roles of a team with their permission codes."""
        return [
            (role, self.repository.permission_codes(EntityKind.ROLE, [role.id]))
            for role in self.repository.roles(team.id)
        ]

    def add_role(
        self,
        team: Team,
        code: str,
        permissions: Iterable[str] = (),
        name: str | None = None,
        description: str | None = None,
    ) -> Role:
        if self.repository.role_by_code(team.id, code) is not None:
            raise ConflictError(f"Role '{code}' already exists in team '{team.id}'.")

        with atomic(self.session):
            role = Role(team_id=team.id, code=code, name=name or code, description=description)
            self.session.add(role)
            self.session.flush()
            self.repository.sync_permissions(EntityKind.ROLE, role.id, as_codes(permissions))
        self._invalidate()
        logger.info("Role %s added to team %s", code, team.id)
        return role

    def update_role(
        self,
        team: Team,
        code: str,
        permissions: Iterable[str] | None = None,
        name: str | None = None,
        description: str | None = None,
        actor: Any = None,
    ) -> Role:
        """Rename a role or replace its permissions; ``None`` leaves a field unchanged."""
        role = self.get_role(team, code)

        with atomic(self.session):
            if name is not None:
                role.name = name
            if description is not None:
                role.description = description
            if permissions is not None:
                granted, revoked = self.repository.sync_permissions(EntityKind.ROLE, role.id, as_codes(permissions))
                for permission in sorted(granted):
                    self.audit.log_permission_granted(team, actor, permission)
                for permission in sorted(revoked):
                    self.audit.log_permission_revoked(team, actor, permission)
        self._invalidate()
        logger.info("Role %s updated in team %s", code, team.id)
        return role

    def delete_role(self, team: Team, code: str) -> None:
        role = self.get_role(team, code)
        if self.repository.role_in_use(role.id):
            raise ConflictError(f"Role '{code}' is still assigned to members of team '{team.id}'.")

        with atomic(self.session):
            self.repository.detach_permissions(EntityKind.ROLE, role.id)
            self.repository.detach_actor_everywhere(RoleRef(role.id))
            self.session.delete(role)
        self._invalidate()
        logger.info("Role %s deleted from team %s", code, team.id)

    # Groups

    def get_group(self, team: Team | None, code: str) -> Group:
        team_id = team.id if team is not None else None
        group = self.repository.group_by_code(team_id, code)
        if group is None:
            raise NotFound(f"Group '{code}' not found.")
        return group

    def group_permissions(self, team: Team | None, code: str) -> set[str]:
        group = self.get_group(team, code)
        return set(self.repository.permission_codes(EntityKind.GROUP, [group.id]))

    def add_group(
        self,
        team: Team | None,
        code: str,
        permissions: Iterable[str] = (),
        name: str | None = None,
    ) -> Group:
        """Create a group; a ``None`` team makes it global."""
        team_id = team.id if team is not None else None
        if self.repository.group_by_code(team_id, code) is not None:
            raise ConflictError(f"Group '{code}' already exists.")

        with atomic(self.session):
            group = Group(team_id=team_id, code=code, name=name or code)
            self.session.add(group)
            self.session.flush()
            self.repository.sync_permissions(EntityKind.GROUP, group.id, as_codes(permissions))
        self._invalidate()
        logger.info("Group %s added (team %s)", code, team_id)
        return group

    def update_group(
        self,
        team: Team | None,
        code: str,
        permissions: Iterable[str] | None = None,
        name: str | None = None,
        actor: Any = None,
    ) -> Group:
        group = self.get_group(team, code)

        with atomic(self.session):
            if name is not None:
                group.name = name
            if permissions is not None:
                granted, revoked = self.repository.sync_permissions(EntityKind.GROUP, group.id, as_codes(permissions))
                for permission in sorted(granted):
                    self.audit.log_permission_granted(team, actor, permission)
                for permission in sorted(revoked):
                    self.audit.log_permission_revoked(team, actor, permission)
        self._invalidate()
        return group

    def delete_group(self, team: Team | None, code: str) -> None:
        group = self.get_group(team, code)

        with atomic(self.session):
            self.repository.detach_permissions(EntityKind.GROUP, group.id)
            self.repository.detach_actor_everywhere(GroupRef(group.id))
            self.session.delete(group)
        self._invalidate()

    def attach_user_to_group(self, team: Team | None, code: str, user: Any) -> None:
        group = self.get_group(team, code)
        with atomic(self.session):
            self.repository.attach_group_user(group.id, user.id)
        self._invalidate()

    def detach_user_from_group(self, team: Team | None, code: str, user: Any) -> None:
        group = self.get_group(team, code)
        with atomic(self.session):
            self.repository.detach_group_user(group.id, user.id)
        self._invalidate()

    # Members

    def has_user(self, team: Team, user: Any) -> bool:
        return team.owner_id == user.id or self.repository.membership(team.id, user.id) is not None

    def member_ids(self, team: Team) -> list[Any]:
        """The owner's id followed by every member's id."""
        return [team.owner_id, *(m.user_id for m in self.repository.memberships(team.id))]

    def get_permission_ids(self, codes: Iterable[str]) -> list[Any]:
        """Ids of the given permission codes, creating missing permissions."""
        with atomic(self.session):
            permissions = self.repository.get_or_create_permissions(as_codes(codes))
        return [permission.id for permission in permissions]

    def _add_user(self, team: Team, user: Any, role_code: str, actor: Any) -> Membership:
        if team.owner_id == user.id:
            raise ConflictError(f"User '{user.id}' already owns team '{team.id}'.")
        if self.repository.membership(team.id, user.id) is not None:
            raise ConflictError(f"User '{user.id}' already belongs to team '{team.id}'.")

        role = self.get_role(team, role_code)
        membership = Membership(team_id=team.id, user_id=user.id, role_id=role.id)
        self.session.add(membership)
        self.session.flush()

        self.audit.log_team_member_added(team, actor, user, role)
        self.audit.log_role_assigned(team, actor, role)
        return membership

    def add_user(self, team: Team, user: Any, role_code: str, actor: Any = None) -> Membership:
        """Add a user to a team with a role.

        Raises:
            ConflictError: If the user owns or already belongs to the team.
            NotFound: If the role does not exist in the team.
        """
        with atomic(self.session):
            membership = self._add_user(team, user, role_code, actor)
        self._invalidate()
        logger.info("User %s added to team %s as %s", user.id, team.id, role_code)
        return membership

    def update_user(self, team: Team, user: Any, role_code: str, actor: Any = None) -> Membership:
        """Change the role of an existing member."""
        membership = self.repository.membership(team.id, user.id)
        if membership is None:
            raise NotFound(f"User '{user.id}' is not a member of team '{team.id}'.")
        role = self.get_role(team, role_code)

        with atomic(self.session):
            membership.role_id = role.id
            self.session.flush()
            self.audit.log_role_assigned(team, actor, role)
        self._invalidate()
        logger.info("User %s role changed to %s in team %s", user.id, role_code, team.id)
        return membership

    def delete_user(self, team: Team, user: Any, actor: Any = None) -> None:
        if team.owner_id == user.id:
            raise ConflictError(f"The owner of team '{team.id}' cannot be removed.")
        membership = self.repository.membership(team.id, user.id)
        if membership is None:
            raise NotFound(f"User '{user.id}' is not a member of team '{team.id}'.")

        with atomic(self.session):
            self.session.delete(membership)
            self.audit.log_team_member_removed(team, actor, user)
        self._invalidate()
        logger.info("User %s removed from team %s", user.id, team.id)

    # Invitations

    def invite_user(self, team: Team, email: str, role_code: str) -> Invitation:
        """Record a pending invitation; delivery is left to the host application.

        Raises:
            ConfigurationError: If invitations are disabled.
            RateLimitExceeded: If the team sent too many invitations recently.
            ConflictError: If the address is already invited or already a member.
            NotFound: If the role does not exist in the team.
        """
        if not self.settings.invitations_enabled:
            raise ConfigurationError("Team invitations are disabled.")

        email = email.strip().lower()
        since = datetime.now(tz=UTC) - timedelta(seconds=self.settings.invitation_rate_limit_decay)
        if self.repository.invitations_since(team.id, since) >= self.settings.invitation_rate_limit_max:
            raise RateLimitExceeded(f"Too many invitations sent for team '{team.id}'. Try again later.")

        if self.repository.invitation_for(team.id, email) is not None:
            raise ConflictError(f"'{email}' has already been invited to team '{team.id}'.")
        if self.user_lookup is not None:
            existing = self.user_lookup(email)
            if existing is not None and self.has_user(team, existing):
                raise ConflictError(f"'{email}' already belongs to team '{team.id}'.")

        role = self.get_role(team, role_code)
        with atomic(self.session):
            invitation = Invitation(team_id=team.id, email=email, role_id=role.id)
            self.session.add(invitation)
        logger.info("Invitation for %s to team %s as %s", email, team.id, role_code)
        return invitation

    def accept_invitation(self, invitation_id: Any) -> Membership:
        """Turn a pending invitation into a membership and delete it."""
        invitation = self.repository.invitation(invitation_id)
        if invitation is None:
            raise NotFound(f"Invitation '{invitation_id}' not found.")
        if self.user_lookup is None:
            raise ConfigurationError("A user lookup is required to accept invitations.")

        user = self.user_lookup(invitation.email)
        if user is None:
            raise NotFound(f"No user registered with e-mail '{invitation.email}'.")

        team = invitation.team
        with atomic(self.session):
            membership = self._add_user(team, user, invitation.role.code, user)
            self.session.delete(invitation)
        self._invalidate()
        logger.info("Invitation %s accepted by user %s", invitation_id, user.id)
        return membership

    def reject_invitation(self, invitation_id: Any) -> None:
        invitation = self.repository.invitation(invitation_id)
        if invitation is None:
            raise NotFound(f"Invitation '{invitation_id}' not found.")
        with atomic(self.session):
            self.session.delete(invitation)
