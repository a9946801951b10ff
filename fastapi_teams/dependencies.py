from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Annotated, Any, TypeVar

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from fastapi_teams.entities import Scope
from fastapi_teams.exceptions import ConfigurationError, Forbidden
from fastapi_teams.matching import is_wildcard
from fastapi_teams.models import Team

if TYPE_CHECKING:
    from fastapi_teams.core import TeamsAuthz

UserT = TypeVar("UserT")


def TeamsUser(request: Request) -> Any:
    """Get the current authenticated user from ``request.state.user``.

    The user is stored there by the dependency created via
    ``create_auth_dependency()``.

    Raises:
        Forbidden: If no user is found in request state.
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise Forbidden("User not authenticated")
    return user


def create_auth_dependency(
    teams: "TeamsAuthz[UserT]",  # noqa: ARG001 - kept for API consistency with TeamsRouter
    user_dependency: Callable[..., UserT] | Callable[..., Awaitable[UserT]],
) -> Callable[..., Coroutine[Any, Any, UserT]]:
    """Create a typed auth dependency for use in endpoints.

    Args:
        teams: The TeamsAuthz configuration instance.
        user_dependency: A FastAPI dependency that returns the authenticated user.

    Returns:
        A dependency that can be used with Depends() in endpoint signatures.
    """

    async def auth_dependency(
        request: Request,
        user: Annotated[UserT, Depends(user_dependency)],
    ) -> UserT:
        request.state.user = user
        return user

    return auth_dependency


async def _teams_user_dependency_placeholder(request: Request) -> Any:
    """Placeholder for the host's user dependency.

    Replaced through ``dependency_overrides`` when TeamsAuthz is given a
    user_dependency; otherwise falls back to ``request.state.user``.
    """
    return getattr(request.state, "user", None)


def _teams_team_dependency_placeholder() -> Team:
    """Placeholder for the host's team dependency, replaced by TeamsAuthz."""
    raise ConfigurationError("No team dependency configured. Create a TeamsAuthz instance with your app.")


def _teams_session_dependency_placeholder() -> Session:
    """Placeholder for the host's session dependency, replaced by TeamsAuthz."""
    raise ConfigurationError("No session dependency configured. Create a TeamsAuthz instance with your app.")


def get_teams(request: Request) -> "TeamsAuthz[Any]":
    teams = getattr(request.app.state, "teams", None)
    if teams is None:
        raise ConfigurationError("TeamsAuthz not configured. Make sure to create a TeamsAuthz instance with your app.")
    return teams


def validate_permissions(permissions: set[str] | None, location: str) -> None:
    """Reject wildcard codes in requirements; wildcards belong in grants.

    Raises:
        ConfigurationError: If any permission contains a wildcard.
    """
    if permissions is None:
        return
    for perm in permissions:
        if is_wildcard(perm):
            raise ConfigurationError(
                f"Wildcard permissions are not allowed in {location}. "
                f"Found '{perm}'. Wildcards should only be used in role and group grants."
            )


def create_authz_dependency(
    permissions: set[str] | None = None,
    roles: set[str] | None = None,
    require_all: bool = False,
    scope: str | Scope | None = None,
) -> Callable[..., None]:
    """Create a dependency that checks team roles and permissions.

    The dependency resolves the user, the team and a session through the
    dependencies registered on TeamsAuthz, then raises ``Forbidden`` unless
    every configured requirement passes.

    Args:
        permissions: Permission codes; any one suffices unless require_all.
        roles: Role codes; any one suffices unless require_all.
        require_all: Require every listed code.
        scope: Restrict permission checks to "role" or "group" grants.

    Returns:
        A dependency function for use with FastAPI's Depends().
    """
    if not permissions and not roles:
        raise ConfigurationError("Endpoint must be protected with permissions or roles")
    validate_permissions(permissions, "endpoint permissions")

    def authz_dependency(
        request: Request,
        user: Annotated[Any, Depends(_teams_user_dependency_placeholder)],
        team: Annotated[Team, Depends(_teams_team_dependency_placeholder)],
        session: Annotated[Session, Depends(_teams_session_dependency_placeholder)],
    ) -> None:
        teams = get_teams(request)
        if user is None:
            raise Forbidden("User not authenticated")

        resolver = teams.resolver(session)
        context = teams.decision_context(request)
        message = teams.settings.forbidden_message

        if roles and not resolver.has_role(user, team, roles, require_all=require_all):
            raise Forbidden(message)

        if permissions and not resolver.has_permission(
            user, team, permissions, require_all=require_all, scope=scope, context=context
        ):
            raise Forbidden(message)

    return authz_dependency


def create_ability_dependency(
    permission: str,
    entity_dependency: Callable[..., Any],
) -> Callable[..., None]:
    """Create a dependency that checks an ability on the entity a request targets.

    Args:
        permission: The permission code to check.
        entity_dependency: Dependency returning the target entity, typically
            loaded from a path parameter.
    """
    validate_permissions({permission}, "ability permissions")

    def ability_dependency(
        request: Request,
        user: Annotated[Any, Depends(_teams_user_dependency_placeholder)],
        team: Annotated[Team, Depends(_teams_team_dependency_placeholder)],
        session: Annotated[Session, Depends(_teams_session_dependency_placeholder)],
        entity: Annotated[Any, Depends(entity_dependency)],
    ) -> None:
        teams = get_teams(request)
        if user is None:
            raise Forbidden("User not authenticated")

        resolver = teams.resolver(session)
        if not resolver.has_ability(user, team, permission, entity, context=teams.decision_context(request)):
            raise Forbidden(teams.settings.forbidden_message)

    return ability_dependency
