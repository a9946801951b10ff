from collections.abc import Awaitable, Callable, Iterator
from typing import Any, Generic, TypeVar

from fastapi import FastAPI, Request
from sqlalchemy.orm import Session

from fastapi_teams.cache import PermissionCache
from fastapi_teams.context import DecisionContext
from fastapi_teams.dependencies import (
    _teams_session_dependency_placeholder,
    _teams_team_dependency_placeholder,
    _teams_user_dependency_placeholder,
)
from fastapi_teams.members import MembershipManager, UserLookup
from fastapi_teams.resolver import PermissionResolver
from fastapi_teams.settings import TeamsSettings, get_settings

UserT = TypeVar("UserT")

Dependency = Callable[..., Any] | Callable[..., Awaitable[Any]]


class TeamsAuthz(Generic[UserT]):
    """Team permission configuration for a FastAPI application.

    Attaches to the application and wires the host's dependencies into the
    authorization checks performed by ``TeamsRouter`` endpoints and the
    dependencies built by ``create_authz_dependency``.

    Args:
        app: The FastAPI application instance.
        session_dependency: Dependency yielding a SQLAlchemy ``Session``.
        team_dependency: Dependency returning the ``Team`` the request targets,
            typically loaded from a path parameter.
        user_dependency: Optional dependency returning the authenticated user.
            When omitted, the user is read from ``request.state.user``.
        user_lookup: Resolves an e-mail address to a user, for invitations.
        settings: Configuration; defaults to the environment.
        cache: Persistent decision cache shared by every request.
    """

    def __init__(
        self,
        app: FastAPI,
        session_dependency: Callable[..., Iterator[Session]] | Callable[..., Session],
        team_dependency: Dependency,
        user_dependency: Dependency | None = None,
        user_lookup: UserLookup | None = None,
        settings: TeamsSettings | None = None,
        cache: PermissionCache | None = None,
    ) -> None:
        self.app = app
        self.session_dependency = session_dependency
        self.team_dependency = team_dependency
        self.user_dependency = user_dependency
        self.user_lookup = user_lookup
        self.settings = settings or get_settings()
        self.cache = cache or PermissionCache(self.settings)

        app.state.teams = self

        # Placeholders in every authz dependency are swapped for the host's
        # dependencies, so FastAPI resolves them with their own sub-dependencies.
        app.dependency_overrides[_teams_session_dependency_placeholder] = session_dependency
        app.dependency_overrides[_teams_team_dependency_placeholder] = team_dependency
        if user_dependency is not None:
            app.dependency_overrides[_teams_user_dependency_placeholder] = user_dependency

    def resolver(self, session: Session) -> PermissionResolver:
        return PermissionResolver(session, cache=self.cache, settings=self.settings)

    def members(self, session: Session) -> MembershipManager:
        return MembershipManager(session, cache=self.cache, settings=self.settings, user_lookup=self.user_lookup)

    def decision_context(self, request: Request) -> DecisionContext | None:
        """The request's decision memo, or None when request caching is off."""
        if not self.settings.request_cache_decisions:
            return None
        context = getattr(request.state, "teams_context", None)
        if context is None:
            context = DecisionContext()
            request.state.teams_context = context
        return context
