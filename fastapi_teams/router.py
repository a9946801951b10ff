"""TeamsRouter - FastAPI router with team permission checks."""

import inspect
from collections.abc import Callable
from functools import wraps
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from fastapi_teams.dependencies import create_ability_dependency, create_authz_dependency, validate_permissions
from fastapi_teams.entities import Scope

# (permission code, dependency returning the target entity)
AbilityRequirement = tuple[str, Callable[..., Any]]


class TeamsRouter(APIRouter):
    """FastAPI router that injects team authorization checks into endpoints.

    Args:
        permissions: Default permissions required for all endpoints on this router.
        roles: Default team roles required for all endpoints on this router.
        require_all: Require every listed permission or role instead of any one.
        scope: Restrict permission checks to "role" or "group" grants.
        **kwargs: Additional arguments passed to APIRouter.

    Example:
        router = TeamsRouter(prefix="/teams/{team_id}", permissions={"posts.view"})

        @router.get("/posts")
        def list_posts(user: User = Depends(AuthUser)):
            return {"posts": [...]}

        # Override permissions for a specific endpoint
        @router.delete("/posts/{post_id}", ability=("posts.delete", get_post))
        def delete_post(post_id: int):
            ...
    """

    def __init__(
        self,
        *,
        permissions: set[str] | None = None,
        roles: set[str] | None = None,
        require_all: bool = False,
        scope: str | Scope | None = None,
        **kwargs: Any,
    ) -> None:
        validate_permissions(permissions, "router permissions")

        super().__init__(**kwargs)
        self.default_permissions: set[str] = permissions or set()
        self.default_roles: set[str] = roles or set()
        self.require_all = require_all
        self.scope = scope
        self.endpoint_requirements: dict[tuple[str, str], dict[str, Any]] = {}

    def _resolve_requirements(
        self,
        path: str,
        method: str,
        permissions: set[str] | None,
        roles: set[str] | None,
        ability: AbilityRequirement | None,
    ) -> tuple[set[str], set[str]]:
        """Endpoint permissions and roles override the router defaults."""
        validate_permissions(permissions, "endpoint permissions")

        final_permissions = permissions if permissions is not None else self.default_permissions
        final_roles = roles if roles is not None else self.default_roles

        self.endpoint_requirements[(path, method)] = {
            "permissions": final_permissions,
            "roles": final_roles,
            "ability": ability[0] if ability else None,
        }
        return final_permissions, final_roles

    @staticmethod
    def _wrap_endpoint(endpoint: Callable[..., Any], checks: list[Callable[..., Any]]) -> Callable[..., Any]:
        """Append authorization dependencies to the endpoint signature.

        They are placed last so they run after the endpoint's own user
        dependencies.
        """
        sig = inspect.signature(endpoint)
        params = list(sig.parameters.values())
        names = [f"_teams_check_{i}_" for i in range(len(checks))]

        check_params = [
            inspect.Parameter(
                name,
                inspect.Parameter.KEYWORD_ONLY,
                default=None,
                annotation=Annotated[None, Depends(check)],
            )
            for name, check in zip(names, checks)
        ]
        new_sig = sig.replace(parameters=params + check_params)

        if inspect.iscoroutinefunction(endpoint):

            @wraps(endpoint)
            async def wrapped_async(*args: Any, **kwargs: Any) -> Any:
                for name in names:
                    kwargs.pop(name, None)
                return await endpoint(*args, **kwargs)

            wrapped_async.__signature__ = new_sig  # type: ignore[attr-defined]
            return wrapped_async

        @wraps(endpoint)
        def wrapped_sync(*args: Any, **kwargs: Any) -> Any:
            for name in names:
                kwargs.pop(name, None)
            return endpoint(*args, **kwargs)

        wrapped_sync.__signature__ = new_sig  # type: ignore[attr-defined]
        return wrapped_sync

    def _add_route_with_authz(
        self,
        path: str,
        method: str,
        endpoint: Callable[..., Any],
        permissions: set[str] | None,
        roles: set[str] | None,
        ability: AbilityRequirement | None,
        parent_method: Callable[..., Any],
        **kwargs: Any,
    ) -> Callable[..., Any]:
        final_permissions, final_roles = self._resolve_requirements(path, method, permissions, roles, ability)

        checks: list[Callable[..., Any]] = []
        if final_permissions or final_roles:
            checks.append(
                create_authz_dependency(
                    permissions=final_permissions,
                    roles=final_roles,
                    require_all=self.require_all,
                    scope=self.scope,
                )
            )
        if ability is not None:
            checks.append(create_ability_dependency(*ability))

        if checks:
            endpoint = self._wrap_endpoint(endpoint, checks)

        result: Callable[..., Any] = parent_method(path, **kwargs)(endpoint)
        return result

    def _route(
        self,
        method: str,
        parent_method: Callable[..., Any],
        path: str,
        permissions: set[str] | None,
        roles: set[str] | None,
        ability: AbilityRequirement | None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            return self._add_route_with_authz(path, method, func, permissions, roles, ability, parent_method, **kwargs)

        return decorator

    def get(  # type: ignore[override]
        self,
        path: str,
        *,
        permissions: set[str] | None = None,
        roles: set[str] | None = None,
        ability: AbilityRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a GET endpoint with optional requirement overrides."""
        return self._route("GET", super().get, path, permissions, roles, ability, **kwargs)

    def post(  # type: ignore[override]
        self,
        path: str,
        *,
        permissions: set[str] | None = None,
        roles: set[str] | None = None,
        ability: AbilityRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a POST endpoint with optional requirement overrides."""
        return self._route("POST", super().post, path, permissions, roles, ability, **kwargs)

    def put(  # type: ignore[override]
        self,
        path: str,
        *,
        permissions: set[str] | None = None,
        roles: set[str] | None = None,
        ability: AbilityRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a PUT endpoint with optional requirement overrides."""
        return self._route("PUT", super().put, path, permissions, roles, ability, **kwargs)

    def patch(  # type: ignore[override]
        self,
        path: str,
        *,
        permissions: set[str] | None = None,
        roles: set[str] | None = None,
        ability: AbilityRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a PATCH endpoint with optional requirement overrides."""
        return self._route("PATCH", super().patch, path, permissions, roles, ability, **kwargs)

    def delete(  # type: ignore[override]
        self,
        path: str,
        *,
        permissions: set[str] | None = None,
        roles: set[str] | None = None,
        ability: AbilityRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a DELETE endpoint with optional requirement overrides."""
        return self._route("DELETE", super().delete, path, permissions, roles, ability, **kwargs)
