"""FastAPI Teams - multi-tenant team roles, groups, permissions and abilities."""

__version__ = "0.1.0"

from fastapi_teams.access import AccessArbiter, AccessLevel
from fastapi_teams.audit import AuditService
from fastapi_teams.cache import MemoryCacheProvider, PermissionCache, RedisCacheProvider
from fastapi_teams.context import DecisionContext
from fastapi_teams.core import TeamsAuthz
from fastapi_teams.dependencies import (
    TeamsUser,
    create_ability_dependency,
    create_auth_dependency,
    create_authz_dependency,
)
from fastapi_teams.entities import (
    ActorKind,
    EntityRef,
    GroupRef,
    OwnedEntity,
    RoleRef,
    Scope,
    TeamSubject,
    UserRef,
)
from fastapi_teams.exceptions import (
    CacheUnavailable,
    ConfigurationError,
    ConflictError,
    Forbidden,
    NotFound,
    RateLimitExceeded,
    TeamsError,
)
from fastapi_teams.matching import candidate_codes, matches
from fastapi_teams.members import MembershipManager
from fastapi_teams.resolver import PermissionResolver
from fastapi_teams.router import TeamsRouter
from fastapi_teams.settings import TeamsSettings, get_settings

__all__ = [
    "TeamsAuthz",
    "TeamsRouter",
    "TeamsUser",
    "TeamsSettings",
    "get_settings",
    "PermissionResolver",
    "MembershipManager",
    "PermissionCache",
    "MemoryCacheProvider",
    "RedisCacheProvider",
    "DecisionContext",
    "AuditService",
    "AccessLevel",
    "AccessArbiter",
    "ActorKind",
    "EntityRef",
    "RoleRef",
    "GroupRef",
    "UserRef",
    "OwnedEntity",
    "TeamSubject",
    "Scope",
    "candidate_codes",
    "matches",
    "TeamsError",
    "NotFound",
    "ConflictError",
    "RateLimitExceeded",
    "ConfigurationError",
    "CacheUnavailable",
    "Forbidden",
    "create_auth_dependency",
    "create_authz_dependency",
    "create_ability_dependency",
]
