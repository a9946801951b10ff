"""Configuration for team permission resolution, loaded from the environment."""

from __future__ import annotations

from typing import ClassVar, Literal, cast

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CacheStore = Literal["memory", "redis"]
PrimaryKeyType = Literal["int", "bigint", "uuid"]

AUDIT_EVENTS: tuple[str, ...] = (
    "role_assigned",
    "permission_granted",
    "permission_revoked",
    "team_member_added",
    "team_member_removed",
)


class TeamsSettings(BaseSettings):
    """Settings read from ``TEAMS_*`` environment variables."""

    model_config: ClassVar[SettingsConfigDict] = cast(
        SettingsConfigDict,
        {
            "env_file": ".env",
            "env_prefix": "TEAMS_",
            "case_sensitive": False,
            "extra": "ignore",
        },
    )

    cache_enabled: bool = True
    cache_store: CacheStore = "memory"
    cache_ttl: int = Field(default=3600, gt=0)
    cache_prefix: str = "teams_permissions"
    cache_tags: bool = True
    redis_url: str = "redis://localhost:6379/0"

    request_cache_decisions: bool = False

    wildcards_enabled: bool = False
    wildcard_nodes: list[str] = Field(default_factory=lambda: ["*", "*.*", "all"])

    primary_key_type: PrimaryKeyType = "bigint"

    audit_enabled: bool = False
    audit_events: list[str] = Field(default_factory=lambda: list(AUDIT_EVENTS))
    audit_logger: str = "fastapi_teams.audit"

    invitations_enabled: bool = True
    invitation_rate_limit_max: int = Field(default=10, ge=1)
    invitation_rate_limit_decay: int = Field(default=3600, gt=0)

    forbidden_message: str = "User does not have any of the necessary access rights."

    @field_validator("cache_prefix")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        value = value.strip().rstrip(":")
        if not value:
            raise ValueError("cache_prefix cannot be blank")
        return value

    @property
    def active_wildcard_nodes(self) -> tuple[str, ...]:
        """Super-admin tokens to fold into candidate lists, if enabled."""
        if not self.wildcards_enabled:
            return ()
        return tuple(self.wildcard_nodes)


def get_settings() -> TeamsSettings:
    """Return settings loaded from the environment."""

    return TeamsSettings()
