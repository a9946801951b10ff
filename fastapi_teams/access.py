from enum import IntEnum

from fastapi_teams.entities import ActorKind


class AccessLevel(IntEnum):
    """Provenance ranks used to arbitrate allow/forbid signals.

    Each source has its own rank, strictly increasing from role to user to
    global groups. A decision is granted when the strongest allow signal is
    at least as strong as the strongest forbid signal.
    """

    DEFAULT = 0
    FORBIDDEN = 1
    ROLE_ALLOWED = 2
    ROLE_FORBIDDEN = 3
    GROUP_ALLOWED = 4
    GROUP_FORBIDDEN = 5
    USER_ALLOWED = 6
    USER_FORBIDDEN = 7
    GLOBAL_ALLOWED = 8


_ACTOR_LEVELS: dict[ActorKind, tuple[AccessLevel, AccessLevel]] = {
    ActorKind.ROLE: (AccessLevel.ROLE_ALLOWED, AccessLevel.ROLE_FORBIDDEN),
    ActorKind.GROUP: (AccessLevel.GROUP_ALLOWED, AccessLevel.GROUP_FORBIDDEN),
    ActorKind.USER: (AccessLevel.USER_ALLOWED, AccessLevel.USER_FORBIDDEN),
}


def level_for(kind: ActorKind, forbidden: bool) -> AccessLevel:
    """Return the rank of an ability signal coming from an actor kind."""
    allowed_level, forbidden_level = _ACTOR_LEVELS[kind]
    return forbidden_level if forbidden else allowed_level


class AccessArbiter:
    """Running maxima of allow and forbid signals for one ability check."""

    __slots__ = ("allowed", "forbidden")

    def __init__(self) -> None:
        self.allowed = AccessLevel.DEFAULT
        self.forbidden = AccessLevel.FORBIDDEN

    def allow(self, level: AccessLevel) -> None:
        self.allowed = max(self.allowed, level)

    def forbid(self, level: AccessLevel) -> None:
        self.forbidden = max(self.forbidden, level)

    def record(self, kind: ActorKind, forbidden: bool) -> None:
        level = level_for(kind, forbidden)
        if forbidden:
            self.forbid(level)
        else:
            self.allow(level)

    @property
    def granted(self) -> bool:
        return self.allowed >= self.forbidden

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(allowed={self.allowed.name}, forbidden={self.forbidden.name})"
