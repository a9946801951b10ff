from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class ActorKind(StrEnum):
    """Who an ability is granted to or forbidden for."""

    ROLE = "role"
    GROUP = "group"
    USER = "user"


class EntityKind(StrEnum):
    """Owners of permission attachments."""

    ROLE = "role"
    GROUP = "group"


class Scope(StrEnum):
    """Restricts permission resolution to one grant source."""

    ROLE = "role"
    GROUP = "group"


@runtime_checkable
class TeamSubject(Protocol):
    """The host application's user type; only its identifier is used."""

    id: Any


@runtime_checkable
class OwnedEntity(Protocol):
    """Entities that know who owns them bypass ability checks for that owner."""

    def is_owner(self, user: Any) -> bool: ...


class ActorRef:
    """Reference to an ability actor: a role, a group or a user."""

    __slots__ = ("kind", "id")

    def __init__(self, kind: ActorKind, id: Any) -> None:
        self.kind = kind
        self.id = id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ActorRef):
            return NotImplemented
        return self.kind == other.kind and self.id == other.id

    def __hash__(self) -> int:
        return hash((self.kind, self.id))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.id!r})"


class RoleRef(ActorRef):
    def __init__(self, id: Any) -> None:
        super().__init__(ActorKind.ROLE, id)


class GroupRef(ActorRef):
    def __init__(self, id: Any) -> None:
        super().__init__(ActorKind.GROUP, id)


class UserRef(ActorRef):
    def __init__(self, id: Any) -> None:
        super().__init__(ActorKind.USER, id)


class EntityRef:
    """Type tag and identifier of an ability target entity."""

    __slots__ = ("type", "id")

    def __init__(self, type: str, id: Any) -> None:
        self.type = type
        self.id = id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EntityRef):
            return NotImplemented
        return self.type == other.type and self.id == other.id

    def __hash__(self) -> int:
        return hash((self.type, self.id))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.type!r}, {self.id!r})"


def entity_type_of(entity: Any) -> str:
    """Derive the stored type tag for an entity.

    An explicit ``__teams_entity_type__`` wins, then a mapped
    ``__tablename__``, then the class name.
    """
    explicit = getattr(entity, "__teams_entity_type__", None)
    if explicit:
        return str(explicit)
    tablename = getattr(type(entity), "__tablename__", None)
    if tablename:
        return str(tablename)
    return type(entity).__name__


def entity_ref(entity: Any) -> EntityRef:
    if isinstance(entity, EntityRef):
        return entity
    return EntityRef(entity_type_of(entity), entity.id)
