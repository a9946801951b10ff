from collections.abc import Callable
from typing import Any

from fastapi_teams.cache import fingerprint


class DecisionContext:
    """Request-scoped memo of permission decisions.

    Create one per inbound request or logical operation, pass it to the
    resolver calls made while handling it, and drop it afterwards. It is
    never shared between requests, so it needs no invalidation; call
    ``clear()`` if the same operation mutates memberships and checks again.

    Example:
        ctx = DecisionContext()
        resolver.has_permission(user, team, "posts.view", context=ctx)
        resolver.has_permission(user, team, "posts.view", context=ctx)  # memo hit
    """

    __slots__ = ("_decisions", "hits")

    def __init__(self) -> None:
        self._decisions: dict[str, Any] = {}
        self.hits = 0

    @staticmethod
    def key(*parts: Any) -> str:
        return fingerprint(*parts)

    def remember(self, key: str, producer: Callable[[], Any]) -> Any:
        if key in self._decisions:
            self.hits += 1
            return self._decisions[key]
        value = producer()
        self._decisions[key] = value
        return value

    def clear(self) -> None:
        self._decisions.clear()

    def __len__(self) -> int:
        return len(self._decisions)

    def __contains__(self, key: object) -> bool:
        return key in self._decisions
