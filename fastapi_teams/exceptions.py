from fastapi import HTTPException
from starlette.status import HTTP_403_FORBIDDEN


class TeamsError(Exception):
    """Base class for errors raised by the permission core."""


class NotFound(TeamsError, LookupError):
    """A team, role, group, permission, invitation or user lookup failed."""


class ConflictError(TeamsError):
    """A mutation would break a uniqueness rule; nothing was written."""


class RateLimitExceeded(ConflictError):
    """Too many invitations were sent for a team within the configured window."""


class ConfigurationError(TeamsError):
    """A required binding is missing."""


class CacheUnavailable(TeamsError):
    """The persistent cache provider could not be reached."""


class Forbidden(HTTPException):
    """403 Forbidden - user lacks the required team access."""

    def __init__(self, detail: str = "Forbidden") -> None:
        super().__init__(status_code=HTTP_403_FORBIDDEN, detail=detail)
