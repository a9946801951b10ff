from fastapi_teams import (
    CacheUnavailable,
    ConfigurationError,
    ConflictError,
    Forbidden,
    NotFound,
    RateLimitExceeded,
    TeamsError,
)


class TestExceptions:
    def test_forbidden_has_403_status_code(self) -> None:
        exc = Forbidden()
        assert exc.status_code == 403

    def test_forbidden_has_default_detail(self) -> None:
        exc = Forbidden()
        assert exc.detail == "Forbidden"

    def test_forbidden_accepts_custom_detail(self) -> None:
        exc = Forbidden(detail="Custom message")
        assert exc.detail == "Custom message"

    def test_core_errors_share_a_base(self) -> None:
        for error in (NotFound, ConflictError, RateLimitExceeded, ConfigurationError, CacheUnavailable):
            assert issubclass(error, TeamsError)

    def test_not_found_is_a_lookup_error(self) -> None:
        assert issubclass(NotFound, LookupError)
