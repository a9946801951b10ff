from collections.abc import Iterator
from typing import Annotated

import pytest
from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fastapi_teams import (
    MembershipManager,
    MemoryCacheProvider,
    PermissionCache,
    PermissionResolver,
    TeamsAuthz,
    TeamsSettings,
)
from fastapi_teams.cache import get_memory_provider
from fastapi_teams.models import Base, Team


class User:
    def __init__(self, id: int, email: str | None = None) -> None:
        self.id = id
        self.email = email or f"user{id}@example.com"

    def __repr__(self) -> str:
        return f"User({self.id})"


@pytest.fixture(autouse=True)
def shared_memory_store() -> Iterator[None]:
    """Empty the process-wide memory store around every test."""
    get_memory_provider().clear()
    yield
    get_memory_provider().clear()


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine)


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> TeamsSettings:
    return TeamsSettings(_env_file=None, cache_enabled=True, cache_store="memory")


@pytest.fixture
def provider() -> MemoryCacheProvider:
    return MemoryCacheProvider()


@pytest.fixture
def cache(settings: TeamsSettings, provider: MemoryCacheProvider) -> PermissionCache:
    return PermissionCache(settings, provider)


@pytest.fixture
def users() -> dict[str, User]:
    return {
        "owner": User(1),
        "member": User(2),
        "outsider": User(3),
        "other": User(4),
    }


@pytest.fixture
def members(session: Session, cache: PermissionCache, settings: TeamsSettings, users: dict[str, User]) -> MembershipManager:
    registry = {user.email: user for user in users.values()}
    return MembershipManager(session, cache=cache, settings=settings, user_lookup=registry.get)


@pytest.fixture
def resolver(session: Session, cache: PermissionCache, settings: TeamsSettings) -> PermissionResolver:
    return PermissionResolver(session, cache=cache, settings=settings)


@pytest.fixture
def team(members: MembershipManager, users: dict[str, User]) -> Team:
    return members.create_team(users["owner"], "Test Team")


@pytest.fixture
def app(session_factory: sessionmaker[Session], settings: TeamsSettings, cache: PermissionCache) -> FastAPI:
    """Application wired to the test database; the caller is chosen with the X-User-Id header."""
    app = FastAPI()

    def get_session() -> Iterator[Session]:
        with session_factory() as session:
            yield session

    def get_team(team_id: int, session: Annotated[Session, Depends(get_session)]) -> Team:
        team = session.get(Team, team_id)
        if team is None:
            raise HTTPException(status_code=404, detail="Team not found")
        return team

    def get_current_user(x_user_id: Annotated[int | None, Header()] = None) -> User | None:
        return User(x_user_id) if x_user_id is not None else None

    TeamsAuthz(
        app,
        session_dependency=get_session,
        team_dependency=get_team,
        user_dependency=get_current_user,
        settings=settings,
        cache=cache,
    )
    return app
