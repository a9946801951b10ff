"""
Basic example demonstrating fastapi-teams usage.

Run with:
    uvicorn examples.basic_app:app --reload

Then visit:
    - http://localhost:18000/docs - OpenAPI documentation

Pass the caller's id in the X-User-Id header (1 owns team 1, 2 is a member,
3 is an admin, 4 is a guest).
"""

from collections.abc import Iterator
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fastapi_teams import PermissionCache, TeamsAuthz, TeamsRouter, TeamsSettings
from fastapi_teams.models import Base, Team


# =============================================================================
# User Model
# =============================================================================
class User:
    def __init__(self, user_id: int, email: str):
        self.id = user_id
        self.email = email


# Fake user database
USERS = {
    1: User(1, "owner@example.com"),
    2: User(2, "member@example.com"),
    3: User(3, "admin@example.com"),
    4: User(4, "guest@example.com"),
}


class Report:
    """Reports know their author, so authors always pass ability checks."""

    __teams_entity_type__ = "reports"

    def __init__(self, report_id: int, title: str, author_id: int):
        self.id = report_id
        self.title = title
        self.author_id = author_id

    def is_owner(self, user: User) -> bool:
        return self.author_id == user.id


# Fake report database
REPORTS = {
    1: Report(1, "Q1 Sales Report", author_id=2),
    2: Report(2, "Q2 Sales Report", author_id=4),
    3: Report(3, "Engineering Report", author_id=3),
}


# =============================================================================
# Storage
# =============================================================================
engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
SessionLocal = sessionmaker(bind=engine)
Base.metadata.create_all(engine)


def get_session() -> Iterator[Session]:
    with SessionLocal() as session:
        yield session


def get_team(team_id: int, session: Annotated[Session, Depends(get_session)]) -> Team:
    team = session.get(Team, team_id)
    if team is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return team


def get_report(report_id: int) -> Report:
    report = REPORTS.get(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


# =============================================================================
# Authentication Dependency
# =============================================================================
async def get_current_user(x_user_id: Annotated[int, Header()]) -> User:
    """Simulate authentication via X-User-Id header."""
    user = USERS.get(x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


# =============================================================================
# Application Setup
# =============================================================================
app = FastAPI(
    title="Teams Example",
    description="Example app demonstrating fastapi-teams",
)

settings = TeamsSettings(_env_file=None)
teams: TeamsAuthz[User] = TeamsAuthz(
    app,
    session_dependency=get_session,
    team_dependency=get_team,
    user_dependency=get_current_user,
    user_lookup=lambda email: next((u for u in USERS.values() if u.email == email), None),
    settings=settings,
    cache=PermissionCache(settings),
)


def seed() -> None:
    with SessionLocal() as session:
        members = teams.members(session)
        team = members.create_team(USERS[1], "Acme")
        members.add_role(team, "admin", ["reports.*"], "Administrator")
        members.add_role(team, "member", ["reports.view", "reports.create"], "Member")
        members.add_role(team, "guest", [], "Guest")
        members.add_user(team, USERS[2], "member")
        members.add_user(team, USERS[3], "admin")
        members.add_user(team, USERS[4], "guest")
        members.add_group(team, "auditors", ["reports.view"], "Auditors")
        members.attach_user_to_group(team, "auditors", USERS[4])


seed()


# =============================================================================
# Routes
# =============================================================================
router = TeamsRouter(
    prefix="/teams/{team_id}/reports",
    tags=["Reports"],
    permissions={"reports.view"},
)


@router.get("")
async def list_reports():
    """List reports. Requires reports.view from a role or a team group."""
    return [{"id": r.id, "title": r.title} for r in REPORTS.values()]


@router.post("", permissions={"reports.create"})
async def create_report(title: str, user: Annotated[User, Depends(get_current_user)]):
    """Create a report. Requires reports.create."""
    new_id = max(REPORTS) + 1
    REPORTS[new_id] = Report(new_id, title, author_id=user.id)
    return {"id": new_id, "title": title}


@router.put("/{report_id}", permissions=set(), ability=("reports.update", get_report))
async def update_report(report: Annotated[Report, Depends(get_report)], title: str):
    """Update a report. Authors, admins and explicitly allowed users pass."""
    report.title = title
    return {"id": report.id, "title": report.title}


@router.delete("/{report_id}", permissions={"reports.delete"}, roles={"admin"})
async def delete_report(report: Annotated[Report, Depends(get_report)]):
    """Delete a report. Requires the admin role and reports.delete."""
    REPORTS.pop(report.id)
    return {"deleted": report.id}


app.include_router(router)


# =============================================================================
# Health Check (no auth required)
# =============================================================================
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, port=18_000)
