import logging
from typing import Any

import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from fastapi_teams import AuditService, EntityRef, MembershipManager, PermissionCache, PermissionResolver, TeamsSettings
from fastapi_teams.models import Base, TeamAuditLog


def _manager(session: Session, cache: PermissionCache, **overrides: Any) -> MembershipManager:
    settings = TeamsSettings(_env_file=None, **overrides)
    return MembershipManager(session, cache=cache, settings=settings)


def _actions(session: Session) -> list[str]:
    return list(session.scalars(select(TeamAuditLog.action).order_by(TeamAuditLog.id)))


class TestAuditService:
    def test_disabled_writes_nothing(self, session: Session, cache: PermissionCache, users: dict[str, Any]) -> None:
        manager = _manager(session, cache)
        team = manager.create_team(users["owner"], "Audited")
        manager.add_role(team, "member", ["posts.view"])
        manager.add_user(team, users["member"], "member")
        assert _actions(session) == []

    def test_membership_changes_are_recorded(
        self, session: Session, cache: PermissionCache, users: dict[str, Any]
    ) -> None:
        manager = _manager(session, cache, audit_enabled=True)
        team = manager.create_team(users["owner"], "Audited")
        manager.add_role(team, "member", ["posts.view"])
        manager.add_user(team, users["member"], "member", actor=users["owner"])
        manager.delete_user(team, users["member"], actor=users["owner"])

        assert _actions(session) == ["team_member_added", "role_assigned", "team_member_removed"]
        added = session.scalars(select(TeamAuditLog).where(TeamAuditLog.action == "team_member_added")).one()
        assert added.team_id == team.id
        assert added.user_id == users["owner"].id
        assert added.new_values == {"member_id": str(users["member"].id), "role_id": str(team.roles[0].id)}

    def test_role_permission_diff_is_recorded(
        self, session: Session, cache: PermissionCache, users: dict[str, Any]
    ) -> None:
        manager = _manager(session, cache, audit_enabled=True)
        team = manager.create_team(users["owner"], "Audited")
        manager.add_role(team, "member", ["posts.view", "posts.create"])
        manager.update_role(team, "member", ["posts.view", "posts.delete"], actor=users["owner"])

        rows = list(session.scalars(select(TeamAuditLog).order_by(TeamAuditLog.id)))
        assert [(row.action, row.new_values or row.old_values) for row in rows] == [
            ("permission_granted", {"permission": "posts.delete"}),
            ("permission_revoked", {"permission": "posts.create"}),
        ]

    def test_only_listed_events_are_recorded(
        self, session: Session, cache: PermissionCache, users: dict[str, Any]
    ) -> None:
        manager = _manager(session, cache, audit_enabled=True, audit_events=["role_assigned"])
        team = manager.create_team(users["owner"], "Audited")
        manager.add_role(team, "member")
        manager.add_user(team, users["member"], "member")
        assert _actions(session) == ["role_assigned"]

    def test_events_go_to_audit_logger(
        self, session: Session, cache: PermissionCache, users: dict[str, Any], caplog: pytest.LogCaptureFixture
    ) -> None:
        manager = _manager(session, cache, audit_enabled=True)
        team = manager.create_team(users["owner"], "Audited")
        manager.add_role(team, "member")
        with caplog.at_level(logging.INFO, logger="fastapi_teams.audit"):
            manager.add_user(team, users["member"], "member")
        assert "Team audit: team_member_added" in caplog.messages

    def test_missing_table_does_not_break_mutations(
        self, cache: PermissionCache, users: dict[str, Any], caplog: pytest.LogCaptureFixture
    ) -> None:
        engine = create_engine("sqlite://", poolclass=StaticPool)
        tables = [table for table in Base.metadata.sorted_tables if table.name != TeamAuditLog.__tablename__]
        Base.metadata.create_all(engine, tables=tables)

        with Session(engine) as session:
            manager = _manager(session, cache, audit_enabled=True)
            team = manager.create_team(users["owner"], "No audit table")
            manager.add_role(team, "member")
            with caplog.at_level(logging.WARNING, logger="fastapi_teams.audit"):
                membership = manager.add_user(team, users["member"], "member")
            assert membership.user_id == users["member"].id

        assert any("is missing" in message for message in caplog.messages)
        engine.dispose()

    def test_subject_type_uses_entity_tag(self, session: Session, users: dict[str, Any]) -> None:
        class Post:
            __teams_entity_type__ = "posts"
            id = 9

        audit = AuditService(session, TeamsSettings(_env_file=None, audit_enabled=True))
        audit.log("permission_granted", None, users["owner"], Post())
        session.flush()
        row = session.scalars(select(TeamAuditLog)).one()
        assert (row.subject_type, row.subject_id) == ("posts", "9")

    def test_failed_audit_write_keeps_the_membership(
        self, session: Session, cache: PermissionCache, users: dict[str, Any], caplog: pytest.LogCaptureFixture
    ) -> None:
        manager = _manager(session, cache, audit_enabled=True)
        team = manager.create_team(users["owner"], "Audit outage")
        manager.add_role(team, "member")
        manager.add_user(team, users["member"], "member")

        session.execute(text(f"DROP TABLE {TeamAuditLog.__tablename__}"))
        session.commit()

        with caplog.at_level(logging.WARNING, logger="fastapi_teams.audit"):
            manager.add_user(team, users["other"], "member")
        assert manager.has_user(team, users["other"]) is True
        assert any("not stored" in message for message in caplog.messages)

    def test_ability_changes_are_committed(
        self, session: Session, cache: PermissionCache, users: dict[str, Any]
    ) -> None:
        settings = TeamsSettings(_env_file=None, audit_enabled=True)
        manager = MembershipManager(session, cache=cache, settings=settings)
        resolver = PermissionResolver(session, cache=cache, settings=settings)
        team = manager.create_team(users["owner"], "Audited")

        resolver.allow_ability(users["member"], team, "posts.edit", EntityRef("posts", 5))
        resolver.forbid_ability(users["member"], team, "posts.delete", EntityRef("posts", 5))
        session.rollback()

        assert _actions(session) == ["permission_granted", "permission_revoked"]
