"""Best-effort audit trail for team mutations."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fastapi_teams.entities import entity_type_of
from fastapi_teams.models import TeamAuditLog
from fastapi_teams.settings import TeamsSettings, get_settings

logger = logging.getLogger(__name__)


def _identifier(value: Any) -> Any:
    return getattr(value, "id", value)


class AuditService:
    """Record team audit events in ``team_audit_logs`` and on the audit logger.

    Auditing never affects the outcome of the operation being audited: when
    the audit table is missing or the write fails, the event is logged as a
    warning and dropped.
    """

    def __init__(self, session: Session, settings: TeamsSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.audit_logger = logging.getLogger(self.settings.audit_logger)
        self._table_present: bool | None = None

    def _has_table(self) -> bool:
        if self._table_present is None:
            try:
                self._table_present = inspect(self.session.connection()).has_table(TeamAuditLog.__tablename__)
            except SQLAlchemyError as exc:
                logger.warning("Could not inspect audit table: %s", exc)
                return False
        return self._table_present

    def _store(self, action: str, data: dict[str, Any]) -> None:
        # Pending mutation rows flush outside the savepoint so their errors propagate.
        self.session.flush()
        try:
            with self.session.begin_nested():
                self.session.add(TeamAuditLog(**data))
        except SQLAlchemyError as exc:
            logger.warning("Audit event %s not stored: %s", action, exc)

    def log(
        self,
        action: str,
        team: Any,
        user: Any,
        subject: Any = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> None:
        """Record one audit event if auditing is enabled for ``action``."""
        if not self.settings.audit_enabled or action not in self.settings.audit_events:
            return

        data: dict[str, Any] = {
            "team_id": _identifier(team),
            "user_id": _identifier(user),
            "action": action,
            "old_values": old_values,
            "new_values": new_values,
        }
        if subject is not None:
            data["subject_type"] = entity_type_of(subject)
            data["subject_id"] = str(_identifier(subject))

        if self._has_table():
            self._store(action, data)
        else:
            logger.warning("Audit table '%s' is missing; event %s not stored", TeamAuditLog.__tablename__, action)

        self.audit_logger.info("Team audit: %s", action, extra={"audit": data})

    def log_role_assigned(self, team: Any, user: Any, role: Any) -> None:
        self.log(
            "role_assigned",
            team,
            user,
            role,
            None,
            {"role_id": str(_identifier(role)), "role_code": getattr(role, "code", None)},
        )

    def log_permission_granted(self, team: Any, user: Any, permission: str) -> None:
        self.log("permission_granted", team, user, None, None, {"permission": permission})

    def log_permission_revoked(self, team: Any, user: Any, permission: str) -> None:
        self.log("permission_revoked", team, user, None, {"permission": permission}, None)

    def log_team_member_added(self, team: Any, user: Any, member: Any, role: Any) -> None:
        self.log(
            "team_member_added",
            team,
            user,
            member,
            None,
            {"member_id": str(_identifier(member)), "role_id": str(_identifier(role))},
        )

    def log_team_member_removed(self, team: Any, user: Any, member: Any) -> None:
        self.log("team_member_removed", team, user, member, {"member_id": str(_identifier(member))}, None)
