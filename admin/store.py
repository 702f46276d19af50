"""
admin/store.py -- SQLAlchemy Core persistence for invites, activity logs and
system settings.

Pattern: Repository + Data Mapper, same shape as auth/store.py. AdminStore
shares the users database (same DATABASE_URL) but owns its own tables; the
foreign keys to users are declared as plain integers so the two metadata
objects stay independent.

Layer rule: may import auth/ (models and engine helpers); nothing from api/.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from admin.models import ActivityLog, Invite
from auth.models import Role
from auth.store import make_engine, now_iso

_DEFAULT_DB_URL = "sqlite:///gatekeeper.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_invites = Table(
    "invites",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, index=True),
    Column("role", String(20), nullable=False, server_default=Role.USER.value),
    Column("token", String(64), nullable=False, unique=True),
    Column("created_by", Integer),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_activity_logs = Table(
    "activity_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),
    Column("action", String(50), nullable=False, index=True),
    Column("resource", String(50)),
    Column("resource_id", String(64)),
    Column("details", Text),  # JSON object
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False, index=True),
)

_system_settings = Table(
    "system_settings",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key", String(100), nullable=False, unique=True),
    Column("value", Text, nullable=False),  # JSON
    Column("updated_by", Integer),
    Column("updated_at", String(32), nullable=False),
)


class AdminStore:
    """Repository for Invite, ActivityLog and system settings rows."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def create_invite(self, invite: Invite) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _invites.insert().values(
                    email=invite.email,
                    role=Role(invite.role).value,
                    token=invite.token,
                    created_by=invite.created_by,
                    expires_at=invite.expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_invite(self, invite_id: int) -> Invite | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invites.select().where(_invites.c.id == invite_id)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def get_invite_by_token(self, token: str) -> Invite | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invites.select().where(_invites.c.token == token)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def get_pending_invite_by_email(self, email: str) -> Invite | None:
        """Return an unused, unexpired invite for email, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _invites.select()
                .where(_invites.c.email == email)
                .where(_invites.c.used_at.is_(None))
                .where(_invites.c.expires_at > now_iso())
                .order_by(_invites.c.created_at.desc())
            ).fetchone()
        return _row_to_invite(row) if row is not None else None

    def list_invites(self, include_used: bool = False, include_expired: bool = False) -> list[Invite]:
        stmt = _invites.select()
        if not include_used:
            stmt = stmt.where(_invites.c.used_at.is_(None))
        if not include_expired:
            stmt = stmt.where(_invites.c.expires_at > now_iso())
        stmt = stmt.order_by(_invites.c.created_at.desc(), _invites.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_invite(r) for r in rows]

    def count_pending_invites(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_invites)
                .where(_invites.c.used_at.is_(None))
                .where(_invites.c.expires_at > now_iso())
            ).scalar()
        return result or 0

    def mark_invite_used(self, invite_id: int) -> bool:
        """Stamp used_at. Returns False if the invite was already used or is gone."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _invites.update()
                .where(_invites.c.id == invite_id)
                .where(_invites.c.used_at.is_(None))
                .values(used_at=now_iso())
            )
        return result.rowcount > 0

    def delete_invite(self, invite_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_invites.delete().where(_invites.c.id == invite_id))
        return result.rowcount > 0

    def purge_expired_invites(self) -> int:
        """Delete unused invites whose expiry has passed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _invites.delete().where(_invites.c.used_at.is_(None)).where(_invites.c.expires_at < now_iso())
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Activity logs
    # ------------------------------------------------------------------

    def create_log(self, log: ActivityLog) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _activity_logs.insert().values(
                    user_id=log.user_id,
                    action=log.action,
                    resource=log.resource,
                    resource_id=log.resource_id,
                    details=json.dumps(log.details or {}, default=str),
                    ip_address=log.ip_address,
                    user_agent=log.user_agent,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def list_logs(
        self,
        user_id: int | None = None,
        action: str | None = None,
        resource: str | None = None,
        start: str | None = None,
        end: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[ActivityLog]:
        """Return logs newest first. start/end are inclusive ISO timestamps."""
        stmt = _apply_log_filters(_activity_logs.select(), user_id, action, resource, start, end)
        stmt = stmt.order_by(_activity_logs.c.created_at.desc(), _activity_logs.c.id.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_log(r) for r in rows]

    def count_logs(
        self,
        user_id: int | None = None,
        action: str | None = None,
        resource: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> int:
        stmt = _apply_log_filters(
            select(func.count()).select_from(_activity_logs), user_id, action, resource, start, end
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def delete_logs_older_than(self, cutoff_iso: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_activity_logs.delete().where(_activity_logs.c.created_at < cutoff_iso))
        return result.rowcount

    def delete_all_logs(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_activity_logs.delete())
        return result.rowcount

    # ------------------------------------------------------------------
    # System settings (JSON values by key)
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Any:
        """Return the decoded JSON value for key, or None if unset or unreadable."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_system_settings.c.value).where(_system_settings.c.key == key)
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row.value)
        except json.JSONDecodeError:
            return None

    def upsert_setting(self, key: str, value: Any, updated_by: int | None = None) -> None:
        encoded = json.dumps(value)
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _system_settings.update()
                .where(_system_settings.c.key == key)
                .values(value=encoded, updated_by=updated_by, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(
                    _system_settings.insert().values(key=key, value=encoded, updated_by=updated_by, updated_at=now)
                )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def _apply_log_filters(stmt, user_id, action, resource, start, end):
    if user_id is not None:
        stmt = stmt.where(_activity_logs.c.user_id == user_id)
    if action:
        stmt = stmt.where(_activity_logs.c.action == action)
    if resource:
        stmt = stmt.where(_activity_logs.c.resource == resource)
    if start:
        stmt = stmt.where(_activity_logs.c.created_at >= start)
    if end:
        stmt = stmt.where(_activity_logs.c.created_at <= end)
    return stmt


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_invite(row) -> Invite:
    return Invite(
        id=row.id,
        email=row.email,
        role=Role(row.role),
        token=row.token,
        created_by=row.created_by,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )


def _row_to_log(row) -> ActivityLog:
    return ActivityLog(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
