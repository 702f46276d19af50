"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_refresh_token are the
mappers. Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are stored as HMAC hashes (see auth/tokens.hash_refresh_token).
  Lookup is by hash via the UNIQUE index.

  rotate_refresh_token() deletes the old row and inserts the new one inside a
  single transaction. If the DELETE matches nothing (a concurrent request
  already rotated the same token), the transaction inserts nothing and the
  caller treats the token as spent -- refresh tokens stay single-use under
  concurrency.

  consume_backup_code() uses the same idea for 2FA backup codes: the UPDATE
  only matches while the stored list is still the one the caller read, so two
  requests can never both spend a code.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision so that
lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/ or admin/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import RefreshToken, Role, User

_DEFAULT_DB_URL = "sqlite:///gatekeeper.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(20), nullable=False, server_default=Role.USER.value),
    Column("two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("two_factor_secret", Text),  # Fernet ciphertext
    Column("backup_codes", Text),  # JSON list of bcrypt hashes
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON makes the refresh_tokens
    ON DELETE CASCADE effective.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and RefreshToken entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="admin", email="a@x.io", hashed_password=hash_password("...")))
        user = store.get_by_id(uid)
        store.close()
    """

    # Columns update_user() accepts. Anything else is a programming error.
    _MUTABLE_FIELDS: frozenset[str] = frozenset(
        {"username", "email", "role", "hashed_password", "two_factor_enabled", "two_factor_secret", "backup_codes"}
    )

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Run a trivial query. Raises on a broken connection."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers check uniqueness first for a friendly message and still
        catch IntegrityError for the concurrent-insert race.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    two_factor_enabled=user.two_factor_enabled,
                    two_factor_secret=user.two_factor_secret,
                    backup_codes=json.dumps(user.backup_codes or []),
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Exact match. Usernames are normalized to lowercase before storage."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email_or_username(self, identifier: str) -> User | None:
        """Login lookup: the identifier may be either an email or a username."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(or_(_users.c.email == identifier, _users.c.username == identifier))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        search: str | None = None,
        role: Role | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[User]:
        """Return users newest first, optionally filtered and paginated.

        search matches a case-insensitive substring of username or email.
        """
        stmt = _apply_user_filters(_users.select(), search, role)
        stmt = stmt.order_by(_users.c.created_at.desc(), _users.c.id.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self, search: str | None = None, role: Role | None = None) -> int:
        stmt = _apply_user_filters(select(func.count()).select_from(_users), search, role)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def count_users_created_since(self, since_iso: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.created_at >= since_iso)
            ).scalar()
        return result or 0

    def count_by_role(self) -> dict[str, int]:
        """Return {role: count} with every role present, zero-filled."""
        counts = {r.value: 0 for r in Role}
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.role, func.count()).group_by(_users.c.role)).fetchall()
        for role, count in rows:
            counts[role] = count
        return counts

    def count_two_factor_enabled(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.two_factor_enabled.is_(True))
            ).scalar()
        return result or 0

    def recent_users(self, limit: int = 5) -> list[User]:
        return self.list_users(limit=limit)

    def has_super_admin(self) -> bool:
        return self.count_users(role=Role.SUPER_ADMIN) > 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user and bump updated_at.

        backup_codes must be passed as a list; it is JSON-encoded here.
        role may be a Role or its string value.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "backup_codes" in fields:
            fields["backup_codes"] = json.dumps(fields["backup_codes"] or [])
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def consume_backup_code(self, user_id: int, expected: list[str], remaining: list[str]) -> bool:
        """Replace the backup code list only if it still equals expected.

        Returns False when another request changed the list since it was read;
        the caller must then treat the code as not accepted.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .where(_users.c.backup_codes == json.dumps(expected))
                .values(backup_codes=json.dumps(remaining), updated_at=now_iso())
            )
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now_iso()))

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and every refresh token they own.

        The explicit token delete keeps the cascade intact on backends where
        foreign keys are not enforced.
        """
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def get_usernames(self, user_ids: set[int]) -> dict[int, User]:
        """Bulk-load users by id (used to decorate audit log rows)."""
        if not user_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().where(_users.c.id.in_(user_ids))).fetchall()
        return {row.id: _row_to_user(row) for row in rows}

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def rotate_refresh_token(self, old_id: int, new_token: RefreshToken) -> int | None:
        """Atomically replace one refresh token with another.

        Returns the new row ID, or None when the old row was already gone.
        """
        with self.engine.begin() as conn:
            deleted = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == old_id))
            if deleted.rowcount == 0:
                return None
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=new_token.user_id,
                    token_hash=new_token.token_hash,
                    expires_at=new_token.expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_refresh_token_by_id(self, token_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == token_id))

    def delete_refresh_tokens_for_user(self, user_id: int, keep_hash: str | None = None) -> int:
        """Delete all of a user's refresh tokens, optionally sparing one.

        keep_hash lets a password change sign out every other device while
        the current session survives.
        """
        stmt = _refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id)
        if keep_hash is not None:
            stmt = stmt.where(_refresh_tokens.c.token_hash != keep_hash)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount

    def purge_expired_refresh_tokens(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < now_iso()))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def _like_pattern(term: str) -> str:
    """Substring pattern for ilike(escape="\\") with % and _ matched literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _apply_user_filters(stmt, search: str | None, role: Role | None):
    if search:
        pattern = _like_pattern(search)
        stmt = stmt.where(
            or_(_users.c.username.ilike(pattern, escape="\\"), _users.c.email.ilike(pattern, escape="\\"))
        )
    if role is not None:
        stmt = stmt.where(_users.c.role == Role(role).value)
    return stmt


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        backup_codes=json.loads(row.backup_codes) if row.backup_codes else [],
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
