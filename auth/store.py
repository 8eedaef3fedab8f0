"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user,
_row_to_refresh_token and _row_to_invite are the mappers. Route and service
code never touches SQL directly.

Tables:
  users, roles, permissions, role_permissions, user_roles  -- credential store
  refresh_tokens                                           -- session credentials
  invite_tokens                                            -- single-use invitations

Security:
  All queries use bound parameters. No f-strings in SQL.

  refresh_tokens holds sha256(raw) only. Rows are never updated in place:
  rotate_refresh_token() deletes the presented row and inserts the
  replacement inside one transaction, using DELETE ... RETURNING so two
  concurrent rotations of the same token cannot both see the row.

  invite_tokens.used_at is set by a conditional UPDATE (used_at IS NULL and
  not expired), so an invite is consumed at most once even under races.

Seeding: roles, permissions and role grants from auth.permissions are
inserted idempotently on every startup.

Layer rule: no imports from api/, tenancy/, or audit/. core/ is allowed.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import InviteToken, RefreshToken, User
from auth.permissions import PERMISSIONS, ROLE_PERMISSIONS, ROLES
from core.timestamps import from_iso, now_iso, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased on write
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_seen_at", String(32)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(30), nullable=False, unique=True),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity", String(50), nullable=False),
    Column("action", String(20), nullable=False),
    UniqueConstraint("entity", "action", name="uq_permission_entity_action"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jti", String(36), nullable=False, unique=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # sha256 hex
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_invite_tokens = Table(
    "invite_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    # Logical reference into tenancy.organizations (owned by TenancyStore).
    Column("organization_id", Integer, nullable=False),
    Column("created_by_id", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new connection.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(db_url: str) -> Engine:
    """Create an engine with the connect args and pragmas every store uses."""
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
    """Repository for users, roles, refresh tokens and invites.

    Usage:
        store = UserStore("sqlite:///portal.db")
        uid = store.create_user(User(email="a@b.c", password_hash=hash_password("...")), ["admin"])
        user = store.get_by_email("a@b.c")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)
        self._seed_roles_and_permissions()

    def _seed_roles_and_permissions(self) -> None:
        """Insert missing roles, permissions and grants. Idempotent."""
        with self.engine.begin() as conn:
            existing_roles = {r.name for r in conn.execute(select(_roles.c.name))}
            for name in ROLES:
                if name not in existing_roles:
                    conn.execute(_roles.insert().values(name=name))

            existing_perms = {(p.entity, p.action) for p in conn.execute(select(_permissions))}
            for entity, action in PERMISSIONS:
                if (entity, action) not in existing_perms:
                    conn.execute(_permissions.insert().values(entity=entity, action=action))

            role_ids = {r.name: r.id for r in conn.execute(select(_roles))}
            perm_ids = {(p.entity, p.action): p.id for p in conn.execute(select(_permissions))}
            granted = {(g.role_id, g.permission_id) for g in conn.execute(select(_role_permissions))}
            for role, pairs in ROLE_PERMISSIONS.items():
                for pair in pairs:
                    key = (role_ids[role], perm_ids[pair])
                    if key not in granted:
                        conn.execute(_role_permissions.insert().values(role_id=key[0], permission_id=key[1]))

    # ------------------------------------------------------------------
    # User writes
    # ------------------------------------------------------------------

    def create_user(self, user: User, role_names: Iterable[str] = ()) -> int:
        """Insert a user with the given roles and return the new id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers map that to 409.
        """
        with self.engine.begin() as conn:
            user_id = self._insert_user(conn, user)
            self._assign_roles(conn, user_id, role_names)
        return user_id

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable columns (email, first_name, last_name, is_active, password_hash).

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError on a duplicate email.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        if not fields:
            return self.get_by_id(user_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_user_roles(self, user_id: int, role_names: Iterable[str]) -> None:
        """Replace the user's role set."""
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            self._assign_roles(conn, user_id, role_names)

    def add_user_role(self, user_id: int, role_name: str) -> None:
        """Grant one role if the user does not already hold it."""
        with self.engine.begin() as conn:
            held = self._role_names(conn, user_id)
            if role_name not in held:
                self._assign_roles(conn, user_id, [role_name])

    def delete_user(self, user_id: int) -> bool:
        """Hard delete. Roles and refresh tokens are removed in the same transaction."""
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def touch_last_seen(self, user_id: int, min_interval_seconds: int) -> bool:
        """Stamp last_seen_at unless it was stamped within the interval.

        The throttle is evaluated in SQL, so no per-process state is needed
        and concurrent requests for the same user write at most once.
        """
        now = utcnow()
        cutoff = to_iso(now - timedelta(seconds=min_interval_seconds))
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .where(or_(_users.c.last_seen_at.is_(None), _users.c.last_seen_at < cutoff))
                .values(last_seen_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # User reads
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup by email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
            return _row_to_user(row, self._role_names(conn, row.id)) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return _row_to_user(row, self._role_names(conn, row.id)) if row is not None else None

    def get_role_names(self, user_id: int) -> list[str]:
        with self.engine.connect() as conn:
            return self._role_names(conn, user_id)

    def get_users_by_ids(self, user_ids: Iterable[int]) -> dict[int, User]:
        """Batch lookup without roles. Missing ids are simply absent from the result."""
        ids = list(set(user_ids))
        if not ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().where(_users.c.id.in_(ids))).fetchall()
        return {r.id: _row_to_user(r, []) for r in rows}

    def list_users(
        self,
        search: str | None = None,
        role: str | None = None,
        exclude_role: str | None = None,
        active_only: bool = False,
        limit: int = 50,
    ) -> list[User]:
        """Return users ordered by last name, then first name."""
        stmt = _users.select()
        if active_only:
            stmt = stmt.where(_users.c.is_active == 1)
        if search:
            pattern = f"%{_escape_like(search.strip())}%"
            stmt = stmt.where(
                or_(
                    _users.c.email.ilike(pattern, escape="\\"),
                    _users.c.first_name.ilike(pattern, escape="\\"),
                    _users.c.last_name.ilike(pattern, escape="\\"),
                )
            )
        if role:
            stmt = stmt.where(_users.c.id.in_(_holders_of(role)))
        if exclude_role:
            stmt = stmt.where(_users.c.id.not_in(_holders_of(exclude_role)))
        stmt = stmt.order_by(_users.c.last_name, _users.c.first_name, _users.c.id).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            return [_row_to_user(r, self._role_names(conn, r.id)) for r in rows]

    # ------------------------------------------------------------------
    # Permissions (always live)
    # ------------------------------------------------------------------

    def has_permission(self, user_id: int, entity: str, action: str) -> bool:
        """True if an active user holds (entity, action) through any role."""
        stmt = (
            select(func.count())
            .select_from(
                _users.join(_user_roles, _user_roles.c.user_id == _users.c.id)
                .join(_role_permissions, _role_permissions.c.role_id == _user_roles.c.role_id)
                .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            )
            .where(_users.c.id == user_id)
            .where(_users.c.is_active == 1)
            .where(_permissions.c.entity == entity)
            .where(_permissions.c.action == action)
        )
        with self.engine.connect() as conn:
            return (conn.execute(stmt).scalar() or 0) > 0

    def list_permissions(self, user_id: int) -> list[tuple[str, str]]:
        """Distinct (entity, action) pairs the user holds, sorted."""
        stmt = (
            select(_permissions.c.entity, _permissions.c.action)
            .select_from(
                _user_roles.join(_role_permissions, _role_permissions.c.role_id == _user_roles.c.role_id).join(
                    _permissions, _permissions.c.id == _role_permissions.c.permission_id
                )
            )
            .where(_user_roles.c.user_id == user_id)
            .distinct()
            .order_by(_permissions.c.entity, _permissions.c.action)
        )
        with self.engine.connect() as conn:
            return [(r.entity, r.action) for r in conn.execute(stmt)]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    jti=token.jti,
                    token_hash=token.token_hash,
                    user_id=token.user_id,
                    expires_at=to_iso(token.expires_at),
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def rotate_refresh_token(self, token_hash: str, replacement: RefreshToken) -> int | None:
        """Consume the row matching token_hash and insert its replacement atomically.

        Returns the owning user id on success. Returns None, with nothing
        inserted, when no row matched (unknown or already rotated), when the
        consumed row had expired, or when its owner is missing or inactive.
        In every case the presented row no longer exists afterwards.

        replacement.user_id is ignored; the new row always belongs to the
        owner of the consumed row.
        """
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _refresh_tokens.delete()
                .where(_refresh_tokens.c.token_hash == token_hash)
                .returning(_refresh_tokens.c.user_id, _refresh_tokens.c.expires_at)
            ).fetchone()
            if consumed is None:
                return None
            if from_iso(consumed.expires_at) <= utcnow():
                return None
            owner = conn.execute(select(_users.c.is_active).where(_users.c.id == consumed.user_id)).fetchone()
            if owner is None or not owner.is_active:
                return None
            conn.execute(
                _refresh_tokens.insert().values(
                    jti=replacement.jti,
                    token_hash=replacement.token_hash,
                    user_id=consumed.user_id,
                    expires_at=to_iso(replacement.expires_at),
                    created_at=now_iso(),
                )
            )
            return consumed.user_id

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_refresh_token(self, token_hash: str, user_id: int) -> bool:
        """Delete one token. user_id must match, so a caller can only end their own session."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.user_id == user_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def delete_refresh_tokens_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def count_refresh_tokens(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count()).select_from(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id)
                ).scalar()
                or 0
            )

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def create_invite(self, invite: InviteToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _invite_tokens.insert().values(
                    token=invite.token,
                    organization_id=invite.organization_id,
                    created_by_id=invite.created_by_id,
                    expires_at=to_iso(invite.expires_at),
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_invite(self, token: str) -> InviteToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invite_tokens.select().where(_invite_tokens.c.token == token)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def consume_invite(self, token: str) -> InviteToken | None:
        """Mark an unused, unexpired invite as used. Returns it, or None if unusable."""
        with self.engine.begin() as conn:
            return self._consume_invite(conn, token)

    def register_invited_user(
        self, user: User, role_names: Iterable[str], token: str
    ) -> tuple[int, InviteToken] | None:
        """Consume the invite and create the user in one transaction.

        Returns (user_id, invite), or None if the invite is unusable. Raises
        IntegrityError on a duplicate email, in which case the invite stays unused.
        """
        with self.engine.begin() as conn:
            invite = self._consume_invite(conn, token)
            if invite is None:
                return None
            user_id = self._insert_user(conn, user)
            self._assign_roles(conn, user_id, role_names)
        return user_id, invite

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> tuple[int, int]:
        """Delete expired refresh tokens and expired unused invites.

        Returns (refresh_tokens_deleted, invites_deleted). Used invites are
        kept as a record of who registered through them.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            tokens = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now)).rowcount
            invites = conn.execute(
                _invite_tokens.delete().where(
                    (_invite_tokens.c.expires_at <= now) & (_invite_tokens.c.used_at.is_(None))
                )
            ).rowcount
        return tokens, invites

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal helpers (run on a caller-supplied connection)
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_user(conn: Connection, user: User) -> int:
        result = conn.execute(
            _users.insert().values(
                email=user.email.strip().lower(),
                password_hash=user.password_hash,
                first_name=user.first_name,
                last_name=user.last_name,
                is_active=1 if user.is_active else 0,
                created_at=now_iso(),
            )
        )
        return result.inserted_primary_key[0]

    @staticmethod
    def _assign_roles(conn: Connection, user_id: int, role_names: Iterable[str]) -> None:
        names = list(dict.fromkeys(role_names))
        if not names:
            return
        role_ids = conn.execute(select(_roles.c.id, _roles.c.name).where(_roles.c.name.in_(names))).fetchall()
        if len(role_ids) != len(names):
            unknown = set(names) - {r.name for r in role_ids}
            raise ValueError(f"Unknown roles: {sorted(unknown)!r}")
        conn.execute(_user_roles.insert(), [{"user_id": user_id, "role_id": r.id} for r in role_ids])

    @staticmethod
    def _role_names(conn: Connection, user_id: int) -> list[str]:
        rows = conn.execute(
            select(_roles.c.name)
            .select_from(_user_roles.join(_roles, _roles.c.id == _user_roles.c.role_id))
            .where(_user_roles.c.user_id == user_id)
            .order_by(_roles.c.name)
        )
        return [r.name for r in rows]

    @staticmethod
    def _consume_invite(conn: Connection, token: str) -> InviteToken | None:
        now = now_iso()
        result = conn.execute(
            _invite_tokens.update()
            .where(_invite_tokens.c.token == token)
            .where(_invite_tokens.c.used_at.is_(None))
            .where(_invite_tokens.c.expires_at > now)
            .values(used_at=now)
        )
        if result.rowcount != 1:
            return None
        row = conn.execute(_invite_tokens.select().where(_invite_tokens.c.token == token)).fetchone()
        return _row_to_invite(row)


# ---------------------------------------------------------------------------
# Query fragments
# ---------------------------------------------------------------------------


def _holders_of(role_name: str):
    return (
        select(_user_roles.c.user_id)
        .select_from(_user_roles.join(_roles, _roles.c.id == _user_roles.c.role_id))
        .where(_roles.c.name == role_name)
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[str]) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
        last_seen_at=from_iso(row.last_seen_at),
        roles=roles,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        jti=row.jti,
        token_hash=row.token_hash,
        user_id=row.user_id,
        expires_at=from_iso(row.expires_at),
    )


def _row_to_invite(row) -> InviteToken:
    return InviteToken(
        id=row.id,
        token=row.token,
        organization_id=row.organization_id,
        created_by_id=row.created_by_id,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
    )
