"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. UserStore is the repository for User and
OAuthAccount; _row_to_user / _row_to_oauth_account are the mappers. Route,
flow and authority code never touches SQL directly.

All four identity tables share one MetaData so a single engine can serve
UserStore and the token stores in auth/token_store.py.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(provider, provider_user_id) lives in SQL on oauth_accounts. Both
  columns are NOT NULL, so SQLite's NULL-distinct UNIQUE semantics cannot
  let duplicates through.

  Emails are normalized (strip + lower) before every write and lookup, so
  the plain UNIQUE index on users.email is case-insensitive in effect.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import EmailExists, LastCredential, ProviderAlreadyLinked
from auth.models import OAuthAccount, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role", String(50), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("deleted_at", String(32)),
)

oauth_accounts = Table(
    "oauth_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("email", String(320)),
    Column("linked_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_oauth_provider_subject"),
    # One link per provider per user keeps unlink-by-provider unambiguous.
    UniqueConstraint("user_id", "provider", name="uq_oauth_user_provider"),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("family_id", String(32), nullable=False),
    Column("rotated_from", String(32)),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("revoke_reason", String(30)),
    Column("fingerprint", String(64)),
    Index("ix_refresh_tokens_family_id", "family_id"),
    Index("ix_refresh_tokens_user_id", "user_id"),
)

oauth_states = Table(
    "oauth_states",
    metadata,
    Column("state_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("provider", String(30), nullable=False),
    Column("return_url", Text, nullable=False),
    Column("code_verifier", String(128), nullable=False),
    Column("link_user_id", Integer),
    Column("expires_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, so they are applied on connect rather
    than once at engine creation.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def create_store_engine(db_url: str) -> Engine:
    """Build the shared engine and create any missing tables."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    """Current UTC time as a fixed-width ISO-8601 string.

    timespec="microseconds" keeps every value the same width so string
    comparison in SQL matches chronological order.
    """
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and OAuthAccount entities (the credential store).

    Usage:
        engine = create_store_engine("sqlite:///gatekeeper.db")
        store = UserStore(engine)
        uid = store.create_user(User(email="a@example.com", role="user", hashed_password=hash_password("pw")))
        user = store.get_by_email("A@Example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises EmailExists if the (normalized) email is already taken. Callers
        must supply a hashed_password here; OAuth-only users go through
        create_oauth_user() so the credential invariant holds.
        """
        with self.engine.begin() as conn:
            return self._insert_user(conn, user)

    def create_oauth_user(self, user: User, account: OAuthAccount) -> int:
        """Insert an OAuth-only user together with its first OAuthAccount.

        Both rows are written in one transaction, so a User never exists
        without a credential. A concurrent insert of the same email or the
        same provider identity raises ConflictError rather than merging.
        """
        with self.engine.begin() as conn:
            user_id = self._insert_user(conn, user)
            account.user_id = user_id
            self._insert_oauth_account(conn, account)
        return user_id

    def _insert_user(self, conn: Connection, user: User) -> int:
        now = now_iso()
        try:
            result = conn.execute(
                users.insert().values(
                    email=normalize_email(user.email),
                    email_verified=1 if user.email_verified else 0,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=user.role,
                    created_at=now,
                    updated_at=now,
                    is_active=1 if user.is_active else 0,
                )
            )
        except IntegrityError as exc:
            raise EmailExists() from exc
        return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, include_deleted: bool = False) -> list[User]:
        """Return users ordered by email. Admin-only operation."""
        query = users.select().order_by(users.c.email)
        if not include_deleted:
            query = query.where(users.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: role, is_active, email_verified, first_name,
        last_name, hashed_password. Booleans are converted to int for SQLite.

        Returns True if a row was updated, False if user_id was not found.
        """
        for flag in ("is_active", "email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def soft_delete_user(self, user_id: int) -> bool:
        """Deactivate a user and stamp deleted_at. The row is never removed.

        Refresh-token revocation is the token authority's job; callers must
        follow this with TokenAuthority.revoke_all_for_user().
        """
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.deleted_at.is_(None)))
                .values(is_active=0, deleted_at=now, updated_at=now)
            )
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=now_iso()))

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(users)).scalar() or 0

    # ------------------------------------------------------------------
    # OAuth account queries
    # ------------------------------------------------------------------

    def get_by_oauth(self, provider: str, provider_user_id: str) -> User | None:
        """Look up the user linked to (provider, provider_user_id)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(users)
                .join(oauth_accounts, oauth_accounts.c.user_id == users.c.id)
                .where(
                    (oauth_accounts.c.provider == provider)
                    & (oauth_accounts.c.provider_user_id == provider_user_id)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_oauth_accounts(self, user_id: int) -> list[OAuthAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                oauth_accounts.select().where(oauth_accounts.c.user_id == user_id).order_by(oauth_accounts.c.provider)
            ).fetchall()
        return [_row_to_oauth_account(r) for r in rows]

    def link_oauth(self, account: OAuthAccount) -> int:
        """Attach a provider identity to an existing user.

        Raises ProviderAlreadyLinked if the identity is taken, or if the user
        already has a link for this provider.
        """
        with self.engine.begin() as conn:
            return self._insert_oauth_account(conn, account)

    def _insert_oauth_account(self, conn: Connection, account: OAuthAccount) -> int:
        try:
            result = conn.execute(
                oauth_accounts.insert().values(
                    user_id=account.user_id,
                    provider=account.provider,
                    provider_user_id=account.provider_user_id,
                    email=normalize_email(account.email) if account.email else None,
                    linked_at=now_iso(),
                )
            )
        except IntegrityError as exc:
            raise ProviderAlreadyLinked() from exc
        return result.inserted_primary_key[0]

    def unlink_oauth(self, user_id: int, provider: str) -> bool:
        """Remove a provider link, keeping at least one credential.

        The credential count and the delete run in one transaction. Returns
        False if the user had no link for this provider; raises LastCredential
        if removing it would leave the user unable to sign in.
        """
        with self.engine.begin() as conn:
            has_password = conn.execute(
                select(users.c.hashed_password).where(users.c.id == user_id)
            ).scalar() is not None
            providers = {
                r.provider
                for r in conn.execute(
                    select(oauth_accounts.c.provider).where(oauth_accounts.c.user_id == user_id)
                ).fetchall()
            }
            if provider not in providers:
                return False
            if not has_password and len(providers) <= 1:
                raise LastCredential()
            conn.execute(
                oauth_accounts.delete().where(
                    (oauth_accounts.c.user_id == user_id) & (oauth_accounts.c.provider == provider)
                )
            )
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        email_verified=bool(row.email_verified),
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=row.role,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
        deleted_at=row.deleted_at,
    )


def _row_to_oauth_account(row) -> OAuthAccount:
    return OAuthAccount(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_user_id=row.provider_user_id,
        email=row.email,
        linked_at=row.linked_at,
    )
