"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. Each *Store class is a repository; the
_row_to_* functions are the mappers. Services never touch SQL directly.

Conventions shared by every store:
  Lookups return None (or an empty list) for "not found". Any other failure
  propagates as a SQLAlchemy exception -- the service layer classifies it.

  Every method takes an optional conn. Without one, the method runs in its
  own transaction. Pass the connection yielded by Database.transaction() to
  make several calls one atomic unit of work (account + empty detail rows are
  created this way).

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness lives in the schema, not in read-then-write checks:
  accounts.email and accounts.username are unique among rows whose deleted_at
  is NULL (partial unique indexes). external_auth has UNIQUE(provider, subject).
  account_details.account_id is UNIQUE (exactly one detail row per account).
  Violations surface as sqlalchemy.exc.IntegrityError.

Timestamps are stored as UTC ISO 8601 strings with fixed microsecond
precision, so string comparison in SQL orders them chronologically.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

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
    text,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import Account, AccountDetail, ExternalAuthLink, SingleUseCode

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'identity.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("username", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("is_detail_completed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),  # NULL = live account
)

# Partial indexes: a soft-deleted account frees its email and username.
Index(
    "uq_accounts_email_live",
    _accounts.c.email,
    unique=True,
    sqlite_where=_accounts.c.deleted_at.is_(None),
    postgresql_where=_accounts.c.deleted_at.is_(None),
)
Index(
    "uq_accounts_username_live",
    _accounts.c.username,
    unique=True,
    sqlite_where=_accounts.c.deleted_at.is_(None),
    postgresql_where=_accounts.c.deleted_at.is_(None),
)

_account_details = Table(
    "account_details",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("account_id", String(32), ForeignKey("accounts.id"), nullable=False, unique=True),
    Column("full_name", String(255)),
    Column("school_name", String(255)),
    Column("province", String(255)),
    Column("city", String(255)),
    Column("avatar", Text),
    Column("phone_number", String(32)),
    Column("deleted_at", String(32)),
)


def _code_table(name: str) -> Table:
    # Email verification and forgot-password codes share one shape.
    return Table(
        name,
        _metadata,
        Column("id", String(32), primary_key=True),
        Column("account_id", String(32), ForeignKey("accounts.id"), nullable=False, index=True),
        Column("code", Integer, nullable=False, index=True),
        Column("is_expired", Integer, nullable=False, server_default="0"),
        Column("created_at", String(32), nullable=False),
        Column("expired_at", String(32), nullable=False),
        Column("used_at", String(32)),  # NULL unless redeemed
    )


CODE_TABLES: dict[str, Table] = {
    "email_verification": _code_table("email_verifications"),
    "forgot_password": _code_table("forgot_passwords"),
}

_external_auth = Table(
    "external_auth",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("account_id", String(32), ForeignKey("accounts.id"), nullable=False, index=True),
    Column("provider", String(30), nullable=False),  # "google"
    Column("subject", String(255), nullable=False),  # provider's stable user ID
    UniqueConstraint("provider", "subject", name="uq_external_auth_subject"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Database (engine + unit of work)
# ---------------------------------------------------------------------------


class Database:
    """Owns the engine and schema. Hands out transactions to the stores.

    Usage:
        db = Database("sqlite:///identity.db")
        with db.transaction() as conn:
            account_store.create(account, conn=conn)
            detail_store.create(AccountDetail(account_id=account.id), conn=conn)
        db.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside BEGIN; commit on exit, roll back on error."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def use(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Join the caller's transaction if given one, else open a new one."""
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as new_conn:
                yield new_conn

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records. Soft-deleted rows are invisible to lookups."""

    _MUTABLE_FIELDS = {
        "name",
        "email",
        "username",
        "password_hash",
        "role",
        "is_email_verified",
        "is_detail_completed",
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, account: Account, conn: Connection | None = None) -> Account:
        """Insert a new account and return it with id and created_at set.

        Raises sqlalchemy.exc.IntegrityError if a live account already uses
        the email or username.
        """
        account_id = _new_id()
        created_at = _now_iso()
        with self._db.use(conn) as c:
            c.execute(
                _accounts.insert().values(
                    id=account_id,
                    name=account.name,
                    email=account.email,
                    username=account.username,
                    password_hash=account.password_hash,
                    role=account.role,
                    is_email_verified=1 if account.is_email_verified else 0,
                    is_detail_completed=1 if account.is_detail_completed else 0,
                    created_at=created_at,
                )
            )
        account.id = account_id
        account.created_at = created_at
        return account

    def get_by_id(self, account_id: str, conn: Connection | None = None) -> Account | None:
        return self._get_one(_accounts.c.id == account_id, conn)

    def get_by_email(self, email: str, conn: Connection | None = None) -> Account | None:
        """Look up a live account by exact email. Returns None if not found."""
        return self._get_one(_accounts.c.email == email, conn)

    def get_by_username(self, username: str, conn: Connection | None = None) -> Account | None:
        """Look up a live account by exact username. Returns None if not found."""
        return self._get_one(_accounts.c.username == username, conn)

    def _get_one(self, clause, conn: Connection | None) -> Account | None:
        with self._db.use(conn) as c:
            row = c.execute(_accounts.select().where(clause & _accounts.c.deleted_at.is_(None))).fetchone()
        return _row_to_account(row) if row is not None else None

    def update(self, account_id: str, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields on a live account.

        Booleans are converted to int for storage. Unknown field names raise
        ValueError rather than being silently dropped.

        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        for flag in ("is_email_verified", "is_detail_completed"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self._db.use(conn) as c:
            result = c.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(**fields)
            )
        return result.rowcount > 0

    def soft_delete(self, account_id: str, conn: Connection | None = None) -> bool:
        """Stamp deleted_at. The email and username become free for reuse."""
        with self._db.use(conn) as c:
            result = c.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso())
            )
        return result.rowcount > 0

    def delete(self, account_id: str, conn: Connection | None = None) -> bool:
        """Permanently delete an account row. Callers remove dependent rows first."""
        with self._db.use(conn) as c:
            result = c.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    def list(self, include_deleted: bool = False, conn: Connection | None = None) -> list[Account]:
        """Return accounts ordered by creation time."""
        query = _accounts.select().order_by(_accounts.c.created_at)
        if not include_deleted:
            query = query.where(_accounts.c.deleted_at.is_(None))
        with self._db.use(conn) as c:
            rows = c.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]


class AccountDetailStore:
    """Repository for AccountDetail records (one per account)."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, detail: AccountDetail, conn: Connection | None = None) -> AccountDetail:
        detail_id = _new_id()
        with self._db.use(conn) as c:
            c.execute(
                _account_details.insert().values(
                    id=detail_id,
                    account_id=detail.account_id,
                    full_name=detail.full_name,
                    school_name=detail.school_name,
                    province=detail.province,
                    city=detail.city,
                    avatar=detail.avatar,
                    phone_number=detail.phone_number,
                )
            )
        detail.id = detail_id
        return detail

    def get_by_id(self, detail_id: str, conn: Connection | None = None) -> AccountDetail | None:
        return self._get_one(_account_details.c.id == detail_id, conn)

    def get_by_account_id(self, account_id: str, conn: Connection | None = None) -> AccountDetail | None:
        return self._get_one(_account_details.c.account_id == account_id, conn)

    def _get_one(self, clause, conn: Connection | None) -> AccountDetail | None:
        with self._db.use(conn) as c:
            row = c.execute(
                _account_details.select().where(clause & _account_details.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_detail(row) if row is not None else None

    def update(self, detail: AccountDetail, conn: Connection | None = None) -> bool:
        """Overwrite every profile field of the detail row owned by detail.account_id."""
        with self._db.use(conn) as c:
            result = c.execute(
                _account_details.update()
                .where(
                    (_account_details.c.account_id == detail.account_id) & _account_details.c.deleted_at.is_(None)
                )
                .values(
                    full_name=detail.full_name,
                    school_name=detail.school_name,
                    province=detail.province,
                    city=detail.city,
                    avatar=detail.avatar,
                    phone_number=detail.phone_number,
                )
            )
        return result.rowcount > 0

    def soft_delete(self, account_id: str, conn: Connection | None = None) -> bool:
        with self._db.use(conn) as c:
            result = c.execute(
                _account_details.update()
                .where((_account_details.c.account_id == account_id) & _account_details.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso())
            )
        return result.rowcount > 0

    def delete(self, account_id: str, conn: Connection | None = None) -> bool:
        with self._db.use(conn) as c:
            result = c.execute(_account_details.delete().where(_account_details.c.account_id == account_id))
        return result.rowcount > 0


class CodeStore:
    """Repository for one kind of single-use code ("email_verification" or "forgot_password")."""

    def __init__(self, db: Database, kind: str) -> None:
        if kind not in CODE_TABLES:
            raise ValueError(f"Unknown code kind: {kind!r}")
        self._db = db
        self.kind = kind
        self._table = CODE_TABLES[kind]

    def create(self, code: SingleUseCode, conn: Connection | None = None) -> SingleUseCode:
        code_id = _new_id()
        created_at = datetime.now(timezone.utc)
        with self._db.use(conn) as c:
            c.execute(
                self._table.insert().values(
                    id=code_id,
                    account_id=code.account_id,
                    code=code.code,
                    is_expired=1 if code.is_expired else 0,
                    created_at=_iso(created_at),
                    expired_at=_iso(code.expired_at),
                )
            )
        code.id = code_id
        code.created_at = created_at
        return code

    def get_active_by_account_and_code(
        self, account_id: str, code: int, conn: Connection | None = None
    ) -> SingleUseCode | None:
        """Return the newest unexpired-flag row for (account, code), or None."""
        t = self._table
        return self._newest_active((t.c.account_id == account_id) & (t.c.code == code), conn)

    def get_active_by_code(self, code: int, conn: Connection | None = None) -> SingleUseCode | None:
        """Return the newest unexpired-flag row with this code for any account, or None."""
        return self._newest_active(self._table.c.code == code, conn)

    def _newest_active(self, clause, conn: Connection | None) -> SingleUseCode | None:
        t = self._table
        with self._db.use(conn) as c:
            row = c.execute(
                t.select().where(clause & (t.c.is_expired == 0)).order_by(t.c.created_at.desc()).limit(1)
            ).fetchone()
        return _row_to_code(row) if row is not None else None

    def get_swept_by_account_and_code(
        self, account_id: str, code: int, now: datetime, conn: Connection | None = None
    ) -> SingleUseCode | None:
        """Return the newest row for (account, code) that went stale unused, or None."""
        t = self._table
        return self._newest_swept((t.c.account_id == account_id) & (t.c.code == code), now, conn)

    def get_swept_by_code(self, code: int, now: datetime, conn: Connection | None = None) -> SingleUseCode | None:
        return self._newest_swept(self._table.c.code == code, now, conn)

    def _newest_swept(self, clause, now: datetime, conn: Connection | None) -> SingleUseCode | None:
        # Flagged by expire_all_overdue: expired, past due, never redeemed.
        t = self._table
        swept = (t.c.is_expired == 1) & t.c.used_at.is_(None) & (t.c.expired_at <= _iso(now))
        with self._db.use(conn) as c:
            row = c.execute(t.select().where(clause & swept).order_by(t.c.created_at.desc()).limit(1)).fetchone()
        return _row_to_code(row) if row is not None else None

    def mark_expired(self, code_id: str, used_at: datetime | None = None, conn: Connection | None = None) -> bool:
        """Flip is_expired on an active row. Atomic compare-and-set.

        Pass used_at when the code is being redeemed; leave it None when the
        row is only being retired.

        Returns False when the row was already expired (or does not exist),
        which tells the caller another request consumed the code first.
        """
        t = self._table
        values = {"is_expired": 1, "used_at": _iso(used_at) if used_at is not None else None}
        with self._db.use(conn) as c:
            result = c.execute(t.update().where((t.c.id == code_id) & (t.c.is_expired == 0)).values(**values))
        return result.rowcount > 0

    def delete(self, code_id: str, conn: Connection | None = None) -> bool:
        with self._db.use(conn) as c:
            result = c.execute(self._table.delete().where(self._table.c.id == code_id))
        return result.rowcount > 0

    def delete_by_code(self, code: int, conn: Connection | None = None) -> int:
        """Delete every row carrying this code. Returns the number removed (0 is fine)."""
        with self._db.use(conn) as c:
            result = c.execute(self._table.delete().where(self._table.c.code == code))
        return result.rowcount

    def expire_all_overdue(self, now: datetime, conn: Connection | None = None) -> int:
        """Flag every active row whose expired_at <= now. Returns rows affected."""
        t = self._table
        with self._db.use(conn) as c:
            result = c.execute(
                t.update().where((t.c.is_expired == 0) & (t.c.expired_at <= _iso(now))).values(is_expired=1)
            )
        return result.rowcount


class ExternalAuthStore:
    """Repository for ExternalAuthLink records."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, link: ExternalAuthLink, conn: Connection | None = None) -> ExternalAuthLink:
        """Insert a link. Raises IntegrityError if (provider, subject) is already linked."""
        link_id = _new_id()
        with self._db.use(conn) as c:
            c.execute(
                _external_auth.insert().values(
                    id=link_id,
                    account_id=link.account_id,
                    provider=link.provider,
                    subject=link.subject,
                )
            )
        link.id = link_id
        return link

    def get_by_account_id(self, account_id: str, conn: Connection | None = None) -> list[ExternalAuthLink]:
        with self._db.use(conn) as c:
            rows = c.execute(_external_auth.select().where(_external_auth.c.account_id == account_id)).fetchall()
        return [_row_to_link(r) for r in rows]

    def get_by_external_subject(
        self, provider: str, subject: str, conn: Connection | None = None
    ) -> ExternalAuthLink | None:
        with self._db.use(conn) as c:
            row = c.execute(
                _external_auth.select().where(
                    (_external_auth.c.provider == provider) & (_external_auth.c.subject == subject)
                )
            ).fetchone()
        return _row_to_link(row) if row is not None else None

    def delete(self, link_id: str, conn: Connection | None = None) -> bool:
        with self._db.use(conn) as c:
            result = c.execute(_external_auth.delete().where(_external_auth.c.id == link_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        name=row.name,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        role=row.role,
        is_email_verified=bool(row.is_email_verified),
        is_detail_completed=bool(row.is_detail_completed),
        created_at=row.created_at,
        deleted_at=row.deleted_at,
    )


def _row_to_detail(row) -> AccountDetail:
    return AccountDetail(
        id=row.id,
        account_id=row.account_id,
        full_name=row.full_name,
        school_name=row.school_name,
        province=row.province,
        city=row.city,
        avatar=row.avatar,
        phone_number=row.phone_number,
        deleted_at=row.deleted_at,
    )


def _row_to_code(row) -> SingleUseCode:
    return SingleUseCode(
        id=row.id,
        account_id=row.account_id,
        code=row.code,
        is_expired=bool(row.is_expired),
        created_at=datetime.fromisoformat(row.created_at),
        expired_at=datetime.fromisoformat(row.expired_at),
        used_at=datetime.fromisoformat(row.used_at) if row.used_at else None,
    )


def _row_to_link(row) -> ExternalAuthLink:
    return ExternalAuthLink(
        id=row.id,
        account_id=row.account_id,
        provider=row.provider,
        subject=row.subject,
    )
