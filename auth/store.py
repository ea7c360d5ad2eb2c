"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the credential repository;
_row_to_* functions are the mappers. TwoFactorStore (auth/two_factor.py) and
RecoveryLedger (auth/recovery.py) share this module's schema and engine.
Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Plaintext credentials never reach this module; callers pass bcrypt hashes.

Concurrency:
  Every state transition that must happen at most once is a single
  conditional statement (UPDATE/DELETE ... WHERE <precondition>) and the
  caller checks rowcount. No read-then-write pairs for one-time values.

Timeouts:
  SQLite waits at most STORE_TIMEOUT_SECONDS for a lock, other backends wait
  at most that long for a pooled connection. OperationalError / pool
  TimeoutError surface as StoreUnavailable (HTTP 503, retryable) -- never as a
  failed verification.

Timestamps are stored as UTC ISO 8601 strings with microseconds, so string
comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    exists,
    literal,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import StoreUnavailable, ValidationError
from auth.models import ROLES, LoginDevice, User
from auth.policy import reconcile_suspension, validate_suspension_fields

logger = logging.getLogger("accountgate.store")

# A device unused for this long is reported as unfamiliar again.
DEVICE_TRUST_WINDOW = timedelta(days=30)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("name", String(255), nullable=False),
    Column("role", String(10), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("suspended_at", String(40)),
    Column("suspended_by", Integer),
    Column("suspension_reason", Text),
    Column("suspension_category", String(20)),
    Column("suspension_end", String(40)),
    Column("phone_number", String(50)),
    Column("address", Text),
    Column("bio", Text),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

two_factor = Table(
    "two_factor",
    metadata,
    Column("user_id", Integer, primary_key=True),
    Column("secret", String(64), nullable=False),
    Column("enabled", Integer, nullable=False, server_default="0"),
    Column("last_used", String(40)),
    Column("verified_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

backup_codes = Table(
    "backup_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    UniqueConstraint("user_id", "code_hash", name="uq_backup_code"),
)

password_resets = Table(
    "password_resets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, unique=True),  # one live record per user
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False, index=True),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

account_recoveries = Table(
    "account_recoveries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, unique=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("questions", Text, nullable=False),  # JSON [{question, answer_hash}]
    Column("recovery_email", String(255)),
    Column("expires_at", String(40), nullable=False, index=True),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

login_devices = Table(
    "login_devices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("device_id", String(64), nullable=False),
    Column("user_agent", Text),
    Column("ip", String(45)),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("last_used", String(40), nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("user_id", "device_id", name="uq_user_device"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def build_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create an engine whose every wait is bounded by `timeout` seconds."""
    if db_url.startswith("sqlite"):
        # check_same_thread=False: FastAPI runs sync routes in a thread pool.
        # timeout: how long sqlite3 waits on a locked database before failing.
        engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout})
        event.listen(engine, "connect", _set_sqlite_pragmas)
        return engine
    return create_engine(db_url, pool_timeout=timeout, pool_pre_ping=True)


@contextmanager
def open_connection(engine: Engine, *, transactional: bool = False) -> Iterator[Connection]:
    """Yield a connection, translating infrastructure failures to StoreUnavailable.

    transactional=True wraps the block in BEGIN/COMMIT (rolled back on error).
    Otherwise the caller commits explicitly.
    """
    try:
        if transactional:
            with engine.begin() as conn:
                yield conn
        else:
            with engine.connect() as conn:
                yield conn
    except (OperationalError, PoolTimeoutError) as exc:
        logger.error("Store unavailable: %s", exc.__class__.__name__)
        raise StoreUnavailable(detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and LoginDevice records.

    Usage:
        store = UserStore("sqlite:///accountgate.db")
        uid = store.create_user(User(email="a@example.com", name="A", hashed_password=hash_password("pw")))
        user = store.find_by_email("A@Example.com")
        store.close()
    """

    # Columns update_user() may touch. Suspension has its own methods so the
    # whole group is always written together.
    _UPDATABLE_FIELDS: frozenset = frozenset({"name", "phone_number", "address", "bio", "role", "hashed_password"})
    _PROFILE_FIELDS: frozenset = frozenset({"name", "phone_number", "address", "bio"})

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        self.engine: Engine = build_engine(db_url, timeout)
        metadata.create_all(self.engine)

    def _connect(self, transactional: bool = False):
        return open_connection(self.engine, transactional=transactional)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, role: str | None = None) -> list[User]:
        """Return users ordered by email, optionally restricted to one role."""
        query = users.select().order_by(users.c.email)
        if role is not None:
            query = query.where(users.c.role == role)
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def owner_exists(self) -> bool:
        with self._connect() as conn:
            found = conn.execute(select(users.c.id).where(users.c.role == "owner").limit(1)).first()
        return found is not None

    def ping(self) -> bool:
        """Cheap liveness check for the health endpoint."""
        with self._connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        Callers translate that into Conflict.
        """
        if not user.hashed_password:
            raise ValidationError("A credential hash is required.", detail="create_user without hashed_password")
        if user.role not in ROLES or user.role == "owner":
            raise ValidationError("Invalid role.", detail=f"create_user with role {user.role!r}, owners go through create_owner")
        now = to_iso(utcnow())
        with self._connect() as conn:
            result = conn.execute(
                users.insert().values(
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    name=user.name,
                    role=user.role,
                    is_active=1,
                    phone_number=user.phone_number,
                    address=user.address,
                    bio=user.bio,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_owner(self, user: User) -> int | None:
        """Insert the owner account only if no owner exists yet.

        INSERT ... SELECT ... WHERE NOT EXISTS runs as one statement, so two
        concurrent bootstrap requests cannot both create an owner. Returns the
        new ID, or None if an owner already existed. IntegrityError still
        propagates for a duplicate email.
        """
        now = to_iso(utcnow())
        values = {
            "email": normalize_email(user.email),
            "hashed_password": user.hashed_password,
            "name": user.name,
            "role": "owner",
            "is_active": 1,
            "created_at": now,
            "updated_at": now,
        }
        source = select(*[literal(v).label(k) for k, v in values.items()]).where(
            ~exists(select(users.c.id).where(users.c.role == "owner"))
        )
        with self._connect() as conn:
            result = conn.execute(users.insert().from_select(list(values), source))
            conn.commit()
        if result.rowcount != 1:
            return None
        created = self.find_by_email(user.email)
        return created.id if created else None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def save(self, user: User, now: datetime | None = None) -> User:
        """Write every mutable field of `user` (idempotent).

        Runs the suspension policy first: an elapsed timed suspension is lifted
        and inconsistent suspension fields are rejected with ValidationError.
        Returns the record as written.
        """
        if user.id is None:
            raise ValidationError("Cannot save a user without an id.", detail="save() on unsaved user")
        user = reconcile_suspension(user, now)
        validate_suspension_fields(user)
        with self._connect() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user.id)
                .values(
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    name=user.name,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    suspended_at=to_iso(user.suspended_at),
                    suspended_by=user.suspended_by,
                    suspension_reason=user.suspension_reason,
                    suspension_category=user.suspension_category,
                    suspension_end=to_iso(user.suspension_end),
                    phone_number=user.phone_number,
                    address=user.address,
                    bio=user.bio,
                    updated_at=to_iso(utcnow()),
                )
            )
            conn.commit()
        return user

    def update_user(self, user_id: int, **fields) -> bool:
        """Update whitelisted columns. Returns True if a row was updated.

        Unknown keys raise ValueError rather than being ignored.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        fields["updated_at"] = to_iso(utcnow())
        with self._connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_profile(self, user_id: int, **fields) -> bool:
        unknown = set(fields) - self._PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        return self.update_user(user_id, **fields)

    def set_password(self, user_id: int, hashed_password: str) -> bool:
        return self.update_user(user_id, hashed_password=hashed_password)

    def set_role(self, user_id: int, role: str) -> bool:
        """Change role. The owner row is excluded at the statement level."""
        with self._connect() as conn:
            result = conn.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.role != "owner"))
                .values(role=role, updated_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=to_iso(utcnow())))
            conn.commit()

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    def suspend(
        self,
        user_id: int,
        *,
        actor_id: int,
        reason: str,
        category: str,
        until: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Write the whole suspension group in one statement.

        Owner rows never match. Returns False if nothing was suspended.
        """
        if not reason.strip():
            raise ValidationError("A suspension reason is required.")
        now = now or utcnow()
        with self._connect() as conn:
            result = conn.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.role != "owner"))
                .values(
                    is_active=0,
                    suspended_at=to_iso(now),
                    suspended_by=actor_id,
                    suspension_reason=reason.strip(),
                    suspension_category=category,
                    suspension_end=to_iso(until),
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def reactivate(self, user_id: int) -> bool:
        """Clear every suspension field. Returns False if the user does not exist."""
        with self._connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**_CLEARED_SUSPENSION))
            conn.commit()
        return result.rowcount > 0

    def expire_suspension(self, user_id: int, now: datetime | None = None) -> bool:
        """Lift a timed suspension whose end has passed.

        Conditional on the end date so a newer suspension written between the
        caller's read and this call is left alone.
        """
        cutoff = to_iso(now or utcnow())
        with self._connect() as conn:
            result = conn.execute(
                users.update()
                .where(
                    (users.c.id == user_id)
                    & (users.c.is_active == 0)
                    & (users.c.suspension_end.is_not(None))
                    & (users.c.suspension_end <= cutoff)
                )
                .values(**_CLEARED_SUSPENSION)
            )
            conn.commit()
        if result.rowcount:
            logger.info("Timed suspension expired for user %s", user_id)
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_user(self, user_id: int) -> bool:
        """Delete a non-owner user and everything hanging off it, atomically."""
        with self._connect(transactional=True) as conn:
            result = conn.execute(users.delete().where((users.c.id == user_id) & (users.c.role != "owner")))
            if result.rowcount == 0:
                return False
            for table in (backup_codes, two_factor, password_resets, account_recoveries, login_devices):
                conn.execute(table.delete().where(table.c.user_id == user_id))
        return True

    # ------------------------------------------------------------------
    # Login devices
    # ------------------------------------------------------------------

    def touch_device(
        self,
        user_id: int,
        device_id: str,
        *,
        user_agent: str = "",
        ip: str = "",
        verified: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """Record a login from a device. Returns True if the device is familiar.

        Familiar = seen before and used within DEVICE_TRUST_WINDOW.
        """
        now = now or utcnow()
        try:
            with self._connect(transactional=True) as conn:
                row = conn.execute(
                    login_devices.select().where(
                        (login_devices.c.user_id == user_id) & (login_devices.c.device_id == device_id)
                    )
                ).fetchone()
                if row is None:
                    conn.execute(
                        login_devices.insert().values(
                            user_id=user_id,
                            device_id=device_id,
                            user_agent=user_agent,
                            ip=ip,
                            is_verified=1 if verified else 0,
                            last_used=to_iso(now),
                            created_at=to_iso(now),
                        )
                    )
                    return False
                familiar = from_iso(row.last_used) >= now - DEVICE_TRUST_WINDOW
                conn.execute(
                    login_devices.update()
                    .where(login_devices.c.id == row.id)
                    .values(
                        user_agent=user_agent,
                        ip=ip,
                        is_verified=1 if (verified or row.is_verified) else 0,
                        last_used=to_iso(now),
                    )
                )
                return familiar
        except IntegrityError:
            # A concurrent first login from the same device inserted the row.
            logger.info("Concurrent first login from device for user %s", user_id)
            return False

    def list_devices(self, user_id: int) -> list[LoginDevice]:
        """Return a user's devices, most recently used first."""
        with self._connect() as conn:
            rows = conn.execute(
                login_devices.select()
                .where(login_devices.c.user_id == user_id)
                .order_by(login_devices.c.last_used.desc())
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


_CLEARED_SUSPENSION = {
    "is_active": 1,
    "suspended_at": None,
    "suspended_by": None,
    "suspension_reason": None,
    "suspension_category": None,
    "suspension_end": None,
}


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        name=row.name,
        role=row.role,
        is_active=bool(row.is_active),
        suspended_at=from_iso(row.suspended_at),
        suspended_by=row.suspended_by,
        suspension_reason=row.suspension_reason,
        suspension_category=row.suspension_category,
        suspension_end=from_iso(row.suspension_end),
        phone_number=row.phone_number,
        address=row.address,
        bio=row.bio,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_device(row) -> LoginDevice:
    return LoginDevice(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        user_agent=row.user_agent or "",
        ip=row.ip or "",
        is_verified=bool(row.is_verified),
        last_used=from_iso(row.last_used),
        created_at=from_iso(row.created_at),
    )
