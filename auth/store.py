"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The failed-login counter is incremented with a single UPDATE
  (attempts = attempts + 1) so concurrent wrong-password attempts cannot lose
  increments to a read-modify-write race. The same statement stamps
  locked_until when the post-increment count reaches the threshold.

  OTP codes are stored as HMAC digests (see auth/mfa.py), never in clear.

Timestamps are ISO 8601 strings in UTC with fixed microsecond precision, so
lexical comparison in SQL matches chronological order.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Role, Session, User, VerifiedDevice

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL until the account is activated
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("phone", String(40)),
    Column("branch_id", String(64)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("account_status", String(30), nullable=False, server_default="pending_activation"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("role", String(50)),  # roles.name; NULL -> DefaultRole
    Column("last_login", String(40)),
    Column("last_activity", String(40)),
    Column("status", String(20), nullable=False, server_default="offline"),
    Column("current_session_id", String(32)),
    Column("created_at", String(40), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False, server_default=""),
    Column("description", Text, nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_system_role", Integer, nullable=False, server_default="0"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("access_token", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("last_activity", String(40), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("device_info", Text),  # JSON
    Column("location_info", Text),  # JSON
    Column("device_fingerprint", String(64), nullable=False, server_default=""),
    Column("login_method", String(20), nullable=False, server_default="password"),
    Column("mfa_used", Integer, nullable=False, server_default="0"),
    Column("risk_tier", String(10), nullable=False, server_default="low"),
    Column("current_page", String(255)),
    Column("logout_at", String(40)),
)

_verified_devices = Table(
    "verified_devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("device_fingerprint", String(64), nullable=False),
    Column("device_name", String(100), nullable=False, server_default="Unknown Device"),
    Column("browser_info", Text),  # JSON
    Column("verified_at", String(40), nullable=False),
    Column("last_used_at", String(40), nullable=False),
)

_otp_codes = Table(
    "mfa_otp_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", String(40), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

# Columns stored as 0/1 integers; update helpers convert Python bools.
_BOOL_COLUMNS = {"is_active", "email_verified", "mfa_enabled", "mfa_used", "is_system_role", "used"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp. Naive values are taken to be UTC."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _coerce_bools(fields: dict) -> dict:
    return {k: (1 if v else 0) if k in _BOOL_COLUMNS else v for k, v in fields.items()}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, roles, sessions, verified devices and OTP codes.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        uid = store.create_user(User(email="alice@x.com", password_hash=hash_password("pw")))
        user = store.find_user_by_email("alice@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_app_settings()

    def _ensure_app_settings(self) -> None:
        """Create the app_settings table and seed the single-row record if not present.

        The CHECK (id = 1) constraint enforces the single-row invariant at the
        DB level. INSERT OR IGNORE is idempotent -- safe to call on every startup.
        """
        with self.engine.connect() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS app_settings (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        require_mfa INTEGER DEFAULT 0,
                        mfa_roles TEXT DEFAULT '[]'
                    )
                    """
                )
            )
            conn.execute(text("INSERT OR IGNORE INTO app_settings (id) VALUES (1)"))
            conn.commit()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    _coerce_bools(
                        {
                            "email": _normalize_email(user.email),
                            "password_hash": user.password_hash,
                            "first_name": user.first_name,
                            "last_name": user.last_name,
                            "phone": user.phone,
                            "branch_id": user.branch_id,
                            "is_active": user.is_active,
                            "account_status": user.account_status,
                            "email_verified": user.email_verified,
                            "failed_login_attempts": user.failed_login_attempts,
                            "locked_until": user.locked_until,
                            "mfa_enabled": user.mfa_enabled,
                            "role": user.role,
                            "status": user.status,
                            "created_at": now_iso(),
                        }
                    )
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_user_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update fields on an existing user. Returns False if user_id was not found."""
        if "email" in fields:
            fields["email"] = _normalize_email(fields["email"])
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**_coerce_bools(fields)))
            conn.commit()
        return result.rowcount > 0

    def increment_failed_attempts(self, user_id: int, threshold: int, lock_until: str) -> int:
        """Atomically add one failed attempt and return the new count.

        When the post-increment count reaches threshold, locked_until is set to
        lock_until in the same statement; otherwise it is left unchanged. Both
        right-hand sides read the pre-update row, so the CASE sees the same
        count the SET produces.
        """
        new_count = _users.c.failed_login_attempts + 1
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=new_count,
                    locked_until=case((new_count >= threshold, lock_until), else_=_users.c.locked_until),
                )
            )
            count = conn.execute(select(_users.c.failed_login_attempts).where(_users.c.id == user_id)).scalar()
            conn.commit()
        return count or 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    _coerce_bools(
                        {
                            "name": role.name,
                            "display_name": role.display_name,
                            "description": role.description,
                            "is_active": role.is_active,
                            "is_system_role": role.is_system_role,
                        }
                    )
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    access_token=session.access_token,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                    last_activity=session.last_activity,
                    is_active=1 if session.is_active else 0,
                    device_info=json.dumps(session.device),
                    location_info=json.dumps(session.location),
                    device_fingerprint=session.device_fingerprint,
                    login_method=session.login_method,
                    mfa_used=1 if session.mfa_used else 0,
                    risk_tier=session.risk_tier,
                    current_page=session.current_page,
                    logout_at=session.logout_at,
                )
            )
            conn.commit()

    def find_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def update_session(self, session_id: str, *, only_active: bool = False, **fields) -> bool:
        """Update fields on a session. Returns True if a row was updated.

        only_active=True restricts the write to sessions still marked active,
        which keeps revocation stamps (logout_at) from being overwritten.
        """
        condition = _sessions.c.id == session_id
        if only_active:
            condition = condition & (_sessions.c.is_active == 1)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(**_coerce_bools(fields)))
            conn.commit()
        return result.rowcount > 0

    def list_sessions(self, user_id: int, limit: int = 50) -> list[Session]:
        """Return a user's sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(_sessions.c.user_id == user_id)
                .order_by(_sessions.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def has_seen_device(self, user_id: int, fingerprint: str) -> bool:
        """Return True if the fingerprint appears in a prior session or verified device."""
        with self.engine.connect() as conn:
            in_sessions = conn.execute(
                select(_sessions.c.id)
                .where((_sessions.c.user_id == user_id) & (_sessions.c.device_fingerprint == fingerprint))
                .limit(1)
            ).first()
            if in_sessions is not None:
                return True
            verified = conn.execute(
                select(_verified_devices.c.id)
                .where(
                    (_verified_devices.c.user_id == user_id)
                    & (_verified_devices.c.device_fingerprint == fingerprint)
                )
                .limit(1)
            ).first()
        return verified is not None

    # ------------------------------------------------------------------
    # MFA policy (app_settings)
    # ------------------------------------------------------------------

    def get_mfa_policy(self) -> dict:
        """Return {"require_mfa": bool, "mfa_roles": list[str]}.

        The single-row invariant (id=1) is guaranteed by _ensure_app_settings().
        """
        with self.engine.connect() as conn:
            row = conn.execute(text("SELECT require_mfa, mfa_roles FROM app_settings WHERE id = 1")).fetchone()
        if row is None:
            return {"require_mfa": False, "mfa_roles": []}
        return {
            "require_mfa": bool(row[0]),
            "mfa_roles": list(json.loads(row[1] or "[]")),
        }

    def update_mfa_policy(self, require_mfa: bool | None = None, mfa_roles: list[str] | None = None) -> None:
        params: dict = {}
        if require_mfa is not None:
            params["require_mfa"] = 1 if require_mfa else 0
        if mfa_roles is not None:
            params["mfa_roles"] = json.dumps(sorted(set(mfa_roles)))
        if not params:
            return
        # Column names come from the fixed keys above, never from caller input.
        set_clause = ", ".join(f"{k} = :{k}" for k in params)
        with self.engine.connect() as conn:
            conn.execute(text(f"UPDATE app_settings SET {set_clause} WHERE id = 1"), params)  # noqa: S608
            conn.commit()

    # ------------------------------------------------------------------
    # Verified devices
    # ------------------------------------------------------------------

    def is_device_verified(self, user_id: int, fingerprint: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_verified_devices.c.id)
                .where(
                    (_verified_devices.c.user_id == user_id)
                    & (_verified_devices.c.device_fingerprint == fingerprint)
                )
                .limit(1)
            ).first()
        return row is not None

    def record_verified_device(self, device: VerifiedDevice) -> None:
        """Insert a verified device, or refresh last_used_at if it is already known."""
        now = now_iso()
        with self.engine.connect() as conn:
            existing = conn.execute(
                select(_verified_devices.c.id).where(
                    (_verified_devices.c.user_id == device.user_id)
                    & (_verified_devices.c.device_fingerprint == device.device_fingerprint)
                )
            ).first()
            if existing is not None:
                conn.execute(
                    _verified_devices.update().where(_verified_devices.c.id == existing[0]).values(last_used_at=now)
                )
            else:
                conn.execute(
                    _verified_devices.insert().values(
                        user_id=device.user_id,
                        device_fingerprint=device.device_fingerprint,
                        device_name=device.device_name,
                        browser_info=json.dumps(device.browser_info),
                        verified_at=now,
                        last_used_at=now,
                    )
                )
            conn.commit()

    # ------------------------------------------------------------------
    # OTP codes
    # ------------------------------------------------------------------

    def insert_otp(self, user_id: int, code_hash: str, expires_at: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_codes.insert().values(
                    user_id=user_id,
                    code_hash=code_hash,
                    expires_at=expires_at,
                    used=0,
                    attempts=0,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_active_otp(self, user_id: int, code_hash: str, now: str, max_attempts: int) -> int | None:
        """Return the id of the newest unused, unexpired matching code under the attempt cap."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_otp_codes.c.id)
                .where(
                    (_otp_codes.c.user_id == user_id)
                    & (_otp_codes.c.code_hash == code_hash)
                    & (_otp_codes.c.used == 0)
                    & (_otp_codes.c.expires_at > now)
                    & (_otp_codes.c.attempts < max_attempts)
                )
                .order_by(_otp_codes.c.created_at.desc())
                .limit(1)
            ).first()
        return row[0] if row is not None else None

    def mark_otp_used(self, otp_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_otp_codes.update().where(_otp_codes.c.id == otp_id).values(used=1))
            conn.commit()

    def register_failed_otp_attempt(self, user_id: int, now: str) -> None:
        """Count one failed attempt against every outstanding code for the user."""
        with self.engine.connect() as conn:
            conn.execute(
                _otp_codes.update()
                .where((_otp_codes.c.user_id == user_id) & (_otp_codes.c.used == 0) & (_otp_codes.c.expires_at > now))
                .values(attempts=_otp_codes.c.attempts + 1)
            )
            conn.commit()

    def invalidate_otps(self, user_id: int) -> int:
        """Mark every unused code for the user as used. Returns the number invalidated."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_codes.update().where((_otp_codes.c.user_id == user_id) & (_otp_codes.c.used == 0)).values(used=1)
            )
            conn.commit()
        return result.rowcount

    def delete_expired_otps(self, user_id: int, now: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_codes.delete().where((_otp_codes.c.user_id == user_id) & (_otp_codes.c.expires_at < now))
            )
            conn.commit()
        return result.rowcount

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        phone=row.phone,
        branch_id=row.branch_id,
        is_active=bool(row.is_active),
        account_status=row.account_status,
        email_verified=bool(row.email_verified),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=row.locked_until,
        mfa_enabled=bool(row.mfa_enabled),
        role=row.role,
        last_login=row.last_login,
        last_activity=row.last_activity,
        status=row.status,
        current_session_id=row.current_session_id,
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name or "",
        description=row.description or "",
        is_active=bool(row.is_active),
        is_system_role=bool(row.is_system_role),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        access_token=row.access_token,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_activity=row.last_activity,
        is_active=bool(row.is_active),
        device=json.loads(row.device_info) if row.device_info else {},
        location=json.loads(row.location_info) if row.location_info else {},
        device_fingerprint=row.device_fingerprint or "",
        login_method=row.login_method,
        mfa_used=bool(row.mfa_used),
        risk_tier=row.risk_tier,
        current_page=row.current_page,
        logout_at=row.logout_at,
    )
