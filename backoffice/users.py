from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from backoffice.auth import MIN_PASSWORD_LENGTH, hash_password, needs_rehash, verify_password
from backoffice.errors import AdminProtected, NotFound, PendingApproval, UniqueConstraintViolation, ValidationError
from backoffice.schema import now_ts
from backoffice.storage import StorageEngine

log = logging.getLogger("backoffice.users")

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = {ROLE_USER, ROLE_ADMIN}


@dataclass(frozen=True)
class UserRow:
    id: int
    email: str
    name: str
    role: str
    is_approved: bool
    created_at: int
    updated_at: int

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True)
class UserAuthRow:
    id: int
    email: str
    role: str
    password_hash: str
    is_approved: bool


def can_access(user: UserRow) -> bool:
    """Admins always pass; everyone else needs approval first."""
    return user.is_admin or user.is_approved


def normalize_email(raw: Any) -> str:
    return str(raw or "").strip().lower()


def _validate_email(email: str) -> None:
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain:
        raise ValidationError("email", "email is invalid")


def _validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError("password", f"password must be at least {MIN_PASSWORD_LENGTH} characters")


def _validate_role(role: str) -> None:
    if role not in ROLES:
        raise ValidationError("role", f"role must be one of: {', '.join(sorted(ROLES))}")


class UserRepository:
    def __init__(self, engine: StorageEngine) -> None:
        self._engine = engine

    def _to_user(self, row: sqlite3.Row) -> UserRow:
        return UserRow(
            id=int(row["id"]),
            email=str(row["email"]),
            name=str(row["name"] or ""),
            role=str(row["role"] or ROLE_USER),
            is_approved=bool(row["is_approved"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def _to_user_auth(self, row: sqlite3.Row) -> UserAuthRow:
        return UserAuthRow(
            id=int(row["id"]),
            email=str(row["email"]),
            role=str(row["role"] or ROLE_USER),
            password_hash=str(row["password_hash"] or ""),
            is_approved=bool(row["is_approved"]),
        )

    def _load(self, conn: sqlite3.Connection, user_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM users WHERE id=?", (int(user_id),)).fetchone()
        if row is None:
            raise NotFound("user", user_id)
        return row

    def _admin_count(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COUNT(*) AS c FROM users WHERE role=?", (ROLE_ADMIN,)).fetchone()
        return int(row["c"] or 0)

    def _check_email_free(self, conn: sqlite3.Connection, email: str, *, user_id: int | None = None) -> None:
        row = conn.execute("SELECT id FROM users WHERE lower(email)=?", (email,)).fetchone()
        if row is not None and int(row["id"]) != user_id:
            raise UniqueConstraintViolation("email", email)

    def initialize(self, *, admin_email: str, admin_password: str, admin_name: str = "Admin") -> None:
        """Bring the users table up to shape and make sure an admin account exists."""
        self._engine.open()
        self._engine.ensure_columns("users")
        email = normalize_email(admin_email)
        _validate_email(email)

        def unit(conn: sqlite3.Connection) -> str | None:
            if conn.execute("SELECT id FROM users WHERE role=? LIMIT 1", (ROLE_ADMIN,)).fetchone():
                return None
            ts = now_ts()
            existing = conn.execute("SELECT id FROM users WHERE lower(email)=?", (email,)).fetchone()
            if existing is not None:
                conn.execute(
                    "UPDATE users SET role=?, is_approved=1, updated_at=? WHERE id=?",
                    (ROLE_ADMIN, ts, int(existing["id"])),
                )
                return "promoted"
            conn.execute(
                """
                INSERT INTO users(email, password_hash, name, role, is_approved, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                """,
                (email, hash_password(admin_password), admin_name, ROLE_ADMIN, ts, ts),
            )
            return "created"

        outcome = self._engine.execute(unit, operation="initialize_users")
        if outcome:
            log.info("Bootstrap admin %s %s", email, outcome)

    def create_user(
        self,
        *,
        email: str,
        password: str,
        name: str = "",
        role: str = ROLE_USER,
        is_approved: bool = False,
    ) -> int:
        email = normalize_email(email)
        _validate_email(email)
        _validate_password(password)
        _validate_role(role)
        approved = True if role == ROLE_ADMIN else bool(is_approved)
        password_hash = hash_password(password)

        def unit(conn: sqlite3.Connection) -> int:
            self._check_email_free(conn, email)
            ts = now_ts()
            cur = conn.execute(
                """
                INSERT INTO users(email, password_hash, name, role, is_approved, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (email, password_hash, str(name or "").strip(), role, 1 if approved else 0, ts, ts),
            )
            return int(cur.lastrowid)

        user_id = self._engine.execute(unit, operation="create_user")
        log.info("Created user %s (id=%s, role=%s, approved=%s)", email, user_id, role, approved)
        return user_id

    def register(self, *, email: str, password: str, name: str = "") -> int:
        return self.create_user(email=email, password=password, name=name, role=ROLE_USER, is_approved=False)

    def authenticate(self, email: str, password: str) -> UserRow | None:
        row = self._engine.query_one(
            "SELECT * FROM users WHERE lower(email)=?",
            (normalize_email(email),),
            operation="authenticate",
        )
        if row is None:
            return None
        auth = self._to_user_auth(row)
        if not verify_password(password, auth.password_hash):
            return None
        if needs_rehash(auth.password_hash):
            self._rehash(auth, password)
        if auth.role != ROLE_ADMIN and not auth.is_approved:
            raise PendingApproval(auth.email)
        return self._to_user(row)

    def _rehash(self, auth: UserAuthRow, password: str) -> None:
        password_hash = hash_password(password)

        def unit(conn: sqlite3.Connection) -> None:
            # only replace the hash that was just verified
            conn.execute(
                "UPDATE users SET password_hash=?, updated_at=? WHERE id=? AND password_hash=?",
                (password_hash, now_ts(), auth.id, auth.password_hash),
            )

        self._engine.execute(unit, operation="rehash_password")
        log.info("Upgraded password hash for user id=%s", auth.id)

    def get_user(self, user_id: int) -> UserRow | None:
        row = self._engine.query_one("SELECT * FROM users WHERE id=?", (int(user_id),), operation="get_user")
        if row is None:
            return None
        return self._to_user(row)

    def get_user_by_email(self, email: str) -> UserRow | None:
        row = self._engine.query_one(
            "SELECT * FROM users WHERE lower(email)=?",
            (normalize_email(email),),
            operation="get_user_by_email",
        )
        if row is None:
            return None
        return self._to_user(row)

    def list_users(self) -> list[UserRow]:
        rows = self._engine.query("SELECT * FROM users ORDER BY email", operation="list_users")
        return [self._to_user(row) for row in rows]

    def list_pending_users(self) -> list[UserRow]:
        rows = self._engine.query(
            "SELECT * FROM users WHERE is_approved=0 AND role=? ORDER BY created_at, id",
            (ROLE_USER,),
            operation="list_pending_users",
        )
        return [self._to_user(row) for row in rows]

    def approve_user(self, user_id: int) -> bool:
        def unit(conn: sqlite3.Connection) -> None:
            row = self._load(conn, user_id)
            if row["role"] == ROLE_ADMIN:
                raise AdminProtected("admin approval cannot be changed")
            conn.execute("UPDATE users SET is_approved=1, updated_at=? WHERE id=?", (now_ts(), int(user_id)))

        self._engine.execute(unit, operation="approve_user")
        log.info("Approved user id=%s", user_id)
        return True

    def deny_user(self, user_id: int) -> bool:
        def unit(conn: sqlite3.Connection) -> None:
            row = self._load(conn, user_id)
            if row["role"] == ROLE_ADMIN:
                raise AdminProtected("admin accounts cannot be denied")
            if row["is_approved"]:
                raise ValidationError("user", "only pending accounts can be denied")
            conn.execute("DELETE FROM users WHERE id=?", (int(user_id),))

        self._engine.execute(unit, operation="deny_user")
        log.info("Denied user id=%s", user_id)
        return True

    def set_role(self, user_id: int, role: str) -> bool:
        _validate_role(role)

        def unit(conn: sqlite3.Connection) -> None:
            row = self._load(conn, user_id)
            if row["role"] == ROLE_ADMIN:
                raise AdminProtected("admin role cannot be changed")
            conn.execute(
                """
                UPDATE users
                SET role=?, is_approved=CASE WHEN ?='admin' THEN 1 ELSE is_approved END, updated_at=?
                WHERE id=?
                """,
                (role, role, now_ts(), int(user_id)),
            )

        self._engine.execute(unit, operation="set_role")
        log.info("Set role of user id=%s to %s", user_id, role)
        return True

    def update_user(
        self,
        user_id: int,
        *,
        name: str | None = None,
        email: str | None = None,
        role: str | None = None,
        is_approved: bool | None = None,
    ) -> bool:
        if role is not None:
            _validate_role(role)
        new_email = None
        if email is not None:
            new_email = normalize_email(email)
            _validate_email(new_email)

        def unit(conn: sqlite3.Connection) -> None:
            row = self._load(conn, user_id)
            if row["role"] == ROLE_ADMIN:
                if role is not None and role != ROLE_ADMIN:
                    raise AdminProtected("admin role cannot be changed")
                if is_approved is not None and not is_approved:
                    raise AdminProtected("admin approval cannot be changed")
            if new_email is not None:
                self._check_email_free(conn, new_email, user_id=int(user_id))

            next_role = role if role is not None else str(row["role"])
            approved = bool(row["is_approved"]) if is_approved is None else bool(is_approved)
            if next_role == ROLE_ADMIN:
                approved = True
            conn.execute(
                "UPDATE users SET name=?, email=?, role=?, is_approved=?, updated_at=? WHERE id=?",
                (
                    str(row["name"] or "") if name is None else str(name).strip(),
                    str(row["email"]) if new_email is None else new_email,
                    next_role,
                    1 if approved else 0,
                    now_ts(),
                    int(user_id),
                ),
            )

        self._engine.execute(unit, operation="update_user")
        log.info("Updated user id=%s", user_id)
        return True

    def delete_user(self, user_id: int) -> bool:
        """Delete the account together with its timesheet entries. Quotes it created are kept, unowned."""

        def unit(conn: sqlite3.Connection) -> int:
            row = self._load(conn, user_id)
            if row["role"] == ROLE_ADMIN and self._admin_count(conn) <= 1:
                raise AdminProtected("cannot delete the last admin user")
            entries = conn.execute(
                "SELECT COUNT(*) AS c FROM timesheet_entries WHERE user_id=?", (int(user_id),)
            ).fetchone()
            # timesheet_entries.user_id is ON DELETE CASCADE
            conn.execute("DELETE FROM users WHERE id=?", (int(user_id),))
            return int(entries["c"] or 0)

        removed = self._engine.execute(unit, operation="delete_user")
        log.info("Deleted user id=%s and %d timesheet entries", user_id, removed)
        return True

    def set_password(self, *, email: str, new_password: str) -> bool:
        _validate_password(new_password)
        password_hash = hash_password(new_password)
        target = normalize_email(email)

        def unit(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                "UPDATE users SET password_hash=?, updated_at=? WHERE lower(email)=?",
                (password_hash, now_ts(), target),
            )
            return int(cur.rowcount or 0)

        return self._engine.execute(unit, operation="set_password") > 0
