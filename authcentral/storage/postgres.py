from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcentral.config import DEFAULT_PERMISSIONS, DEFAULT_ROLE_GRANTS, DEFAULT_ROLES
from authcentral.logging import get_logger
from authcentral.storage.errors import DuplicateField, InvalidReference, StoreUnavailable
from authcentral.storage.models import (
    AuditEntry,
    Permission,
    RefreshTokenRecord,
    ResolvedAccess,
    Role,
    RoleDetail,
    User,
    UserCredential,
)

_REQUIRED_TABLES = (
    "users",
    "roles",
    "permissions",
    "user_roles",
    "role_permissions",
    "refresh_tokens",
    "audit_logs",
)

_USER_COLUMNS = (
    "id, email, first_name, last_name, is_active, is_email_verified, "
    "failed_login_attempts, locked_until, created_at, updated_at"
)


def _valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        is_active=bool(row.get("is_active", True)),
        is_email_verified=bool(row.get("is_email_verified", False)),
        failed_login_attempts=int(row.get("failed_login_attempts") or 0),
        locked_until=row.get("locked_until"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _role_from_row(row: Dict[str, Any]) -> Role:
    return Role(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description"),
        created_at=row["created_at"],
    )


def _permission_from_row(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=str(row["id"]),
        name=row["name"],
        resource=row["resource"],
        action=row["action"],
        description=row.get("description"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store, RBAC graph and refresh-token table."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 20,
        seed_defaults: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._verify_required_schema()
        if seed_defaults:
            self.ensure_default_rbac()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection, translating driver errors to store errors."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            field = getattr(exc.diag, "constraint_name", None)
            raise DuplicateField("duplicate field value", {"constraint": field}) from exc
        except errors.ForeignKeyViolation as exc:
            field = getattr(exc.diag, "constraint_name", None)
            raise InvalidReference(
                "referenced resource not found", {"constraint": field}
            ) from exc
        except (PoolTimeout, errors.QueryCanceled, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable", backend="postgres") from exc

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def ensure_default_rbac(self) -> None:
        """Install the seeded roles and permissions if they are missing."""
        with self._connect() as conn:
            for name, resource, action, description in DEFAULT_PERMISSIONS:
                conn.execute(
                    """
                    INSERT INTO permissions (name, resource, action, description)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (name) DO NOTHING
                    """,
                    (name, resource, action, description),
                )
            for name, description in DEFAULT_ROLES:
                conn.execute(
                    "INSERT INTO roles (name, description) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                    (name, description),
                )
            seeded_names = [entry[0] for entry in DEFAULT_PERMISSIONS]
            for role_name, grants in DEFAULT_ROLE_GRANTS.items():
                names = seeded_names if "*" in grants else list(grants)
                conn.execute(
                    """
                    INSERT INTO role_permissions (role_id, permission_id)
                    SELECT r.id, p.id FROM roles r JOIN permissions p ON p.name = ANY(%s)
                    WHERE r.name = %s
                    ON CONFLICT DO NOTHING
                    """,
                    (names, role_name),
                )

    # users / credentials
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (email, password_hash, first_name, last_name)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (email, password_hash, first_name, last_name),
                ).fetchone()
        except DuplicateField as exc:
            raise DuplicateField("email already exists", {"field": "email"}) from exc
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _valid_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s", (email,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_credentials_by_email(self, email: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS}, password_hash FROM users WHERE email = %s",
                (email,),
            ).fetchone()
        if not row:
            return None
        return UserCredential(user=_user_from_row(row), password_hash=row["password_hash"])

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _valid_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET is_active = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN now() + %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s AND (locked_until IS NULL OR locked_until <= now())
                RETURNING failed_login_attempts, locked_until
                """,
                (max_attempts, lockout, user_id),
            ).fetchone()
            if row is None:
                # Already locked by a concurrent attempt; report the current state.
                row = conn.execute(
                    "SELECT failed_login_attempts, locked_until FROM users WHERE id = %s",
                    (user_id,),
                ).fetchone()
        if not row:
            return 0, None
        return int(row["failed_login_attempts"]), row.get("locked_until")

    def lock_account(self, user_id: str, duration: timedelta) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET locked_until = now() + %s, updated_at = now()
                WHERE id = %s RETURNING locked_until
                """,
                (duration, user_id),
            ).fetchone()
        return row["locked_until"] if row else None

    def unlock_account(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    def reset_failed_logins(self, user_id: str) -> bool:
        if not _valid_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s AND (locked_until IS NULL OR locked_until <= now())
                RETURNING id
                """,
                (user_id,),
            ).fetchone()
        return row is not None

    # rbac graph
    def resolve_access(self, user_id: str) -> ResolvedAccess:
        if not _valid_uuid(user_id):
            return ResolvedAccess()
        with self._connect() as conn:
            role_rows = conn.execute(
                """
                SELECT DISTINCT r.name FROM user_roles ur
                JOIN roles r ON r.id = ur.role_id
                WHERE ur.user_id = %s
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
            perm_rows = conn.execute(
                """
                SELECT DISTINCT p.name FROM user_roles ur
                JOIN role_permissions rp ON rp.role_id = ur.role_id
                JOIN permissions p ON p.id = rp.permission_id
                WHERE ur.user_id = %s
                ORDER BY p.name
                """,
                (user_id,),
            ).fetchall()
        return ResolvedAccess(
            roles=[row["name"] for row in role_rows],
            permissions=[row["name"] for row in perm_rows],
        )

    def assign_role(self, user_id: str, role_id: str) -> bool:
        if not (_valid_uuid(user_id) and _valid_uuid(role_id)):
            raise InvalidReference(
                "user or role does not exist", {"user_id": user_id, "role_id": role_id}
            )
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_roles (user_id, role_id) VALUES (%s, %s)
                ON CONFLICT DO NOTHING
                RETURNING user_id
                """,
                (user_id, role_id),
            ).fetchone()
        return row is not None

    def remove_role(self, user_id: str, role_id: str) -> bool:
        if not (_valid_uuid(user_id) and _valid_uuid(role_id)):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_roles WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return cur.rowcount > 0

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, description, created_at FROM roles ORDER BY name"
            ).fetchall()
        return [_role_from_row(row) for row in rows]

    def get_role(self, role_id: str) -> Optional[Role]:
        if not _valid_uuid(role_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, description, created_at FROM roles WHERE id = %s",
                (role_id,),
            ).fetchone()
        return _role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, description, created_at FROM roles WHERE name = %s",
                (name,),
            ).fetchone()
        return _role_from_row(row) if row else None

    def get_role_detail(self, role_id: str) -> Optional[RoleDetail]:
        role = self.get_role(role_id)
        if role is None:
            return None
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.name, p.resource, p.action, p.description, p.created_at
                FROM role_permissions rp
                JOIN permissions p ON p.id = rp.permission_id
                WHERE rp.role_id = %s
                ORDER BY p.name
                """,
                (role_id,),
            ).fetchall()
        return RoleDetail(role=role, permissions=[_permission_from_row(row) for row in rows])

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO roles (name, description) VALUES (%s, %s)
                    RETURNING id, name, description, created_at
                    """,
                    (name, description),
                ).fetchone()
        except DuplicateField as exc:
            raise DuplicateField("role name already exists", {"field": "name"}) from exc
        return _role_from_row(row)

    def delete_role(self, role_id: str) -> bool:
        if not _valid_uuid(role_id):
            return False
        # user_roles and role_permissions rows go with it via ON DELETE CASCADE
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM roles WHERE id = %s", (role_id,))
            return cur.rowcount > 0

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, name, resource, action, description, created_at
                FROM permissions ORDER BY resource, action
                """
            ).fetchall()
        return [_permission_from_row(row) for row in rows]

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        if not _valid_uuid(permission_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, name, resource, action, description, created_at
                FROM permissions WHERE id = %s
                """,
                (permission_id,),
            ).fetchone()
        return _permission_from_row(row) if row else None

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permissions (name, resource, action, description)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, name, resource, action, description, created_at
                    """,
                    (name, resource, action, description),
                ).fetchone()
        except DuplicateField as exc:
            raise DuplicateField("permission name already exists", {"field": "name"}) from exc
        return _permission_from_row(row)

    def delete_permission(self, permission_id: str) -> bool:
        if not _valid_uuid(permission_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM permissions WHERE id = %s", (permission_id,))
            return cur.rowcount > 0

    def add_permission_to_role(self, role_id: str, permission_id: str) -> bool:
        if not (_valid_uuid(role_id) and _valid_uuid(permission_id)):
            raise InvalidReference(
                "role or permission does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role_permissions (role_id, permission_id) VALUES (%s, %s)
                ON CONFLICT DO NOTHING
                RETURNING role_id
                """,
                (role_id, permission_id),
            ).fetchone()
        return row is not None

    def remove_permission_from_role(self, role_id: str, permission_id: str) -> bool:
        if not (_valid_uuid(role_id) and _valid_uuid(permission_id)):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM role_permissions WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return cur.rowcount > 0

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO refresh_tokens (user_id, token_hash, expires_at)
                VALUES (%s, %s, %s)
                RETURNING id, user_id, token_hash, expires_at, created_at, revoked_at
                """,
                (user_id, token_hash, expires_at),
            ).fetchone()
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
        )

    def find_valid_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT rt.id, rt.user_id, rt.token_hash, rt.expires_at, rt.created_at,
                       rt.revoked_at, u.is_active
                FROM refresh_tokens rt
                JOIN users u ON u.id = rt.user_id
                WHERE rt.token_hash = %s AND rt.revoked_at IS NULL AND rt.expires_at > now()
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
            user_is_active=bool(row["is_active"]),
        )

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = now()
                WHERE token_hash = %s AND revoked_at IS NULL
                """,
                (token_hash,),
            )
            return cur.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        if not _valid_uuid(user_id):
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_tokens SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (user_id,),
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_tokens WHERE expires_at <= now()")
            return cur.rowcount

    # audit
    def record_audit(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs
                    (id, user_id, action, resource, status, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.resource,
                    entry.status,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.created_at,
                ),
            )

    def list_audit_entries(self, user_id: str, limit: int = 50) -> List[AuditEntry]:
        if not _valid_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, action, resource, status, ip_address, user_agent,
                       metadata, created_at
                FROM audit_logs WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [
            AuditEntry(
                id=str(row["id"]),
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                action=row["action"],
                resource=row.get("resource"),
                status=row.get("status"),
                ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
                user_agent=row.get("user_agent"),
                metadata=row.get("metadata"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
