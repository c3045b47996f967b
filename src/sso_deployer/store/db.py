"""SQLite access layer for deployments, their logs, and the definitions they deploy."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Mapping, Sequence
from uuid import uuid4

from sso_deployer.store.models import (
    ALLOWED_TRANSITIONS,
    AccountRecord,
    AwsSettingsRecord,
    DeploymentAction,
    DeploymentLogRecord,
    DeploymentRecord,
    DeploymentStatus,
    LogLevel,
    PermissionSetRecord,
    ResourceType,
    RoleRecord,
)
from sso_deployer.utils.serialization import dumps_details, loads_details
from sso_deployer.utils.time import utc_now_iso

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


class StoreError(Exception):
    """Base class for record store errors."""


class DeploymentNotFoundError(StoreError):
    def __init__(self, deployment_id: str) -> None:
        super().__init__(f"Deployment {deployment_id} not found")
        self.deployment_id = deployment_id


class ResourceNotFoundError(StoreError):
    def __init__(self, kind: str, resource_id: str) -> None:
        super().__init__(f"{kind} {resource_id} not found")
        self.kind = kind
        self.resource_id = resource_id


class AwsSettingsNotConfiguredError(StoreError):
    def __init__(self) -> None:
        super().__init__("AWS settings not configured")


class InvalidStatusTransition(StoreError):
    def __init__(
        self,
        deployment_id: str,
        current: DeploymentStatus,
        requested: DeploymentStatus,
    ) -> None:
        super().__init__(
            f"Deployment {deployment_id} cannot move from {current.value} to {requested.value}"
        )
        self.deployment_id = deployment_id
        self.current = current
        self.requested = requested


class SqliteStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS accounts (
                account_id TEXT PRIMARY KEY,
                name TEXT,
                email TEXT,
                ou_path TEXT NOT NULL DEFAULT '/',
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS roles (
                role_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                trust_policy TEXT NOT NULL,
                max_session_duration INTEGER NOT NULL DEFAULT 3600,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS role_policies (
                role_id TEXT NOT NULL,
                policy_arn TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (role_id, policy_arn),
                FOREIGN KEY(role_id) REFERENCES roles(role_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS permission_sets (
                permission_set_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                session_duration TEXT NOT NULL DEFAULT 'PT1H',
                relay_state TEXT,
                inline_policy TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS permission_set_policies (
                permission_set_id TEXT NOT NULL,
                policy_arn TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (permission_set_id, policy_arn),
                FOREIGN KEY(permission_set_id)
                    REFERENCES permission_sets(permission_set_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS aws_settings (
                settings_id INTEGER PRIMARY KEY CHECK (settings_id = 1),
                region TEXT NOT NULL,
                access_key_id TEXT NOT NULL,
                secret_access_key TEXT NOT NULL,
                cross_account_role_name TEXT NOT NULL,
                sso_instance_arn TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deployments (
                deployment_id TEXT PRIMARY KEY,
                target_account TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                requested_by TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS deployment_logs (
                log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                deployment_id TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                details TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(deployment_id) REFERENCES deployments(deployment_id)
            );

            CREATE INDEX IF NOT EXISTS idx_deployments_status ON deployments(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_deployment_logs_deployment_id
                ON deployment_logs(deployment_id, log_id);
            """
        )
        self._conn.commit()

    def execute(
        self,
        query: str,
        params: _SqlParams,
    ) -> None:
        with self._lock:
            self._conn.execute(query, params)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def fetch_one(
        self,
        query: str,
        params: _SqlParams,
    ) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def fetch_all(
        self,
        query: str,
        params: _SqlParams,
    ) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    # Deployments

    def create_deployment(
        self,
        target_account: str,
        resource_type: ResourceType,
        resource_id: str,
        action: DeploymentAction,
        requested_by: str | None = None,
    ) -> DeploymentRecord:
        record = DeploymentRecord(
            deployment_id=uuid4().hex,
            target_account=target_account,
            resource_type=ResourceType(resource_type),
            resource_id=resource_id,
            action=DeploymentAction(action),
            status=DeploymentStatus.PENDING,
            requested_by=requested_by,
            created_at=utc_now_iso(),
        )
        self.execute(
            """
            INSERT INTO deployments (
                deployment_id, target_account, resource_type, resource_id, action,
                status, requested_by, created_at, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL)
            """,
            (
                record.deployment_id,
                record.target_account,
                record.resource_type.value,
                record.resource_id,
                record.action.value,
                record.status.value,
                record.requested_by,
                record.created_at,
            ),
        )
        return record

    def get_deployment(self, deployment_id: str) -> DeploymentRecord | None:
        row = self.fetch_one(
            "SELECT * FROM deployments WHERE deployment_id = ?", (deployment_id,)
        )
        if row is None:
            return None
        return _deployment_from_row(row)

    def require_deployment(self, deployment_id: str) -> DeploymentRecord:
        record = self.get_deployment(deployment_id)
        if record is None:
            raise DeploymentNotFoundError(deployment_id)
        return record

    def list_deployments(
        self,
        status: DeploymentStatus | None = None,
        limit: int = 100,
    ) -> list[DeploymentRecord]:
        if status is None:
            rows = self.fetch_all(
                "SELECT * FROM deployments ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.fetch_all(
                "SELECT * FROM deployments WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (DeploymentStatus(status).value, limit),
            )
        return [_deployment_from_row(row) for row in rows]

    def transition_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        at: str | None = None,
    ) -> DeploymentRecord:
        """Move a deployment forward along PENDING -> IN_PROGRESS -> COMPLETED|FAILED.

        The check and the write happen in one UPDATE so a concurrent writer
        cannot slip an out-of-order transition in between.
        """
        status = DeploymentStatus(status)
        allowed = ALLOWED_TRANSITIONS.get(status, ())
        timestamp = at or utc_now_iso()
        column = "started_at" if status is DeploymentStatus.IN_PROGRESS else "completed_at"
        placeholders = ",".join("?" for _ in allowed)
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE deployments SET status = ?, {column} = ? "
                f"WHERE deployment_id = ? AND status IN ({placeholders or 'NULL'})",
                (status.value, timestamp, deployment_id, *(s.value for s in allowed)),
            )
            self._conn.commit()
            updated = cursor.rowcount == 1
        current = self.require_deployment(deployment_id)
        if not updated:
            raise InvalidStatusTransition(deployment_id, current.status, status)
        return current

    # Deployment logs

    def append_log(
        self,
        deployment_id: str,
        level: LogLevel,
        message: str,
        details: Mapping[str, object] | None = None,
    ) -> DeploymentLogRecord:
        level = LogLevel(level)
        created_at = utc_now_iso()
        serialized = dumps_details(details)
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO deployment_logs (deployment_id, level, message, details, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (deployment_id, level.value, message, serialized, created_at),
            )
            self._conn.commit()
            log_id = int(cursor.lastrowid or 0)
        return DeploymentLogRecord(
            log_id=log_id,
            deployment_id=deployment_id,
            level=level,
            message=message,
            details=loads_details(serialized),
            created_at=created_at,
        )

    def list_logs(self, deployment_id: str) -> list[DeploymentLogRecord]:
        rows = self.fetch_all(
            "SELECT * FROM deployment_logs WHERE deployment_id = ? ORDER BY log_id",
            (deployment_id,),
        )
        return [
            DeploymentLogRecord(
                log_id=row["log_id"],
                deployment_id=row["deployment_id"],
                level=LogLevel(row["level"]),
                message=row["message"],
                details=loads_details(row["details"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Definitions

    def save_role(self, role: RoleRecord) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO roles (
                    role_id, name, description, trust_policy, max_session_duration, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(role_id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    trust_policy = excluded.trust_policy,
                    max_session_duration = excluded.max_session_duration,
                    updated_at = excluded.updated_at
                """,
                (
                    role.role_id,
                    role.name,
                    role.description,
                    role.trust_policy,
                    role.max_session_duration,
                    utc_now_iso(),
                ),
            )
            self._conn.execute("DELETE FROM role_policies WHERE role_id = ?", (role.role_id,))
            self._conn.executemany(
                "INSERT INTO role_policies (role_id, policy_arn, position) VALUES (?, ?, ?)",
                [(role.role_id, arn, index) for index, arn in enumerate(role.policy_arns)],
            )
            self._conn.commit()

    def get_role(self, role_id: str) -> RoleRecord | None:
        row = self.fetch_one("SELECT * FROM roles WHERE role_id = ?", (role_id,))
        if row is None:
            return None
        policies = self.fetch_all(
            "SELECT policy_arn FROM role_policies WHERE role_id = ? ORDER BY position",
            (role_id,),
        )
        return RoleRecord(
            role_id=row["role_id"],
            name=row["name"],
            description=row["description"],
            trust_policy=row["trust_policy"],
            max_session_duration=row["max_session_duration"],
            policy_arns=[p["policy_arn"] for p in policies],
        )

    def require_role(self, role_id: str) -> RoleRecord:
        role = self.get_role(role_id)
        if role is None:
            raise ResourceNotFoundError("Role", role_id)
        return role

    def save_permission_set(self, permission_set: PermissionSetRecord) -> None:
        ps = permission_set
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO permission_sets (
                    permission_set_id, name, description, session_duration,
                    relay_state, inline_policy, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(permission_set_id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    session_duration = excluded.session_duration,
                    relay_state = excluded.relay_state,
                    inline_policy = excluded.inline_policy,
                    updated_at = excluded.updated_at
                """,
                (
                    ps.permission_set_id,
                    ps.name,
                    ps.description,
                    ps.session_duration,
                    ps.relay_state,
                    ps.inline_policy,
                    utc_now_iso(),
                ),
            )
            self._conn.execute(
                "DELETE FROM permission_set_policies WHERE permission_set_id = ?",
                (ps.permission_set_id,),
            )
            self._conn.executemany(
                """
                INSERT INTO permission_set_policies (permission_set_id, policy_arn, position)
                VALUES (?, ?, ?)
                """,
                [(ps.permission_set_id, arn, index) for index, arn in enumerate(ps.policy_arns)],
            )
            self._conn.commit()

    def get_permission_set(self, permission_set_id: str) -> PermissionSetRecord | None:
        row = self.fetch_one(
            "SELECT * FROM permission_sets WHERE permission_set_id = ?", (permission_set_id,)
        )
        if row is None:
            return None
        policies = self.fetch_all(
            """
            SELECT policy_arn FROM permission_set_policies
            WHERE permission_set_id = ? ORDER BY position
            """,
            (permission_set_id,),
        )
        return PermissionSetRecord(
            permission_set_id=row["permission_set_id"],
            name=row["name"],
            description=row["description"],
            session_duration=row["session_duration"],
            relay_state=row["relay_state"],
            inline_policy=row["inline_policy"],
            policy_arns=[p["policy_arn"] for p in policies],
        )

    def require_permission_set(self, permission_set_id: str) -> PermissionSetRecord:
        permission_set = self.get_permission_set(permission_set_id)
        if permission_set is None:
            raise ResourceNotFoundError("Permission Set", permission_set_id)
        return permission_set

    # Accounts

    def upsert_account(self, account: AccountRecord) -> None:
        self.execute(
            """
            INSERT INTO accounts (account_id, name, email, ou_path, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(account_id) DO UPDATE SET
                name = excluded.name,
                email = excluded.email,
                ou_path = excluded.ou_path,
                updated_at = excluded.updated_at
            """,
            (account.account_id, account.name, account.email, account.ou_path, utc_now_iso()),
        )

    def get_account(self, account_id: str) -> AccountRecord | None:
        row = self.fetch_one("SELECT * FROM accounts WHERE account_id = ?", (account_id,))
        if row is None:
            return None
        return AccountRecord(
            account_id=row["account_id"],
            name=row["name"],
            email=row["email"],
            ou_path=row["ou_path"],
        )

    # AWS settings

    def save_aws_settings(self, settings: AwsSettingsRecord) -> None:
        self.execute(
            """
            INSERT INTO aws_settings (
                settings_id, region, access_key_id, secret_access_key,
                cross_account_role_name, sso_instance_arn, updated_at
            ) VALUES (1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(settings_id) DO UPDATE SET
                region = excluded.region,
                access_key_id = excluded.access_key_id,
                secret_access_key = excluded.secret_access_key,
                cross_account_role_name = excluded.cross_account_role_name,
                sso_instance_arn = excluded.sso_instance_arn,
                updated_at = excluded.updated_at
            """,
            (
                settings.region,
                settings.access_key_id,
                settings.secret_access_key,
                settings.cross_account_role_name,
                settings.sso_instance_arn,
                utc_now_iso(),
            ),
        )

    def get_aws_settings(self) -> AwsSettingsRecord | None:
        row = self.fetch_one("SELECT * FROM aws_settings WHERE settings_id = 1", ())
        if row is None:
            return None
        return AwsSettingsRecord(
            region=row["region"],
            access_key_id=row["access_key_id"],
            secret_access_key=row["secret_access_key"],
            cross_account_role_name=row["cross_account_role_name"],
            sso_instance_arn=row["sso_instance_arn"],
        )

    def require_aws_settings(self) -> AwsSettingsRecord:
        settings = self.get_aws_settings()
        if settings is None:
            raise AwsSettingsNotConfiguredError()
        return settings


def _deployment_from_row(row: sqlite3.Row) -> DeploymentRecord:
    return DeploymentRecord(
        deployment_id=row["deployment_id"],
        target_account=row["target_account"],
        resource_type=ResourceType(row["resource_type"]),
        resource_id=row["resource_id"],
        action=DeploymentAction(row["action"]),
        status=DeploymentStatus(row["status"]),
        requested_by=row["requested_by"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )
