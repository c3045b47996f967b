"""Records persisted by the deployment store."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ResourceType(str, Enum):
    ROLE = "ROLE"
    PERMISSION_SET = "PERMISSION_SET"


class DeploymentAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @property
    def past_tense(self) -> str:
        return f"{self.value.lower()}d"


class DeploymentStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.COMPLETED, DeploymentStatus.FAILED)


class LogLevel(str, Enum):
    INFO = "INFO"
    ERROR = "ERROR"


# Target status -> statuses it may be entered from.
ALLOWED_TRANSITIONS: dict[DeploymentStatus, tuple[DeploymentStatus, ...]] = {
    DeploymentStatus.IN_PROGRESS: (DeploymentStatus.PENDING,),
    DeploymentStatus.COMPLETED: (DeploymentStatus.IN_PROGRESS,),
    DeploymentStatus.FAILED: (DeploymentStatus.IN_PROGRESS,),
}


@dataclass
class DeploymentRecord:
    deployment_id: str
    target_account: str
    resource_type: ResourceType
    resource_id: str
    action: DeploymentAction
    status: DeploymentStatus
    requested_by: str | None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.deployment_id,
            "targetAccount": self.target_account,
            "type": self.resource_type.value,
            "resourceId": self.resource_id,
            "action": self.action.value,
            "status": self.status.value,
            "requestedBy": self.requested_by,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


@dataclass
class DeploymentLogRecord:
    log_id: int
    deployment_id: str
    level: LogLevel
    message: str
    details: dict[str, object]
    created_at: str

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.log_id,
            "level": self.level.value,
            "message": self.message,
            "details": self.details,
            "createdAt": self.created_at,
        }


@dataclass
class RoleRecord:
    role_id: str
    name: str
    trust_policy: str
    description: str | None = None
    max_session_duration: int = 3600
    policy_arns: list[str] = field(default_factory=list)


@dataclass
class PermissionSetRecord:
    permission_set_id: str
    name: str
    description: str | None = None
    session_duration: str = "PT1H"
    relay_state: str | None = None
    inline_policy: str | None = None
    policy_arns: list[str] = field(default_factory=list)


@dataclass
class AccountRecord:
    account_id: str
    name: str | None = None
    email: str | None = None
    ou_path: str = "/"


@dataclass(frozen=True)
class AwsSettingsRecord:
    region: str
    access_key_id: str
    secret_access_key: str
    cross_account_role_name: str
    sso_instance_arn: str | None = None

    def __repr__(self) -> str:
        return (
            f"AwsSettingsRecord(region={self.region!r}, "
            f"access_key_id={self.access_key_id[:4]}***, "
            f"cross_account_role_name={self.cross_account_role_name!r}, "
            f"sso_instance_arn={self.sso_instance_arn!r})"
        )
