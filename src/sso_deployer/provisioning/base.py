"""Shared lifecycle for resource provisioners."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from sso_deployer.aws_credentials.sts_provider import CredentialBroker
from sso_deployer.execution.errors import error_details
from sso_deployer.store.db import SqliteStore
from sso_deployer.store.models import (
    AwsSettingsRecord,
    DeploymentAction,
    DeploymentRecord,
    LogLevel,
)
from sso_deployer.utils.blocking import run_blocking

logger = logging.getLogger(__name__)

MANAGED_BY_TAG = {"Key": "ManagedBy", "Value": "AWS-SSO-Manager"}


def management_tags(requested_by: str | None) -> list[dict[str, str]]:
    return [MANAGED_BY_TAG, {"Key": "CreatedBy", "Value": requested_by or "unknown"}]


@dataclass
class ProvisionOutcome:
    resource_name: str
    effective_action: DeploymentAction
    details: dict[str, object] = field(default_factory=dict)
    message: str | None = None


class Provisioner(ABC):
    """Applies one deployment for one resource type.

    Subclasses implement ``_apply``. Whatever happens, exactly one entry is
    appended to the deployment log: INFO on success, ERROR on failure. Errors
    are re-raised after logging so the queue can mark the deployment FAILED.
    """

    resource_label: str = "resource"

    def __init__(self, store: SqliteStore, broker: CredentialBroker) -> None:
        self._store = store
        self._broker = broker

    async def provision(self, deployment: DeploymentRecord, settings: AwsSettingsRecord) -> None:
        try:
            outcome = await self._apply(deployment, settings)
        except Exception as exc:
            logger.error(
                "Failed to %s %s for deployment %s in account %s: %s",
                deployment.action.value.lower(),
                self.resource_label,
                deployment.deployment_id,
                deployment.target_account,
                exc,
            )
            details = error_details(exc)
            details.update(
                {"account": deployment.target_account, "action": deployment.action.value}
            )
            await run_blocking(
                self._store.append_log,
                deployment.deployment_id,
                LogLevel.ERROR,
                f"Failed to {deployment.action.value.lower()} {self.resource_label} "
                f"in account {deployment.target_account}: {exc}",
                details,
            )
            raise

        message = outcome.message or (
            f"Successfully {outcome.effective_action.past_tense} {self.resource_label} "
            f"{outcome.resource_name} in account {deployment.target_account}"
        )
        details = {
            self.detail_key: outcome.resource_name,
            "account": deployment.target_account,
            "action": deployment.action.value,
            "effective_action": outcome.effective_action.value,
            **outcome.details,
        }
        await run_blocking(
            self._store.append_log,
            deployment.deployment_id,
            LogLevel.INFO,
            message,
            details,
        )
        logger.info("%s (deployment %s)", message, deployment.deployment_id)

    @property
    def detail_key(self) -> str:
        return self.resource_label.replace(" ", "_")

    @abstractmethod
    async def _apply(
        self, deployment: DeploymentRecord, settings: AwsSettingsRecord
    ) -> ProvisionOutcome:
        raise NotImplementedError
