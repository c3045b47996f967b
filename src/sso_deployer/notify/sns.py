"""Best-effort SNS fan-out of deployment status transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from sso_deployer.config import ExecutionSettings, NotificationSettings
from sso_deployer.execution.aws_client import call_aws_api_async, create_client
from sso_deployer.store.db import SqliteStore
from sso_deployer.store.models import DeploymentRecord, DeploymentStatus, ResourceType
from sso_deployer.utils.blocking import run_blocking
from sso_deployer.utils.serialization import json_default
from sso_deployer.utils.time import utc_now_iso

logger = logging.getLogger(__name__)


class SnsNotifier:
    """Publish deployment status messages to an SNS topic.

    Without a topic this is a no-op. Publishing never raises: a failed
    notification is logged and the deployment outcome is unaffected.
    """

    def __init__(
        self,
        store: SqliteStore,
        topic_arn: str | None,
        region: str | None = None,
        *,
        timeout: float | None = 30.0,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._store = store
        self._topic_arn = topic_arn
        self._region = region
        self._timeout = timeout
        self._client_factory = client_factory
        self._client: Any = None

    @classmethod
    def from_settings(
        cls,
        store: SqliteStore,
        settings: NotificationSettings,
        execution: ExecutionSettings,
    ) -> "SnsNotifier":
        return cls(
            store,
            settings.topic_arn,
            settings.region,
            timeout=execution.call_timeout_seconds,
            client_factory=lambda: create_client(
                "sns",
                region=settings.region,
                sdk_timeout_seconds=execution.sdk_timeout_seconds,
            ),
        )

    @property
    def enabled(self) -> bool:
        return bool(self._topic_arn)

    def _get_client(self) -> Any:
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory()
            else:
                self._client = create_client("sns", region=self._region)
        return self._client

    async def publish_status(self, deployment_id: str, status: DeploymentStatus) -> bool:
        """Publish ``status`` for ``deployment_id``. Returns True when a message was sent."""
        status = DeploymentStatus(status)
        if not self.enabled:
            logger.debug("SNS not configured, skipping notification for %s", deployment_id)
            return False

        try:
            deployment = await run_blocking(self._store.get_deployment, deployment_id)
            if deployment is None:
                logger.error("Deployment %s not found for SNS publishing", deployment_id)
                return False
            message = await run_blocking(self._build_message, deployment, status)
            client = await run_blocking(self._get_client)
            await call_aws_api_async(
                client,
                "publish",
                timeout=self._timeout,
                TopicArn=self._topic_arn,
                Message=json.dumps(message, default=json_default),
                MessageAttributes={
                    "deploymentType": {
                        "DataType": "String",
                        "StringValue": deployment.resource_type.value,
                    },
                    "status": {"DataType": "String", "StringValue": status.value},
                    "accountId": {
                        "DataType": "String",
                        "StringValue": deployment.target_account or "unknown",
                    },
                },
            )
        except Exception:
            logger.warning(
                "Error publishing deployment %s status %s to SNS",
                deployment_id,
                status.value,
                exc_info=True,
            )
            return False

        logger.info("Published deployment %s status %s to SNS", deployment_id, status.value)
        return True

    def _build_message(
        self, deployment: DeploymentRecord, status: DeploymentStatus
    ) -> dict[str, object]:
        account = self._store.get_account(deployment.target_account)
        message: dict[str, object] = {
            "deploymentId": deployment.deployment_id,
            "status": DeploymentStatus(status).value,
            "type": deployment.resource_type.value,
            "action": deployment.action.value,
            "accountId": deployment.target_account,
            "accountName": account.name if account else None,
            "roleId": None,
            "roleName": None,
            "permissionSetId": None,
            "permissionSetName": None,
            "timestamp": utc_now_iso(),
        }
        if deployment.resource_type is ResourceType.ROLE:
            role = self._store.get_role(deployment.resource_id)
            message["roleId"] = deployment.resource_id
            message["roleName"] = role.name if role else None
        else:
            permission_set = self._store.get_permission_set(deployment.resource_id)
            message["permissionSetId"] = deployment.resource_id
            message["permissionSetName"] = permission_set.name if permission_set else None
        return message
