"""IAM Identity Center permission-set provisioning."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sso_deployer.aws_credentials.sts_provider import CredentialBroker
from sso_deployer.execution.aws_client import RetryingClient
from sso_deployer.execution.errors import CloudCallError
from sso_deployer.provisioning.base import ProvisionOutcome, Provisioner, management_tags
from sso_deployer.store.db import SqliteStore
from sso_deployer.store.models import (
    AwsSettingsRecord,
    DeploymentAction,
    DeploymentRecord,
    PermissionSetRecord,
)
from sso_deployer.utils.blocking import run_blocking

logger = logging.getLogger(__name__)


class PermissionSetConfigurationError(Exception):
    """The AWS settings cannot address an Identity Center instance."""


class ProvisioningFailedError(Exception):
    def __init__(self, message: str, request_id: str | None) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.code = "ProvisioningFailed"


class PermissionSetProvisioner(Provisioner):
    """Create or update a permission set and provision it to the target account.

    Identity Center is administered from the management account, so these
    calls use the operator credentials rather than the cross-account role.
    Provisioning is the last step and only runs after every policy
    attachment succeeded.
    """

    resource_label = "permission set"

    def __init__(
        self,
        store: SqliteStore,
        broker: CredentialBroker,
        *,
        poll_interval: float = 2.0,
        max_polls: int = 30,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        super().__init__(store, broker)
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._sleep = sleep

    async def _apply(
        self, deployment: DeploymentRecord, settings: AwsSettingsRecord
    ) -> ProvisionOutcome:
        permission_set = await run_blocking(
            self._store.require_permission_set, deployment.resource_id
        )
        instance_arn = settings.sso_instance_arn
        if not instance_arn:
            raise PermissionSetConfigurationError("SSO instance ARN is not configured")

        if deployment.action is DeploymentAction.DELETE:
            # TODO: deprovision the account assignment and delete the permission set
            # once the ordering against policy detachment is agreed.
            logger.warning(
                "Permission set DELETE for %s in account %s is recorded only; "
                "no remote deprovisioning was performed",
                permission_set.name,
                deployment.target_account,
            )
            return ProvisionOutcome(
                permission_set.name,
                DeploymentAction.DELETE,
                {"executed": False, "planned": "delete"},
                message=(
                    f"Would delete permission set {permission_set.name} from account "
                    f"{deployment.target_account}; remote deletion is not performed"
                ),
            )

        sso = self._broker.operator_client("sso-admin", settings)

        effective = deployment.action
        permission_set_arn: str | None = None
        if deployment.action is DeploymentAction.UPDATE:
            permission_set_arn = await self._find_permission_set_arn(
                sso, instance_arn, permission_set.name
            )
            if permission_set_arn is None:
                logger.info(
                    "Permission set %s missing; creating it instead of updating",
                    permission_set.name,
                )
                effective = DeploymentAction.CREATE
            else:
                await self._update_permission_set(
                    sso, instance_arn, permission_set_arn, permission_set
                )

        if permission_set_arn is None:
            permission_set_arn = await self._create_permission_set(
                sso, instance_arn, permission_set, deployment.requested_by
            )

        for policy_arn in permission_set.policy_arns:
            await self._attach_managed_policy(
                sso,
                instance_arn,
                permission_set_arn,
                policy_arn,
                tolerate_existing=effective is DeploymentAction.UPDATE,
            )

        if permission_set.inline_policy:
            await sso.call(
                "put_inline_policy_to_permission_set",
                InstanceArn=instance_arn,
                PermissionSetArn=permission_set_arn,
                InlinePolicy=permission_set.inline_policy,
            )

        request_id = await self._provision(
            sso, instance_arn, permission_set_arn, deployment.target_account
        )
        return ProvisionOutcome(
            permission_set.name,
            effective,
            {
                "permission_set_arn": permission_set_arn,
                "policies": list(permission_set.policy_arns),
                "inline_policy": bool(permission_set.inline_policy),
                "provisioning_request_id": request_id,
            },
        )

    async def _create_permission_set(
        self,
        sso: RetryingClient,
        instance_arn: str,
        permission_set: PermissionSetRecord,
        requested_by: str | None,
    ) -> str:
        params: dict[str, object] = {
            "Name": permission_set.name,
            "InstanceArn": instance_arn,
            "SessionDuration": permission_set.session_duration or "PT1H",
            "Tags": management_tags(requested_by),
        }
        if permission_set.description:
            params["Description"] = permission_set.description
        if permission_set.relay_state:
            params["RelayState"] = permission_set.relay_state
        response = await sso.call("create_permission_set", **params)
        arn = (response.get("PermissionSet") or {}).get("PermissionSetArn")
        if not arn:
            raise RuntimeError(f"Failed to create permission set {permission_set.name}")
        return str(arn)

    async def _update_permission_set(
        self,
        sso: RetryingClient,
        instance_arn: str,
        permission_set_arn: str,
        permission_set: PermissionSetRecord,
    ) -> None:
        params: dict[str, object] = {
            "InstanceArn": instance_arn,
            "PermissionSetArn": permission_set_arn,
            "SessionDuration": permission_set.session_duration or "PT1H",
        }
        if permission_set.description:
            params["Description"] = permission_set.description
        if permission_set.relay_state:
            params["RelayState"] = permission_set.relay_state
        await sso.call("update_permission_set", **params)

    async def _find_permission_set_arn(
        self, sso: RetryingClient, instance_arn: str, name: str
    ) -> str | None:
        arns = await sso.collect("list_permission_sets", "PermissionSets", InstanceArn=instance_arn)
        for arn in arns:
            response = await sso.call(
                "describe_permission_set", InstanceArn=instance_arn, PermissionSetArn=arn
            )
            if (response.get("PermissionSet") or {}).get("Name") == name:
                return str(arn)
        return None

    async def _attach_managed_policy(
        self,
        sso: RetryingClient,
        instance_arn: str,
        permission_set_arn: str,
        policy_arn: str,
        *,
        tolerate_existing: bool,
    ) -> None:
        try:
            await sso.call(
                "attach_managed_policy_to_permission_set",
                InstanceArn=instance_arn,
                PermissionSetArn=permission_set_arn,
                ManagedPolicyArn=policy_arn,
            )
        except CloudCallError as exc:
            if not (tolerate_existing and exc.code == "ConflictException"):
                raise
            logger.info("Policy %s already attached to %s", policy_arn, permission_set_arn)

    async def _provision(
        self,
        sso: RetryingClient,
        instance_arn: str,
        permission_set_arn: str,
        account_id: str,
    ) -> str | None:
        response = await sso.call(
            "provision_permission_set",
            InstanceArn=instance_arn,
            PermissionSetArn=permission_set_arn,
            TargetId=account_id,
            TargetType="AWS_ACCOUNT",
        )
        status = response.get("PermissionSetProvisioningStatus") or {}
        request_id = status.get("RequestId")
        if not request_id:
            return None
        for poll in range(self._max_polls + 1):
            if status.get("Status") == "SUCCEEDED":
                return str(request_id)
            if status.get("Status") == "FAILED":
                raise ProvisioningFailedError(
                    f"Provisioning to account {account_id} failed: "
                    f"{status.get('FailureReason') or 'no reason given'}",
                    str(request_id),
                )
            if poll == self._max_polls:
                break
            await self._sleep(self._poll_interval)
            polled = await sso.call(
                "describe_permission_set_provisioning_status",
                InstanceArn=instance_arn,
                ProvisionPermissionSetRequestId=request_id,
            )
            status = polled.get("PermissionSetProvisioningStatus") or {}
        logger.warning(
            "Provisioning request %s still in progress after %d polls", request_id, self._max_polls
        )
        return str(request_id)
