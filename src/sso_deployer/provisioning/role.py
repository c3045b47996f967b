"""IAM role provisioning inside a target account."""

from __future__ import annotations

import logging

from sso_deployer.execution.aws_client import RetryingClient
from sso_deployer.execution.errors import CloudCallError
from sso_deployer.provisioning.base import ProvisionOutcome, Provisioner, management_tags
from sso_deployer.store.models import (
    AwsSettingsRecord,
    DeploymentAction,
    DeploymentRecord,
    RoleRecord,
)
from sso_deployer.utils.blocking import run_blocking

logger = logging.getLogger(__name__)

NO_SUCH_ENTITY = "NoSuchEntity"
ENTITY_ALREADY_EXISTS = "EntityAlreadyExists"


def _is_code(exc: CloudCallError, code: str) -> bool:
    return exc.code == code or exc.code == f"{code}Exception"


class RoleProvisioner(Provisioner):
    """CREATE, UPDATE and DELETE an IAM role through the cross-account role.

    UPDATE of a role that does not exist in the account falls back to CREATE.
    DELETE of a role that does not exist is a successful no-op.
    """

    resource_label = "role"

    async def _apply(
        self, deployment: DeploymentRecord, settings: AwsSettingsRecord
    ) -> ProvisionOutcome:
        role = await run_blocking(self._store.require_role, deployment.resource_id)
        credentials = await self._broker.assume_for_deployment(
            settings, deployment.target_account, deployment.deployment_id
        )
        iam = self._broker.scoped_client("iam", credentials, settings.region)

        action = deployment.action
        if action is DeploymentAction.DELETE:
            existed, detached = await self._delete_role(iam, role)
            return ProvisionOutcome(
                role.name,
                action,
                {"existed": existed, "detached_policies": detached},
            )

        effective = action
        if action is DeploymentAction.UPDATE:
            if await self._role_exists(iam, role.name):
                await self._update_role(iam, role)
            else:
                logger.info(
                    "Role %s missing in account %s; creating it instead of updating",
                    role.name,
                    deployment.target_account,
                )
                effective = DeploymentAction.CREATE

        created = False
        if effective is DeploymentAction.CREATE:
            created = await self._create_role(iam, role, deployment.requested_by)

        for policy_arn in role.policy_arns:
            await iam.call("attach_role_policy", RoleName=role.name, PolicyArn=policy_arn)

        return ProvisionOutcome(
            role.name,
            effective,
            {"policies": list(role.policy_arns), "created": created},
        )

    async def _role_exists(self, iam: RetryingClient, role_name: str) -> bool:
        try:
            await iam.call("get_role", RoleName=role_name)
        except CloudCallError as exc:
            if _is_code(exc, NO_SUCH_ENTITY):
                return False
            raise
        return True

    async def _create_role(
        self, iam: RetryingClient, role: RoleRecord, requested_by: str | None
    ) -> bool:
        params: dict[str, object] = {
            "RoleName": role.name,
            "AssumeRolePolicyDocument": role.trust_policy,
            "MaxSessionDuration": role.max_session_duration or 3600,
            "Tags": management_tags(requested_by),
        }
        if role.description:
            params["Description"] = role.description
        try:
            await iam.call("create_role", **params)
        except CloudCallError as exc:
            if not _is_code(exc, ENTITY_ALREADY_EXISTS):
                raise
            logger.info("Role %s already exists; attaching policies only", role.name)
            return False
        return True

    async def _update_role(self, iam: RetryingClient, role: RoleRecord) -> None:
        await iam.call(
            "update_assume_role_policy",
            RoleName=role.name,
            PolicyDocument=role.trust_policy,
        )
        params: dict[str, object] = {
            "RoleName": role.name,
            "MaxSessionDuration": role.max_session_duration or 3600,
        }
        if role.description:
            params["Description"] = role.description
        await iam.call("update_role", **params)

    async def _delete_role(self, iam: RetryingClient, role: RoleRecord) -> tuple[bool, list[str]]:
        detached: list[str] = []
        try:
            attached = await iam.collect(
                "list_attached_role_policies",
                "AttachedPolicies",
                token_key="Marker",
                RoleName=role.name,
            )
        except CloudCallError as exc:
            if not _is_code(exc, NO_SUCH_ENTITY):
                raise
            logger.info("Role %s does not exist; nothing to delete", role.name)
            return False, detached

        for policy in attached:
            policy_arn = str(policy["PolicyArn"])
            try:
                await iam.call("detach_role_policy", RoleName=role.name, PolicyArn=policy_arn)
            except CloudCallError as exc:
                if not _is_code(exc, NO_SUCH_ENTITY):
                    raise
                logger.info("Policy %s already detached from role %s", policy_arn, role.name)
                continue
            detached.append(policy_arn)

        try:
            await iam.call("delete_role", RoleName=role.name)
        except CloudCallError as exc:
            if not _is_code(exc, NO_SUCH_ENTITY):
                raise
            logger.info("Role %s was removed before it could be deleted", role.name)
            return False, detached
        return True, detached
