"""Cross-account credential broker built on STS AssumeRole.

Each deployment gets its own short-lived credentials for the target account.
They are handed to exactly one scoped client and never cached, so a
deployment can only ever act with the permissions of the cross-account role.
There is no fallback to the operator credentials when assumption fails.

The RoleSessionName embeds the deployment id so CloudTrail entries in the
target account can be traced back to the deployment record.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sso_deployer.config import ExecutionSettings
from sso_deployer.execution.aws_client import RetryingClient, create_client
from sso_deployer.execution.errors import CloudCallError
from sso_deployer.execution.retry import RetryExecutor
from sso_deployer.store.models import AwsSettingsRecord

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]


@dataclass(frozen=True)
class TemporaryCredentials:
    """Immutable temporary AWS credentials from STS."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime | None
    assumed_role_arn: str
    account_id: str

    def __repr__(self) -> str:
        expiration = self.expiration.isoformat() if self.expiration else None
        return (
            f"TemporaryCredentials(access_key_id={self.access_key_id[:8]}***, "
            f"account_id={self.account_id}, expiration={expiration})"
        )


class STSCredentialError(Exception):
    """Raised when STS credential acquisition fails."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


_CODE_MAP = {
    "AccessDenied": "access_denied",
    "AccessDeniedException": "access_denied",
    "InvalidClientTokenId": "invalid_operator_credentials",
    "SignatureDoesNotMatch": "invalid_operator_credentials",
    "ExpiredToken": "token_expired",
    "RegionDisabledException": "region_disabled",
    "MalformedPolicyDocument": "policy_error",
}


def cross_account_role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


class CredentialBroker:
    """Builds operator and account-scoped clients for deployments."""

    def __init__(
        self,
        executor: RetryExecutor,
        execution: ExecutionSettings | None = None,
        *,
        client_factory: ClientFactory = create_client,
    ) -> None:
        self._executor = executor
        self._execution = execution or ExecutionSettings()
        self._client_factory = client_factory

    def _wrap(self, client: Any) -> RetryingClient:
        return RetryingClient(
            client, self._executor, timeout=self._execution.call_timeout_seconds
        )

    def operator_client(self, service: str, settings: AwsSettingsRecord) -> RetryingClient:
        """Client acting with the central operator credentials."""
        client = self._client_factory(
            service,
            region=settings.region,
            access_key_id=settings.access_key_id,
            secret_access_key=settings.secret_access_key,
            sdk_timeout_seconds=self._execution.sdk_timeout_seconds,
        )
        return self._wrap(client)

    def scoped_client(
        self,
        service: str,
        credentials: TemporaryCredentials,
        region: str,
    ) -> RetryingClient:
        """Fresh client bound to one deployment's temporary credentials."""
        client = self._client_factory(
            service,
            region=region,
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            session_token=credentials.session_token,
            sdk_timeout_seconds=self._execution.sdk_timeout_seconds,
        )
        return self._wrap(client)

    async def assume_for_deployment(
        self,
        settings: AwsSettingsRecord,
        account_id: str,
        deployment_id: str,
    ) -> TemporaryCredentials:
        """Assume the cross-account role in ``account_id``.

        Raises:
            STSCredentialError: if the role cannot be assumed, including after
                throttling retries are exhausted.
        """
        role_arn = cross_account_role_arn(account_id, settings.cross_account_role_name)
        session_name = self._sanitize_session_name(f"RoleDeployment-{deployment_id}")
        sts = self.operator_client("sts", settings)

        try:
            response = await sts.call(
                "assume_role",
                RoleArn=role_arn,
                RoleSessionName=session_name,
            )
        except CloudCallError as exc:
            logger.warning(
                "STS failed: role=%s, session=%s, error=%s: %s",
                role_arn,
                session_name,
                exc.code,
                exc.message,
            )
            raise STSCredentialError(
                f"Failed to assume {role_arn}: {exc.message}",
                code=_CODE_MAP.get(exc.code, "sts_error"),
            ) from exc

        creds = response.get("Credentials")
        if not isinstance(creds, dict):
            raise STSCredentialError(
                f"Failed to assume role in account {account_id}: no credentials returned",
                code="missing_credentials",
            )
        assumed = response.get("AssumedRoleUser") or {}

        logger.info("Assumed role: %s, session=%s", role_arn, session_name)

        return TemporaryCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=creds.get("Expiration"),
            assumed_role_arn=str(assumed.get("Arn", role_arn)),
            account_id=account_id,
        )

    def _sanitize_session_name(self, name: str) -> str:
        """Sanitize for STS (2-64 chars, alphanumeric and =,.@-)."""
        safe = re.sub(r"[^a-zA-Z0-9=,.@-]", "-", name)
        safe = re.sub(r"-+", "-", safe).strip("-")
        if len(safe) > 64:
            suffix = hashlib.sha256(name.encode()).hexdigest()[:8]
            safe = safe[:55] + "-" + suffix
        return safe if len(safe) >= 2 else "deploy-" + safe
