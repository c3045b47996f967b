"""AWS Organizations account discovery.

Used to keep the local account directory in sync with the organization so
deployment notifications can carry account names and OU paths.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sso_deployer.aws_credentials.sts_provider import CredentialBroker
from sso_deployer.execution.aws_client import RetryingClient
from sso_deployer.execution.errors import CloudCallError
from sso_deployer.store.db import SqliteStore
from sso_deployer.store.models import AccountRecord, AwsSettingsRecord
from sso_deployer.utils.blocking import run_blocking

logger = logging.getLogger(__name__)

_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
_MAX_OU_DEPTH = 5  # Organizations nests OUs at most five levels below the root.


@dataclass(frozen=True)
class OrganizationAccount:
    account_id: str
    name: str | None
    email: str | None
    status: str | None


class OrganizationsDirectory:
    def __init__(self, broker: CredentialBroker) -> None:
        self._broker = broker

    def _client(self, settings: AwsSettingsRecord) -> RetryingClient:
        return self._broker.operator_client("organizations", settings)

    async def list_accounts(self, settings: AwsSettingsRecord) -> list[OrganizationAccount]:
        client = self._client(settings)
        accounts = await client.collect("list_accounts", "Accounts")
        return [
            OrganizationAccount(
                account_id=str(item["Id"]),
                name=item.get("Name"),
                email=item.get("Email"),
                status=item.get("Status"),
            )
            for item in accounts
        ]

    async def build_ou_path(self, settings: AwsSettingsRecord, account_id: str) -> str:
        """Return ``/Parent/Child`` for the OUs above ``account_id``; ``/`` under the root."""
        client = self._client(settings)
        segments: list[str] = []
        child_id = account_id
        for _ in range(_MAX_OU_DEPTH + 1):
            parent = await self._get_parent(client, child_id)
            if parent is None or parent.get("Type") != "ORGANIZATIONAL_UNIT":
                break
            response = await client.call(
                "describe_organizational_unit", OrganizationalUnitId=parent["Id"]
            )
            name = (response.get("OrganizationalUnit") or {}).get("Name")
            if name:
                segments.insert(0, str(name))
            child_id = str(parent["Id"])
        return "/" + "/".join(segments) if segments else "/"

    async def _get_parent(
        self, client: RetryingClient, child_id: str
    ) -> dict[str, object] | None:
        try:
            response = await client.call("list_parents", ChildId=child_id)
        except CloudCallError as exc:
            if exc.code == "ChildNotFoundException":
                return None
            raise
        parents = response.get("Parents") or []
        return parents[0] if parents else None

    async def sync_accounts(self, store: SqliteStore, settings: AwsSettingsRecord) -> int:
        """Upsert every active organization account into ``store``. Returns the count."""
        synced = 0
        for account in await self.list_accounts(settings):
            if account.status not in (None, "ACTIVE"):
                continue
            if not _ACCOUNT_ID_RE.match(account.account_id):
                logger.warning("Skipping account with malformed id %r", account.account_id)
                continue
            ou_path = await self.build_ou_path(settings, account.account_id)
            await run_blocking(
                store.upsert_account,
                AccountRecord(
                    account_id=account.account_id,
                    name=account.name,
                    email=account.email,
                    ou_path=ou_path,
                ),
            )
            synced += 1
        logger.info("Synced %d organization accounts", synced)
        return synced
