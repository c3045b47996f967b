from __future__ import annotations

import pytest
from aws_fakes import FakeAWSClient, client_error

from sso_deployer.aws_credentials.organizations import OrganizationsDirectory
from sso_deployer.execution.errors import CloudCallError

PARENTS = {
    "111111111111": {"Id": "ou-team", "Type": "ORGANIZATIONAL_UNIT"},
    "ou-team": {"Id": "ou-workloads", "Type": "ORGANIZATIONAL_UNIT"},
    "ou-workloads": {"Id": "r-root", "Type": "ROOT"},
    "222222222222": {"Id": "r-root", "Type": "ROOT"},
}
OU_NAMES = {"ou-team": "Payments", "ou-workloads": "Workloads"}


def _list_parents(**kwargs):
    return {"Parents": [PARENTS[kwargs["ChildId"]]]}


def _describe_ou(**kwargs):
    ou_id = kwargs["OrganizationalUnitId"]
    return {"OrganizationalUnit": {"Id": ou_id, "Name": OU_NAMES[ou_id]}}


@pytest.fixture
def organizations(client_factory) -> FakeAWSClient:
    return client_factory.register(
        FakeAWSClient(
            "organizations",
            {
                "list_accounts": [
                    {
                        "Accounts": [
                            {"Id": "111111111111", "Name": "Payments Prod", "Status": "ACTIVE"},
                            {"Id": "333333333333", "Name": "Old", "Status": "SUSPENDED"},
                        ],
                        "NextToken": "page-2",
                    },
                    {
                        "Accounts": [
                            {"Id": "222222222222", "Name": "Sandbox", "Email": "s@example.com"},
                            {"Id": "12345", "Name": "Broken", "Status": "ACTIVE"},
                        ]
                    },
                ],
                "list_parents": _list_parents,
                "describe_organizational_unit": _describe_ou,
            },
        )
    )


@pytest.fixture
def directory(broker) -> OrganizationsDirectory:
    return OrganizationsDirectory(broker)


@pytest.mark.asyncio
async def test_build_ou_path_walks_to_root(directory, organizations, aws_settings) -> None:
    assert await directory.build_ou_path(aws_settings, "111111111111") == "/Workloads/Payments"
    assert await directory.build_ou_path(aws_settings, "222222222222") == "/"


@pytest.mark.asyncio
async def test_build_ou_path_for_unknown_child(directory, organizations, aws_settings) -> None:
    organizations.handlers["list_parents"] = client_error("ChildNotFoundException", "no child")

    assert await directory.build_ou_path(aws_settings, "444444444444") == "/"


@pytest.mark.asyncio
async def test_build_ou_path_propagates_other_errors(
    directory, organizations, aws_settings
) -> None:
    organizations.handlers["list_parents"] = client_error("AccessDeniedException", "denied")

    with pytest.raises(CloudCallError):
        await directory.build_ou_path(aws_settings, "111111111111")


@pytest.mark.asyncio
async def test_sync_accounts_upserts_active_accounts(
    directory, organizations, store, aws_settings
) -> None:
    synced = await directory.sync_accounts(store, aws_settings)

    assert synced == 2
    payments = store.get_account("111111111111")
    assert payments.name == "Payments Prod"
    assert payments.ou_path == "/Workloads/Payments"
    assert store.get_account("222222222222").email == "s@example.com"
    assert store.get_account("333333333333") is None
    assert organizations.called("list_accounts") == [{}, {"NextToken": "page-2"}]
