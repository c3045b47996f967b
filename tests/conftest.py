from __future__ import annotations

import asyncio
import contextlib
import os
import random

import pytest
from aws_fakes import SSO_INSTANCE_ARN, FakeAWSClient, FakeClientFactory, assume_role_response

from sso_deployer.aws_credentials.sts_provider import CredentialBroker
from sso_deployer.config import ExecutionSettings
from sso_deployer.execution.retry import RetryExecutor
from sso_deployer.store.db import SqliteStore
from sso_deployer.store.models import AwsSettingsRecord, PermissionSetRecord, RoleRecord

TRUST_POLICY = (
    '{"Version":"2012-10-17","Statement":[{"Effect":"Allow",'
    '"Principal":{"Service":"ec2.amazonaws.com"},"Action":"sts:AssumeRole"}]}'
)


def pytest_sessionstart(session: pytest.Session) -> None:
    # Keep unit runs from ever reaching a real SNS topic.
    os.environ.pop("DEPLOYMENT_TOPIC_ARN", None)


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


@pytest.fixture
def store(tmp_path):
    sqlite_store = SqliteStore(str(tmp_path / "deployments.sqlite"))
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def aws_settings() -> AwsSettingsRecord:
    return AwsSettingsRecord(
        region="us-east-1",
        access_key_id="AKIAOPERATOR00000001",
        secret_access_key="operator-secret",
        cross_account_role_name="OrganizationAccountAccessRole",
        sso_instance_arn=SSO_INSTANCE_ARN,
    )


@pytest.fixture
def role_record() -> RoleRecord:
    return RoleRecord(
        role_id="role-1",
        name="AppReadOnly",
        trust_policy=TRUST_POLICY,
        description="Read only access for the app",
        max_session_duration=3600,
        policy_arns=[
            "arn:aws:iam::aws:policy/ReadOnlyAccess",
            "arn:aws:iam::aws:policy/AmazonS3ReadOnlyAccess",
        ],
    )


@pytest.fixture
def permission_set_record() -> PermissionSetRecord:
    return PermissionSetRecord(
        permission_set_id="ps-1",
        name="DataAnalyst",
        description="Analyst access",
        session_duration="PT4H",
        policy_arns=["arn:aws:iam::aws:policy/job-function/DataScientist"],
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def executor(fake_sleep) -> RetryExecutor:
    return RetryExecutor(
        max_retries=5,
        initial_delay=1.0,
        max_delay=30.0,
        sleep=fake_sleep,
        rng=random.Random(7),
    )


@pytest.fixture
def client_factory() -> FakeClientFactory:
    factory = FakeClientFactory()
    factory.register(FakeAWSClient("sts", {"assume_role": assume_role_response}))
    return factory


@pytest.fixture
def broker(executor, client_factory) -> CredentialBroker:
    return CredentialBroker(
        executor,
        ExecutionSettings(call_timeout_seconds=5.0),
        client_factory=client_factory,
    )
