import pytest

from sso_deployer.store.db import (
    AwsSettingsNotConfiguredError,
    DeploymentNotFoundError,
    InvalidStatusTransition,
    ResourceNotFoundError,
    SqliteStore,
)
from sso_deployer.store.models import (
    AccountRecord,
    DeploymentAction,
    DeploymentStatus,
    LogLevel,
    ResourceType,
)


def _deployment(store, action=DeploymentAction.CREATE):
    return store.create_deployment(
        "111111111111", ResourceType.ROLE, "role-1", action, "alice@example.com"
    )


def test_create_deployment_starts_pending(store):
    record = _deployment(store)

    assert record.status is DeploymentStatus.PENDING
    assert record.started_at is None
    assert record.completed_at is None

    loaded = store.require_deployment(record.deployment_id)
    assert loaded == record


def test_deployment_ids_are_unique(store):
    ids = {_deployment(store).deployment_id for _ in range(20)}
    assert len(ids) == 20


def test_status_moves_forward_and_stamps_times(store):
    record = _deployment(store)

    started = store.transition_status(record.deployment_id, DeploymentStatus.IN_PROGRESS, "t1")
    assert started.status is DeploymentStatus.IN_PROGRESS
    assert started.started_at == "t1"

    done = store.transition_status(record.deployment_id, DeploymentStatus.COMPLETED, "t2")
    assert done.status is DeploymentStatus.COMPLETED
    assert done.started_at == "t1"
    assert done.completed_at == "t2"


@pytest.mark.parametrize(
    "path",
    [
        [DeploymentStatus.COMPLETED],
        [DeploymentStatus.FAILED],
        [DeploymentStatus.IN_PROGRESS, DeploymentStatus.IN_PROGRESS],
        [DeploymentStatus.IN_PROGRESS, DeploymentStatus.FAILED, DeploymentStatus.COMPLETED],
        [DeploymentStatus.IN_PROGRESS, DeploymentStatus.COMPLETED, DeploymentStatus.IN_PROGRESS],
        [DeploymentStatus.PENDING],
    ],
)
def test_status_never_moves_backwards_or_skips(store, path):
    record = _deployment(store)
    *allowed, rejected = path
    for status in allowed:
        store.transition_status(record.deployment_id, status)
    before = store.require_deployment(record.deployment_id)

    with pytest.raises(InvalidStatusTransition) as excinfo:
        store.transition_status(record.deployment_id, rejected)

    assert excinfo.value.current is before.status
    assert store.require_deployment(record.deployment_id) == before


def test_transition_unknown_deployment(store):
    with pytest.raises(DeploymentNotFoundError):
        store.transition_status("missing", DeploymentStatus.IN_PROGRESS)


def test_logs_are_append_only_and_ordered(store):
    record = _deployment(store)
    store.append_log(record.deployment_id, LogLevel.INFO, "first", {"n": 1})
    store.append_log(record.deployment_id, LogLevel.ERROR, "second", {"stack": "x" * 20000})
    store.append_log(record.deployment_id, LogLevel.INFO, "third")

    logs = store.list_logs(record.deployment_id)

    assert [log.message for log in logs] == ["first", "second", "third"]
    assert [log.level for log in logs] == [LogLevel.INFO, LogLevel.ERROR, LogLevel.INFO]
    assert logs[0].details == {"n": 1}
    assert len(logs[1].details["stack"]) == 16000
    assert logs[2].details == {}
    assert logs[0].log_id < logs[1].log_id < logs[2].log_id


def test_list_deployments_filters_by_status(store):
    first = _deployment(store)
    _deployment(store)
    store.transition_status(first.deployment_id, DeploymentStatus.IN_PROGRESS)

    in_progress = store.list_deployments(DeploymentStatus.IN_PROGRESS)
    pending = store.list_deployments(DeploymentStatus.PENDING)

    assert [d.deployment_id for d in in_progress] == [first.deployment_id]
    assert len(pending) == 1
    assert len(store.list_deployments()) == 2


def test_role_round_trip_keeps_policy_order(store, role_record):
    store.save_role(role_record)
    assert store.require_role("role-1") == role_record

    role_record.policy_arns = list(reversed(role_record.policy_arns))
    role_record.description = None
    store.save_role(role_record)
    assert store.require_role("role-1") == role_record


def test_permission_set_round_trip(store, permission_set_record):
    permission_set_record.inline_policy = '{"Version":"2012-10-17","Statement":[]}'
    store.save_permission_set(permission_set_record)

    assert store.require_permission_set("ps-1") == permission_set_record


def test_missing_definitions_raise(store):
    with pytest.raises(ResourceNotFoundError, match="Role role-9 not found"):
        store.require_role("role-9")
    with pytest.raises(ResourceNotFoundError, match="Permission Set ps-9 not found"):
        store.require_permission_set("ps-9")
    assert store.get_role("role-9") is None


def test_aws_settings_single_row(store, aws_settings):
    with pytest.raises(AwsSettingsNotConfiguredError, match="AWS settings not configured"):
        store.require_aws_settings()

    store.save_aws_settings(aws_settings)
    store.save_aws_settings(aws_settings)

    assert store.require_aws_settings() == aws_settings
    row = store.fetch_one("SELECT COUNT(*) AS n FROM aws_settings", ())
    assert row["n"] == 1


def test_aws_settings_repr_hides_secret(aws_settings):
    text = repr(aws_settings)
    assert "operator-secret" not in text
    assert "AKIA***" in text


def test_upsert_account(store):
    store.upsert_account(AccountRecord("111111111111", "Prod", "prod@example.com", "/Workloads"))
    store.upsert_account(AccountRecord("111111111111", "Production", "prod@example.com"))

    account = store.get_account("111111111111")
    assert account == AccountRecord("111111111111", "Production", "prod@example.com", "/")
    assert store.get_account("222222222222") is None


def test_store_reopens_existing_file(tmp_path):
    path = str(tmp_path / "nested" / "deployments.sqlite")
    first = SqliteStore(path)
    record = _deployment(first)
    first.close()
    first.close()

    second = SqliteStore(path, wal=False)
    try:
        assert second.require_deployment(record.deployment_id).deployment_id == record.deployment_id
    finally:
        second.close()


def test_memory_store():
    store = SqliteStore(":memory:")
    try:
        record = _deployment(store, DeploymentAction.DELETE)
        assert store.require_deployment(record.deployment_id).action is DeploymentAction.DELETE
    finally:
        store.close()
