"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass

from sso_deployer.aws_credentials.organizations import OrganizationsDirectory
from sso_deployer.aws_credentials.sts_provider import CredentialBroker
from sso_deployer.config import Settings, load_settings
from sso_deployer.deploy.queue import DeploymentQueue
from sso_deployer.execution.retry import RetryExecutor
from sso_deployer.notify.sns import SnsNotifier
from sso_deployer.provisioning.permission_set import PermissionSetProvisioner
from sso_deployer.provisioning.role import RoleProvisioner
from sso_deployer.store.db import SqliteStore
from sso_deployer.store.models import ResourceType


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built once by the process entrypoint, which owns its lifetime: the queue
    worker is started and stopped with the HTTP server, and the store is
    closed on shutdown.
    """

    settings: Settings
    store: SqliteStore
    executor: RetryExecutor
    broker: CredentialBroker
    notifier: SnsNotifier
    queue: DeploymentQueue
    organizations: OrganizationsDirectory

    async def aclose(self) -> None:
        await self.queue.stop()
        self.store.close()


def build_app_context(
    settings: Settings | None = None,
    *,
    store: SqliteStore | None = None,
    broker: CredentialBroker | None = None,
    notifier: SnsNotifier | None = None,
) -> AppContext:
    """Wire the orchestrator. Collaborators may be passed in to replace the defaults."""
    settings = settings or load_settings()
    store = store or SqliteStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    executor = RetryExecutor.from_settings(settings.execution)
    broker = broker or CredentialBroker(executor, settings.execution)
    notifier = notifier or SnsNotifier.from_settings(
        store, settings.notification, settings.execution
    )
    queue = DeploymentQueue(
        store,
        {
            ResourceType.ROLE: RoleProvisioner(store, broker),
            ResourceType.PERMISSION_SET: PermissionSetProvisioner(store, broker),
        },
        notifier,
        cooldown_seconds=settings.queue.cooldown_seconds,
    )
    return AppContext(
        settings=settings,
        store=store,
        executor=executor,
        broker=broker,
        notifier=notifier,
        queue=queue,
        organizations=OrganizationsDirectory(broker),
    )
