"""The single serialized deployment worker.

One asyncio task owns the pending FIFO and the in-flight slot. A deployment
is driven from IN_PROGRESS to COMPLETED or FAILED before the next one is
dequeued, with a fixed cooldown between jobs. Throttling retries happen
inside the provisioners, never by re-enqueueing.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

from sso_deployer.execution.errors import error_details
from sso_deployer.store.db import (
    DeploymentNotFoundError,
    InvalidStatusTransition,
    SqliteStore,
)
from sso_deployer.store.models import (
    AwsSettingsRecord,
    DeploymentRecord,
    DeploymentStatus,
    LogLevel,
    ResourceType,
)
from sso_deployer.utils.blocking import run_blocking

logger = logging.getLogger(__name__)

_DURATION_WINDOW = 50


class DeploymentProvisioner(Protocol):
    async def provision(
        self, deployment: DeploymentRecord, settings: AwsSettingsRecord
    ) -> None: ...


class StatusNotifier(Protocol):
    async def publish_status(self, deployment_id: str, status: DeploymentStatus) -> bool: ...


class UnsupportedResourceTypeError(Exception):
    def __init__(self, resource_type: ResourceType) -> None:
        super().__init__(f"No provisioner registered for {resource_type.value}")
        self.resource_type = resource_type


@dataclass(frozen=True)
class QueueStatus:
    queued: int
    in_progress: str | None
    processed: int
    failed: int
    average_duration_seconds: float
    estimated_seconds_to_drain: float

    def to_dict(self) -> dict[str, object]:
        return {
            "queuedDeployments": self.queued,
            "inProgressDeployment": self.in_progress,
            "processedDeployments": self.processed,
            "failedDeployments": self.failed,
            "avgDeploymentTime": round(self.average_duration_seconds, 3),
            "estimatedTimeToCompletion": round(self.estimated_seconds_to_drain, 3),
        }


class DeploymentQueue:
    def __init__(
        self,
        store: SqliteStore,
        provisioners: Mapping[ResourceType, DeploymentProvisioner],
        notifier: StatusNotifier,
        *,
        cooldown_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._provisioners = dict(provisioners)
        self._notifier = notifier
        self._cooldown_seconds = cooldown_seconds
        self._sleep = sleep
        self._pending: asyncio.Queue[str] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._current: str | None = None
        self._busy = False
        self._stopping = False
        self._processed = 0
        self._failed = 0
        self._durations: deque[float] = deque(maxlen=_DURATION_WINDOW)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker task on the running event loop if it is not already running."""
        if self.running:
            return
        self._stopping = False
        self._worker = asyncio.get_running_loop().create_task(
            self._run(), name="deployment-queue"
        )

    async def stop(self) -> None:
        """Stop taking new work.

        An idle worker is cancelled. A deployment already dequeued runs to its
        terminal status first; deployments still waiting stay PENDING.
        """
        worker = self._worker
        if worker is None or worker.done():
            self._worker = None
            return
        self._stopping = True
        if self._busy:
            logger.info("Waiting for deployment %s to finish before stopping", self._current)
        else:
            worker.cancel()
        try:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        finally:
            self._worker = None

    def enqueue(self, deployment_id: str) -> None:
        """Append ``deployment_id`` to the queue and make sure the worker is running.

        IDs are not deduplicated; enqueueing the same ID twice processes it twice.
        """
        self._pending.put_nowait(deployment_id)
        logger.info(
            "Deployment %s added to queue. Queue length: %d",
            deployment_id,
            self._pending.qsize(),
        )
        self.start()

    async def join(self) -> None:
        """Wait until every enqueued deployment has been processed."""
        await self._pending.join()

    def snapshot(self) -> QueueStatus:
        average = sum(self._durations) / len(self._durations) if self._durations else 0.0
        queued = self._pending.qsize()
        outstanding = queued + (1 if self._current else 0)
        return QueueStatus(
            queued=queued,
            in_progress=self._current,
            processed=self._processed,
            failed=self._failed,
            average_duration_seconds=average,
            estimated_seconds_to_drain=outstanding * (average + self._cooldown_seconds),
        )

    async def _run(self) -> None:
        while not self._stopping:
            deployment_id = await self._pending.get()
            self._busy = True
            try:
                try:
                    await self._process(deployment_id)
                except Exception:
                    # Bookkeeping itself failed (e.g. the store went away); keep draining.
                    logger.exception(
                        "Unhandled error while processing deployment %s", deployment_id
                    )
                finally:
                    self._busy = False
                    self._current = None
                if not self._stopping:
                    await self._sleep(self._cooldown_seconds)
            finally:
                self._pending.task_done()

    async def _process(self, deployment_id: str) -> None:
        logger.info(
            "Processing deployment %s. Remaining queue: %d",
            deployment_id,
            self._pending.qsize(),
        )
        try:
            await run_blocking(
                self._store.transition_status, deployment_id, DeploymentStatus.IN_PROGRESS
            )
        except DeploymentNotFoundError:
            logger.error("Deployment %s not found; dropping it from the queue", deployment_id)
            return
        except InvalidStatusTransition as exc:
            logger.error("Skipping deployment %s: %s", deployment_id, exc)
            await run_blocking(
                self._store.append_log,
                deployment_id,
                LogLevel.ERROR,
                f"Deployment was dequeued again while {exc.current.value}; not re-run",
                {"status": exc.current.value},
            )
            return

        self._current = deployment_id
        started = time.monotonic()
        await self._notifier.publish_status(deployment_id, DeploymentStatus.IN_PROGRESS)

        try:
            deployment = await run_blocking(self._store.require_deployment, deployment_id)
            settings = await run_blocking(self._store.require_aws_settings)
            provisioner = self._provisioners.get(deployment.resource_type)
            if provisioner is None:
                raise UnsupportedResourceTypeError(deployment.resource_type)
            await provisioner.provision(deployment, settings)
            await run_blocking(
                self._store.transition_status, deployment_id, DeploymentStatus.COMPLETED
            )
            outcome = DeploymentStatus.COMPLETED
            logger.info("Deployment %s completed successfully", deployment_id)
        except Exception as exc:
            logger.error("Error processing deployment %s: %s", deployment_id, exc)
            await run_blocking(
                self._store.append_log,
                deployment_id,
                LogLevel.ERROR,
                f"Deployment failed: {str(exc) or type(exc).__name__}",
                error_details(exc),
            )
            await run_blocking(
                self._store.transition_status, deployment_id, DeploymentStatus.FAILED
            )
            outcome = DeploymentStatus.FAILED
            self._failed += 1

        self._processed += 1
        self._durations.append(time.monotonic() - started)
        await self._notifier.publish_status(deployment_id, outcome)
