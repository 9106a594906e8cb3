"""Worker pod supervision on Kubernetes.

Creates and deletes per-guild worker pods and runs the reconciliation loop
that reaps pods observed in the Failed phase. A failed worker is never
restarted; a new start command is required.

The reconciler is list-then-watch: every (re)connect lists all pods in the
namespace, deletes the Failed ones, then watches from the list's resource
version. Any gap between watches may have hidden transitions, which the
next list re-evaluates.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import aiohttp
from kubernetes_asyncio import watch
from kubernetes_asyncio.client.rest import ApiException

from groover.errors import TemplateError, WorkerAlreadyExistsError, WorkerSubmissionError
from groover.template import WorkerTemplate

logger = logging.getLogger(__name__)

FAILED_PHASE = "Failed"
RECONCILED_EVENT_TYPES = frozenset({"ADDED", "MODIFIED"})


class WorkerSupervisor:
    """Worker pod lifecycle and failure reconciliation.

    Attributes:
        core_api: kubernetes_asyncio CoreV1Api
        template: Worker pod specification template
        namespace: Namespace holding worker pods
    """

    def __init__(
        self,
        core_api: Any,
        template: WorkerTemplate,
        namespace: str = "groover",
        watch_timeout_seconds: int = 300,
        reconnect_backoff_s: float = 2.0,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        """Initialize supervisor.

        Args:
            core_api: kubernetes_asyncio CoreV1Api instance
            template: Worker pod specification template
            namespace: Namespace for worker pods
            watch_timeout_seconds: Server-side watch timeout before re-listing
            reconnect_backoff_s: Delay before re-listing after a watch error
            watch_factory: Factory for watch objects (kubernetes_asyncio.watch.Watch)
        """
        self.core_api = core_api
        self.template = template
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.reconnect_backoff_s = reconnect_backoff_s
        self._watch_factory = watch_factory

    def worker_name(self, guild_id: str) -> str:
        return self.template.worker_name(guild_id)

    async def start(self, guild_id: str, user_id: str, token: str) -> str:
        """Render the worker specification and submit it.

        Args:
            guild_id: Guild the worker serves
            user_id: User the worker streams for
            token: Streaming session token

        Returns:
            Name of the submitted pod

        Raises:
            WorkerAlreadyExistsError: If a pod with the derived name exists
            WorkerSubmissionError: If rendering or submission fails
        """
        name = self.worker_name(guild_id)
        try:
            manifest = self.template.render(guild_id, user_id, token, name)
        except TemplateError as e:
            raise WorkerSubmissionError(f"Cannot render worker {name}: {e}") from e

        try:
            await self.core_api.create_namespaced_pod(namespace=self.namespace, body=manifest)
        except ApiException as e:
            if e.status == 409:
                raise WorkerAlreadyExistsError(f"Worker {name} already exists") from e
            raise WorkerSubmissionError(f"Creating worker {name} failed: {e.status} {e.reason}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise WorkerSubmissionError(f"Scheduler unreachable creating {name}: {e!r}") from e

        logger.info(
            f"Submitted worker {name}",
            extra={"guild_id": guild_id, "user_id": user_id, "namespace": self.namespace},
        )
        return name

    async def stop(self, guild_id: str) -> None:
        """Best-effort delete of the guild's worker. Absence is not an error.

        Raises:
            ApiException: If the scheduler rejects the delete for another reason
        """
        await self.delete_worker(self.worker_name(guild_id))

    async def delete_worker(self, name: str) -> bool:
        """Delete a worker pod by name.

        Returns:
            True if a delete was issued, False if the pod was already gone

        Raises:
            ApiException: For any scheduler error other than 404
        """
        try:
            await self.core_api.delete_namespaced_pod(name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Worker {name} already removed")
                return False
            raise
        logger.info(f"Deleted worker {name}")
        return True

    async def handle_event(self, event_type: str, pod: Any) -> bool:
        """Reap a pod if an add/update event shows it Failed.

        Reconciliation faults are logged, not raised; the pod is retried on
        its next observed event or the next re-list.

        Returns:
            True if a delete was issued
        """
        if event_type not in RECONCILED_EVENT_TYPES:
            return False
        if pod.status is None or pod.status.phase != FAILED_PHASE:
            return False
        if pod.metadata.deletion_timestamp is not None:
            # already terminating; a second delete would be redundant
            return False

        name = pod.metadata.name
        logger.warning(f"Worker {name} failed, removing", extra={"event": event_type})
        try:
            return await self.delete_worker(name)
        except ApiException as e:
            logger.error(f"Failed to delete failed worker {name}: {e.status} {e.reason}")
            return False

    async def reconcile_once(self) -> str | None:
        """List all workers and delete the Failed ones.

        Returns:
            Resource version to resume watching from
        """
        pods = await self.core_api.list_namespaced_pod(namespace=self.namespace)
        for pod in pods.items:
            await self.handle_event("ADDED", pod)
        resource_version: str | None = pods.metadata.resource_version
        logger.debug(
            f"Reconciled {len(pods.items)} workers",
            extra={"resource_version": resource_version},
        )
        return resource_version

    async def watch_failures(self, resource_version: str | None) -> None:
        """Watch worker events until the stream ends or reports an error."""
        kwargs: dict[str, Any] = {
            "namespace": self.namespace,
            "timeout_seconds": self.watch_timeout_seconds,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version

        async with self._watch_factory() as w:
            async for event in w.stream(self.core_api.list_namespaced_pod, **kwargs):
                event_type = event["type"]
                if event_type == "ERROR":
                    raw = event.get("raw_object") or {}
                    logger.info(
                        "Worker watch reported an error, re-listing",
                        extra={"code": raw.get("code"), "reason": raw.get("reason")},
                    )
                    return
                await self.handle_event(event_type, event["object"])

    async def run_reconciler(self) -> None:
        """Reap failed workers forever, re-listing after every reconnect.

        Runs until cancelled.
        """
        logger.info(f"Worker reconciler started (namespace={self.namespace})")
        while True:
            try:
                resource_version = await self.reconcile_once()
                await self.watch_failures(resource_version)
                logger.debug("Worker watch ended, re-listing")
            except asyncio.CancelledError:
                logger.info("Worker reconciler cancelled")
                raise
            except ApiException as e:
                if e.status == 410:
                    logger.info("Worker watch resource version expired, re-listing")
                    continue
                logger.error(f"Worker reconciler API error: {e.status} {e.reason}")
                await asyncio.sleep(self.reconnect_backoff_s)
            except Exception as e:
                logger.exception("Worker reconciler error", extra={"error": str(e)})
                await asyncio.sleep(self.reconnect_backoff_s)
