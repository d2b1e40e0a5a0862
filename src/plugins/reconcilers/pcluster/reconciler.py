"""
pcluster Reconciler - level-triggered reconciliation of Cluster records.

Each pass connects, observes the remote cluster, and then creates, updates
or deletes it. Nothing is retried here: a failed pass is reported and the
controller requeues the cluster on its own schedule.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from plugins.base import Cluster, ExternalObservation, RemoteLifecycleStatus
from plugins.executors.base import CommandExecutor
from plugins.executors.process import new_executor
from plugins.reconcilers.base import (
    ReconcileResult,
    ReconcilerContext,
    ReconcilerPlugin,
)
from plugins.reconcilers.pcluster.environment import build_execution_context
from plugins.reconcilers.pcluster.errors import PClusterError
from plugins.reconcilers.pcluster.external import ClusterExternalClient

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[bytes], CommandExecutor]


class ClusterConnector:
    """Produces a ClusterExternalClient for each reconciliation pass."""

    def __init__(
        self,
        venv_path: Optional[str] = None,
        credentials_file: Optional[str] = None,
        command_timeout: Optional[float] = None,
        executor_factory: Optional[ExecutorFactory] = None,
    ):
        self.venv_path = venv_path
        self.credentials_file = credentials_file
        self.command_timeout = command_timeout
        self.executor_factory = executor_factory or (
            lambda credentials: new_executor(credentials, timeout=command_timeout)
        )

    def connect(
        self, cancel_event: Optional[asyncio.Event] = None
    ) -> ClusterExternalClient:
        """
        Build a client for one pass.

        Raises:
            PClusterError: If the credentials cannot be read
            ToolNotFoundError: If the configured venv has no pcluster
        """
        executor = self.executor_factory(self._read_credentials())
        ctx = build_execution_context(self.venv_path, cancel_event=cancel_event)
        return ClusterExternalClient(executor, ctx)

    def _read_credentials(self) -> bytes:
        if not self.credentials_file:
            return b""
        try:
            with open(self.credentials_file, "rb") as f:
                return f.read()
        except OSError as e:
            raise PClusterError(f"cannot get credentials: {e}") from e


class PClusterReconciler(ReconcilerPlugin):
    """Reconciles Cluster records against AWS ParallelCluster."""

    def __init__(self, connector: Optional[ClusterConnector] = None):
        self.connector = connector or ClusterConnector()

    @property
    def name(self) -> str:
        return "pcluster"

    @classmethod
    def from_config(cls, pcluster_config: Any) -> "PClusterReconciler":
        """Build a reconciler from a config.PClusterConfig."""
        return cls(
            ClusterConnector(
                venv_path=pcluster_config.venv_path,
                credentials_file=pcluster_config.credentials_file,
                command_timeout=pcluster_config.command_timeout,
            )
        )

    async def reconcile(
        self, resource: Dict[str, Any], ctx: ReconcilerContext
    ) -> ReconcileResult:
        cluster_id = resource["id"]
        generation = resource.get("generation", 0)
        deleting = resource.get("deleted_at") is not None
        cluster = Cluster.from_record(resource)
        start_time = time.monotonic()
        result = ReconcileResult()

        try:
            client = self.connector.connect(ctx.shutdown_event)
            observation = await client.observe(cluster)

            if deleting:
                result = await self._finalize(
                    client, cluster, observation, cluster_id, ctx
                )
            else:
                result = await self._sync(
                    client, cluster, observation, cluster_id, generation, ctx
                )
        except PClusterError as e:
            logger.error(f"Failed to reconcile cluster {cluster.name}: {e}")
            result.success = False
            result.message = str(e)
            await ctx.update_status(cluster_id, "failed", message=result.message)
            await ctx.set_condition(
                cluster_id,
                "Synced",
                "False",
                "ReconcileError",
                result.message,
                generation,
            )

        await ctx.record_reconciliation(
            cluster_id,
            result,
            duration_seconds=time.monotonic() - start_time,
            trigger_reason=resource.get("trigger_reason"),
        )

        if result.success and deleting and result.operation == "finalize":
            remaining = await ctx.get_finalizers(cluster_id)
            if not remaining:
                await ctx.hard_delete_cluster(cluster_id)
                logger.info(f"Deleted cluster record {cluster.name}")
            else:
                logger.info(
                    f"Finalizer removed for {cluster.name}, waiting on: {remaining}"
                )

        return result

    async def _sync(
        self,
        client: ClusterExternalClient,
        cluster: Cluster,
        observation: ExternalObservation,
        cluster_id: int,
        generation: int,
        ctx: ReconcilerContext,
    ) -> ReconcileResult:
        """Create or update the cluster so it matches the desired state."""
        if not observation.resource_exists:
            logger.info(f"Creating cluster {cluster.name}")
            await client.create(cluster)
            operation = "create"
            message = "Cluster creation started"
        elif not observation.resource_up_to_date:
            logger.info(f"Updating cluster {cluster.name}")
            await client.update(cluster)
            operation = "update"
            message = "Cluster update started"
        else:
            operation = "observe"
            message = "Cluster is up to date"

        await ctx.update_observation(cluster_id, cluster.status)

        if operation == "create":
            await ctx.set_condition(
                cluster_id, "Ready", "False", "Creating", "", generation
            )
        elif observation.available is not None:
            await ctx.set_condition(
                cluster_id,
                "Ready",
                "True" if observation.available else "False",
                "Available" if observation.available else "Unavailable",
                _status_message(cluster),
                generation,
            )
        await ctx.set_condition(
            cluster_id, "Synced", "True", "ReconcileSuccess", "", generation
        )
        await ctx.update_status(
            cluster_id, "ready", message=message, observed_generation=generation
        )

        return ReconcileResult(success=True, message=message, operation=operation)

    async def _finalize(
        self,
        client: ClusterExternalClient,
        cluster: Cluster,
        observation: ExternalObservation,
        cluster_id: int,
        ctx: ReconcilerContext,
    ) -> ReconcileResult:
        """Delete the remote cluster, then release the finalizer."""
        if not observation.resource_exists:
            await ctx.remove_finalizer(cluster_id, self.name)
            return ReconcileResult(
                success=True, message="Cluster deleted", operation="finalize"
            )

        if cluster.status.cluster_status is RemoteLifecycleStatus.DELETE_IN_PROGRESS:
            message = "Waiting for cluster deletion to complete"
            operation = "observe"
        else:
            logger.info(f"Deleting cluster {cluster.name}")
            await client.delete(cluster)
            message = "Cluster deletion started"
            operation = "delete"

        await ctx.update_observation(cluster_id, cluster.status)
        await ctx.set_condition(cluster_id, "Ready", "False", "Deleting", message)
        await ctx.update_status(cluster_id, "deleting", message=message)

        return ReconcileResult(success=True, message=message, operation=operation)


def _status_message(cluster: Cluster) -> str:
    status = cluster.status.cluster_status
    return f"clusterStatus is {status.value}" if status else ""
