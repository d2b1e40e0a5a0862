"""
Operator Controller - Main reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles the clusters stored
in the database against what pcluster reports. The per-cluster logic lives in
the reconciler plugin; the controller schedules, bounds concurrency and
records failures the reconciler could not.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from config import ControllerConfig
from db import DatabaseManager, ResourceStatus
from plugins.reconcilers.base import ReconcilerContext, ReconcilerPlugin

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Watches for clusters that need reconciliation and hands each one to the
    reconciler plugin, at most max_concurrent_reconciles at a time.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        reconciler: ReconcilerPlugin,
        config: Optional[ControllerConfig] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False

        # Set on stop(); running pcluster commands are killed when it fires
        self._shutdown_event = asyncio.Event()
        self._inflight: Set[asyncio.Task] = set()
        self._ctx = ReconcilerContext(
            db=self.db,
            shutdown_event=self._shutdown_event,
            poll_interval=self.config.poll_interval,
        )

    async def start(self):
        """Start the reconciliation and requeue loops."""
        logger.info(
            f"Starting Operator Controller (reconciler: {self.reconciler.name})"
        )
        self.running = True
        self._shutdown_event.clear()

        reset = await self.db.reset_interrupted_reconciliations()
        if reset:
            logger.info(f"Requeued {reset} clusters interrupted mid-reconciliation")

        reconcile_task = asyncio.create_task(self._reconciliation_loop())
        requeue_task = asyncio.create_task(self._requeue_loop())

        try:
            await asyncio.gather(reconcile_task, requeue_task)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """
        Stop the controller.

        Running pcluster commands are killed through the shutdown event; the
        passes that issued them are awaited so their final status is written
        before the database goes away.
        """
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()

        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight reconciliations")
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _reconciliation_loop(self):
        """Main reconciliation loop - watches for clusters needing reconciliation."""
        while self.running:
            try:
                clusters = await self.db.get_clusters_needing_reconciliation(
                    limit=self.max_concurrent_reconciles * 2
                )

                if clusters:
                    logger.info(
                        f"Found {len(clusters)} clusters needing reconciliation"
                    )
                    tasks = [self._track(cluster) for cluster in clusters]
                    await asyncio.gather(*tasks, return_exceptions=True)

                await self._sleep(self.reconcile_interval)

            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await self._sleep(10)  # Brief pause on error

    async def _requeue_loop(self):
        """Handles requeuing of failed reconciliations with exponential backoff."""
        while self.running:
            try:
                await self.db.requeue_failed_clusters(
                    base_delay=self.config.backoff_base_delay,
                    max_delay=self.config.backoff_max_delay,
                    jitter_factor=self.config.backoff_jitter_factor,
                )
                await self._sleep(30)  # Check every 30 seconds
            except Exception as e:
                logger.error(f"Error in requeue loop: {e}", exc_info=True)
                await self._sleep(10)

    def _track(self, cluster: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._reconcile_cluster(cluster))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _determine_trigger_reason(self, cluster: Dict[str, Any]) -> str:
        """Determine why this reconciliation was triggered."""
        if cluster.get("deleted_at") is not None:
            return "deletion"
        elif cluster.get("last_reconcile_time") is None:
            return "initial"
        elif cluster.get("generation", 0) > cluster.get("observed_generation", 0):
            return "spec_change"
        elif cluster.get("status") == ResourceStatus.FAILED.value:
            return "retry"
        else:
            # Periodic re-observation (drift detection window)
            return "scheduled"

    async def _reconcile_cluster(self, cluster: Dict[str, Any]):
        """
        Reconcile a single cluster under the concurrency semaphore.

        Exceptions escaping the reconciler are recorded as a failed attempt so
        the requeue loop picks the cluster up again.
        """
        async with self.semaphore:
            cluster_id = cluster["id"]
            cluster_name = cluster["name"]
            generation = cluster.get("generation", 0)
            trigger_reason = self._determine_trigger_reason(cluster)
            deleting = cluster.get("deleted_at") is not None

            try:
                if not deleting:
                    await self.db.update_cluster_status(
                        cluster_id,
                        ResourceStatus.RECONCILING,
                        message="Starting reconciliation",
                    )
                await self.db.set_condition(
                    cluster_id,
                    "Reconciling",
                    "True",
                    "ReconcileStarted",
                    f"Reconciliation triggered by {trigger_reason}",
                    generation,
                )

                result = await self.reconciler.reconcile(
                    {**cluster, "trigger_reason": trigger_reason}, self._ctx
                )

                if result.success:
                    logger.info(
                        f"Reconciled {cluster_name}: {result.operation} "
                        f"({result.message})"
                    )
                else:
                    logger.error(
                        f"Failed to reconcile {cluster_name}: {result.message}"
                    )

                if result.success and result.operation == "finalize":
                    # Record may be gone; nothing left to update
                    return

                await self.db.set_condition(
                    cluster_id,
                    "Reconciling",
                    "False",
                    "ReconcileComplete" if result.success else "ReconcileFailed",
                    "",
                    generation,
                )

            except Exception as e:
                logger.error(f"Error reconciling {cluster_name}: {e}", exc_info=True)
                error_msg = f"Reconciliation error: {str(e)}"
                await self.db.update_cluster_status(
                    cluster_id,
                    ResourceStatus.FAILED,
                    message=error_msg,
                )
                await self.db.set_condition(
                    cluster_id,
                    "Reconciling",
                    "False",
                    "ReconcileFailed",
                    error_msg,
                    generation,
                )

