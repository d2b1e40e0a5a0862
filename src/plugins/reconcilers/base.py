"""
Reconciler Plugin Base - Abstract interface for reconciler plugins.

A reconciler owns the reconciliation logic for managed clusters. The
controller hands it one cluster record at a time together with a context
for reporting status back.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from db import DatabaseManager, ResourceStatus
from plugins.base import ObservedResourceStatus

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    operation: str = "observe"


class ReconcilerContext:
    """
    Context provided to reconciler plugins by the controller.

    Gives reconcilers access to status reporting and the shutdown event
    that cancels running pcluster commands.
    """

    def __init__(
        self,
        db: DatabaseManager,
        shutdown_event: asyncio.Event,
        poll_interval: int = 300,
    ):
        self.db = db
        self.shutdown_event = shutdown_event
        self.poll_interval = poll_interval

    async def update_status(
        self,
        cluster_id: int,
        status: str,
        message: str = "",
        observed_generation: Optional[int] = None,
    ) -> None:
        """
        Update a cluster's reconciliation status.

        Args:
            cluster_id: The cluster ID.
            status: New status string (e.g. 'reconciling', 'ready', 'failed').
            message: Human-readable status message.
            observed_generation: Set the observed generation on success.
        """
        await self.db.update_cluster_status(
            cluster_id=cluster_id,
            status=ResourceStatus(status),
            message=message,
            observed_generation=observed_generation,
            poll_interval=self.poll_interval,
        )

    async def update_observation(
        self, cluster_id: int, observation: ObservedResourceStatus
    ) -> None:
        """Persist the status fields reported by pcluster."""
        await self.db.update_cluster_observation(cluster_id, observation)

    async def set_condition(
        self,
        cluster_id: int,
        condition_type: str,
        status: str,
        reason: str,
        message: str = "",
        observed_generation: Optional[int] = None,
    ) -> None:
        """
        Set a status condition on a cluster.

        Args:
            cluster_id: The cluster ID.
            condition_type: Condition type, e.g. 'Ready' or 'Synced'.
            status: 'True', 'False' or 'Unknown'.
            reason: CamelCase machine-readable reason.
            message: Human-readable detail.
            observed_generation: Generation the condition was computed for.
        """
        await self.db.set_condition(
            cluster_id,
            condition_type,
            status,
            reason,
            message,
            observed_generation,
        )

    async def record_reconciliation(
        self,
        cluster_id: int,
        result: ReconcileResult,
        duration_seconds: Optional[float] = None,
        trigger_reason: Optional[str] = None,
    ) -> None:
        """
        Record a reconciliation attempt in history.

        Args:
            cluster_id: The cluster ID.
            result: The ReconcileResult from reconciliation.
            duration_seconds: How long reconciliation took.
            trigger_reason: Why reconciliation was triggered.
        """
        await self.db.record_reconciliation(
            cluster_id=cluster_id,
            success=result.success,
            operation=result.operation,
            error_message=result.message if not result.success else None,
            duration_seconds=duration_seconds,
            trigger_reason=trigger_reason,
        )

    async def remove_finalizer(self, cluster_id: int, finalizer: str) -> None:
        """Remove a finalizer from a cluster."""
        await self.db.remove_finalizer(cluster_id, finalizer)

    async def get_finalizers(self, cluster_id: int) -> List[str]:
        """Get the finalizers list for a cluster."""
        return await self.db.get_finalizers(cluster_id)

    async def hard_delete_cluster(self, cluster_id: int) -> bool:
        """
        Permanently delete a cluster record (only if soft-deleted and no
        finalizers remain).

        Returns:
            True if deleted, False otherwise.
        """
        return await self.db.hard_delete_cluster(cluster_id)


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconciler plugins.

    Compares the desired state of one cluster record against the remote
    state and takes action, reporting status back through the context.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler, also used as finalizer."""
        pass

    @abstractmethod
    async def reconcile(
        self, resource: Dict[str, Any], ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single cluster.

        Args:
            resource: The cluster record from the database.
            ctx: ReconcilerContext for status updates.

        Returns:
            ReconcileResult indicating success/failure.
        """
        pass
