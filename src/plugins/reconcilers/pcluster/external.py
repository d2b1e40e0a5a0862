"""
pcluster external client - observes, creates, updates and deletes clusters.

Each method maps to one pcluster subcommand. Status fields are written back
onto the Cluster only after the whole operation has succeeded.
"""

import logging
from typing import Dict, List, Optional, Tuple

from plugins.base import (
    Cluster,
    CommandInvocation,
    ErrorClassification,
    ExecutionContext,
    ExternalObservation,
    RemoteLifecycleStatus,
)
from plugins.executors.base import CommandExecutor
from plugins.reconcilers.pcluster.errors import (
    CommandFailedError,
    UnclassifiedRemoteFailure,
    UnexpectedDryRunSuccess,
)
from plugins.reconcilers.pcluster.status import (
    apply_cluster_info,
    classify,
    decode_describe,
    decode_operation,
)
from plugins.reconcilers.pcluster.workspace import (
    CLUSTER_CONFIG_FILE_NAME,
    with_workspace,
)

logger = logging.getLogger(__name__)

# (exists, available); available None leaves the Ready condition as it was
STATUS_OBSERVATIONS: Dict[RemoteLifecycleStatus, Tuple[bool, Optional[bool]]] = {
    RemoteLifecycleStatus.CREATE_IN_PROGRESS: (True, None),
    RemoteLifecycleStatus.UPDATE_IN_PROGRESS: (True, None),
    RemoteLifecycleStatus.DELETE_IN_PROGRESS: (True, None),
    RemoteLifecycleStatus.CREATE_COMPLETE: (True, True),
    RemoteLifecycleStatus.UPDATE_COMPLETE: (True, True),
    RemoteLifecycleStatus.CREATE_FAILED: (False, None),
    RemoteLifecycleStatus.DELETE_COMPLETE: (False, None),
    RemoteLifecycleStatus.UPDATE_FAILED: (True, False),
    RemoteLifecycleStatus.DELETE_FAILED: (True, False),
}

_unmapped = set(RemoteLifecycleStatus) - set(STATUS_OBSERVATIONS)
if _unmapped:
    raise RuntimeError(f"No observation mapping for statuses: {_unmapped}")


class ClusterExternalClient:
    """
    Drives the pcluster CLI for a single reconciliation pass.

    The execution context is shared by all operations in the pass; the
    working directory is bound per operation by the workspace.
    """

    def __init__(self, executor: CommandExecutor, ctx: ExecutionContext):
        self.executor = executor
        self.ctx = ctx

    async def observe(self, cluster: Cluster) -> ExternalObservation:
        """
        Observe the remote cluster.

        Runs describe-cluster, maps the reported status to existence and
        availability, and, for existing clusters, runs the up-to-date check.

        Args:
            cluster: The managed cluster; its status is updated on success

        Returns:
            ExternalObservation. A cluster pcluster reports as missing yields
            resource_exists=False rather than an error.

        Raises:
            UnclassifiedRemoteFailure: describe failed for another reason
            MalformedPayloadError: describe output could not be decoded
            CommandFailedError: pcluster could not be run
        """
        name = cluster.name
        invocation = await self._run(
            self.ctx, "describe-cluster", ["--cluster-name", name]
        )
        if not invocation.succeeded:
            self._raise_if_not_run(invocation)
            classification = classify(invocation.combined_output, name)
            if classification is ErrorClassification.NOT_FOUND:
                logger.debug(f"Cluster {name} does not exist")
                return ExternalObservation(resource_exists=False)
            raise UnclassifiedRemoteFailure(invocation, classification)

        described = decode_describe(invocation.combined_output)
        exists, available = STATUS_OBSERVATIONS[described.cluster_status]

        up_to_date = False
        if exists:
            up_to_date = await self.is_up_to_date(cluster)

        apply_cluster_info(described, cluster.status, described.last_updated_time)
        cluster.status.up_to_date = up_to_date

        return ExternalObservation(
            resource_exists=exists,
            resource_up_to_date=up_to_date,
            available=available,
        )

    async def is_up_to_date(self, cluster: Cluster) -> bool:
        """
        Check for configuration drift with a dry-run update.

        pcluster always exits non-zero with --dryrun; the verdict is carried
        by the error message.

        Raises:
            UnexpectedDryRunSuccess: The dry run exited 0
            UnclassifiedRemoteFailure: The message was neither verdict
            MalformedErrorPayloadError: The output was not an error payload
        """
        invocation = await self._run_in_workspace(
            cluster,
            "update-cluster",
            self._configured_args(cluster) + ["--dryrun", "true"],
        )
        if invocation.succeeded:
            logger.debug("dryrun operation ended with exit code 0")
            raise UnexpectedDryRunSuccess(invocation)
        self._raise_if_not_run(invocation)

        classification = classify(invocation.combined_output, cluster.name)
        if classification is ErrorClassification.UP_TO_DATE:
            return True
        if classification is ErrorClassification.NOT_UP_TO_DATE:
            return False
        raise UnclassifiedRemoteFailure(invocation, classification)

    async def create(self, cluster: Cluster) -> None:
        """Create the cluster and record the reported status."""
        invocation = await self._run_in_workspace(
            cluster, "create-cluster", self._configured_args(cluster)
        )
        if not invocation.succeeded:
            raise CommandFailedError(invocation)

        created = decode_operation("create-cluster", invocation.combined_output)
        apply_cluster_info(created.cluster, cluster.status)
        logger.info(
            f"Created cluster {cluster.name}: {created.cluster.cluster_status.value}"
        )

    async def update(self, cluster: Cluster) -> None:
        """Apply the desired configuration to an existing cluster."""
        invocation = await self._run_in_workspace(
            cluster, "update-cluster", self._configured_args(cluster)
        )
        if not invocation.succeeded:
            raise CommandFailedError(invocation)

        updated = decode_operation("update-cluster", invocation.combined_output)
        apply_cluster_info(updated.cluster, cluster.status)
        logger.debug(f"updated to reflect {len(updated.change_set)} changes")

    async def delete(self, cluster: Cluster) -> None:
        """Delete the cluster and record the final reported status."""
        invocation = await self._run_in_workspace(
            cluster,
            "delete-cluster",
            [
                "--cluster-name",
                cluster.name,
                "--region",
                cluster.parameters.region,
            ],
        )
        if not invocation.succeeded:
            raise CommandFailedError(invocation)

        deleted = decode_operation("delete-cluster", invocation.combined_output)
        apply_cluster_info(deleted.cluster, cluster.status)
        logger.debug(
            f"deleted {cluster.name}. response: "
            f"{invocation.combined_output.decode('utf-8', errors='replace')}"
        )

    # Private helper methods

    def _configured_args(self, cluster: Cluster) -> List[str]:
        return [
            "--cluster-configuration",
            CLUSTER_CONFIG_FILE_NAME,
            "--cluster-name",
            cluster.name,
            "--region",
            cluster.parameters.region,
        ]

    async def _run_in_workspace(
        self, cluster: Cluster, verb: str, args: List[str]
    ) -> CommandInvocation:
        async def operation(ctx: ExecutionContext) -> CommandInvocation:
            return await self._run(ctx, verb, args)

        return await with_workspace(
            cluster.name,
            cluster.parameters.cluster_configuration,
            self.ctx,
            operation,
        )

    async def _run(
        self, ctx: ExecutionContext, verb: str, args: List[str]
    ) -> CommandInvocation:
        invocation = await self.executor.run(ctx, verb, args)
        logger.debug(
            f"pcluster {invocation.command_line}: exit code {invocation.exit_code}"
        )
        return invocation

    @staticmethod
    def _raise_if_not_run(invocation: CommandInvocation) -> None:
        """Failures to start or kills carry no error payload to classify."""
        if invocation.termination_error is not None:
            raise CommandFailedError(invocation)
