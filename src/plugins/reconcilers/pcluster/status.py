"""
Status Translator - decodes pcluster JSON output.

Two independent paths: success payloads are validated into a single schema
per command shape, and error payloads are classified by message text.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from plugins.base import (
    ErrorClassification,
    ObservedResourceStatus,
    RemoteLifecycleStatus,
)
from plugins.reconcilers.pcluster.errors import (
    MalformedErrorPayloadError,
    MalformedSuccessPayloadError,
)

logger = logging.getLogger(__name__)

# Messages emitted by pcluster, matched literally
NO_CHANGES_MESSAGE = "Bad Request: No changes found in your cluster configuration."
DRY_RUN_MESSAGE = "Request would have succeeded, but DryRun flag is set."
UPDATE_IN_PROGRESS_PREFIX = "Cannot execute update while stack is in"
NOT_FOUND_TEMPLATE = "Cluster '{name}' does not exist"


class Scheduler(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None


class ClusterInfo(BaseModel):
    """Fields common to every pcluster cluster payload."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    cluster_name: str = Field(alias="clusterName")
    cluster_status: RemoteLifecycleStatus = Field(alias="clusterStatus")
    cloudformation_stack_arn: Optional[str] = Field(
        default=None, alias="cloudformationStackArn"
    )
    # describe-cluster spells it cloudFormationStackStatus
    cloudformation_stack_status: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "cloudformationStackStatus", "cloudFormationStackStatus"
        ),
    )
    region: Optional[str] = None
    version: Optional[str] = None
    scheduler: Scheduler = Field(default_factory=Scheduler)


class DescribeClusterOutput(ClusterInfo):
    """describe-cluster output. The cluster fields are not enveloped."""

    creation_time: Optional[str] = Field(default=None, alias="creationTime")
    last_updated_time: Optional[str] = Field(default=None, alias="lastUpdatedTime")
    compute_fleet_status: Optional[str] = Field(
        default=None, alias="computeFleetStatus"
    )
    head_node: Optional[Dict[str, Any]] = Field(default=None, alias="headNode")
    tags: List[Dict[str, str]] = Field(default_factory=list)


class ClusterOperationOutput(BaseModel):
    """create-cluster, update-cluster and delete-cluster output."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    cluster: ClusterInfo
    change_set: List[Dict[str, Any]] = Field(default_factory=list, alias="changeSet")


class ErrorOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = ""


def decode_describe(output: bytes) -> DescribeClusterOutput:
    """
    Decode describe-cluster output.

    Raises:
        MalformedSuccessPayloadError: If the output does not match the schema
    """
    try:
        return DescribeClusterOutput.model_validate_json(output)
    except ValidationError as e:
        raise MalformedSuccessPayloadError(
            f"failed to decode describe-cluster response: {e}", output
        ) from e


def decode_operation(verb: str, output: bytes) -> ClusterOperationOutput:
    """
    Decode create/update/delete output.

    Raises:
        MalformedSuccessPayloadError: If the output does not match the schema
    """
    try:
        return ClusterOperationOutput.model_validate_json(output)
    except ValidationError as e:
        raise MalformedSuccessPayloadError(
            f"failed to decode {verb} response: {e}", output
        ) from e


def classify(output: bytes, resource_name: str) -> ErrorClassification:
    """
    Classify a pcluster error payload.

    Rules are evaluated in order and the first match wins, since a message
    can satisfy more than one of them.

    Args:
        output: Combined output of a failed invocation
        resource_name: Name of the cluster the invocation targeted

    Returns:
        The ErrorClassification for the payload's message.

    Raises:
        MalformedErrorPayloadError: If the output is not a JSON error object
    """
    try:
        message = ErrorOutput.model_validate_json(output).message
    except ValidationError as e:
        raise MalformedErrorPayloadError(
            f"failed to decode pcluster error output: "
            f"{output.decode('utf-8', errors='replace')}",
            output,
        ) from e

    if message.startswith(NOT_FOUND_TEMPLATE.format(name=resource_name)):
        return ErrorClassification.NOT_FOUND
    if message == NO_CHANGES_MESSAGE or message.startswith(UPDATE_IN_PROGRESS_PREFIX):
        return ErrorClassification.UP_TO_DATE
    if message == DRY_RUN_MESSAGE:
        return ErrorClassification.NOT_UP_TO_DATE
    return ErrorClassification.EMPTY_OR_UNCLASSIFIED


def apply_cluster_info(
    info: ClusterInfo,
    status: ObservedResourceStatus,
    last_updated_time: Optional[str] = None,
) -> None:
    """Write decoded lifecycle fields back onto an observed status."""
    status.cluster_name = info.cluster_name
    status.cloudformation_stack_arn = info.cloudformation_stack_arn
    status.cluster_status = info.cluster_status
    status.scheduler_type = info.scheduler.type
    if last_updated_time is not None:
        status.last_updated_time = last_updated_time
