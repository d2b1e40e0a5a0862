"""
Core plugin types and dataclasses.

This module contains shared types used across the plugin system: the
desired and observed state of a cluster, the execution context handed to
command executors, and the closed enumerations decoded from pcluster output.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class RemoteLifecycleStatus(Enum):
    """Cluster status values reported by the pcluster CLI."""

    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"


class ErrorClassification(Enum):
    """Meaning of a pcluster error payload, derived from its message text."""

    NOT_FOUND = "clusterNotFound"
    UP_TO_DATE = "clusterUpToDate"
    NOT_UP_TO_DATE = "clusterNotUpToDate"
    EMPTY_OR_UNCLASSIFIED = "emptyMessage"


@dataclass(frozen=True)
class ClusterParameters:
    """Desired state of a cluster. Never modified by the engine."""

    name: str
    region: str
    cluster_configuration: str


@dataclass
class ObservedResourceStatus:
    """Observed state of a cluster, as last reported by pcluster."""

    cluster_name: Optional[str] = None
    cloudformation_stack_arn: Optional[str] = None
    cluster_status: Optional[RemoteLifecycleStatus] = None
    scheduler_type: Optional[str] = None
    last_updated_time: Optional[str] = None
    up_to_date: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_name": self.cluster_name,
            "cloudformation_stack_arn": self.cloudformation_stack_arn,
            "cluster_status": (
                self.cluster_status.value if self.cluster_status else None
            ),
            "scheduler_type": self.scheduler_type,
            "last_updated_time": self.last_updated_time,
            "up_to_date": self.up_to_date,
        }


@dataclass
class Cluster:
    """A managed cluster: desired parameters plus the observed status."""

    parameters: ClusterParameters
    status: ObservedResourceStatus = field(default_factory=ObservedResourceStatus)

    @property
    def name(self) -> str:
        return self.parameters.name

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Cluster":
        """
        Build a Cluster from a row returned by the DatabaseManager.

        Args:
            record: Parsed cluster row

        Returns:
            A Cluster carrying the stored desired and observed state.
        """
        cluster_status = record.get("cluster_status")
        return cls(
            parameters=ClusterParameters(
                name=record["name"],
                region=record["region"],
                cluster_configuration=record["cluster_configuration"],
            ),
            status=ObservedResourceStatus(
                cluster_name=record.get("cluster_name"),
                cloudformation_stack_arn=record.get("cloudformation_stack_arn"),
                cluster_status=(
                    RemoteLifecycleStatus(cluster_status) if cluster_status else None
                ),
                scheduler_type=record.get("scheduler_type"),
                last_updated_time=record.get("last_updated_time"),
                up_to_date=bool(record.get("up_to_date", False)),
            ),
        )


@dataclass
class ExternalObservation:
    """Result of observing the remote cluster."""

    resource_exists: bool = False
    resource_up_to_date: bool = False
    # None leaves the Ready condition unchanged
    available: Optional[bool] = None


@dataclass(frozen=True)
class ExecutionContext:
    """Everything a command executor needs to invoke pcluster."""

    executable_path: str
    environment: List[str] = field(default_factory=list)
    working_directory: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None

    def env_dict(self) -> Dict[str, str]:
        """Environment as a mapping. Later entries win over earlier ones."""
        env: Dict[str, str] = {}
        for entry in self.environment:
            key, sep, value = entry.partition("=")
            if sep:
                env[key] = value
        return env


@dataclass
class CommandInvocation:
    """A single pcluster call and its outcome."""

    verb: str
    arguments: List[str] = field(default_factory=list)
    combined_output: bytes = b""
    exit_code: Optional[int] = None
    termination_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.termination_error is None

    @property
    def command_line(self) -> str:
        return " ".join([self.verb, *self.arguments])
