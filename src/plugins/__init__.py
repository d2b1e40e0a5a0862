"""
Plugin system for the pcluster operator.

This package provides the plugin architecture for inputs, command
executors and reconcilers.
"""

from plugins.base import (
    Cluster,
    ClusterParameters,
    CommandInvocation,
    ErrorClassification,
    ExecutionContext,
    ExternalObservation,
    ObservedResourceStatus,
    RemoteLifecycleStatus,
)

__all__ = [
    "Cluster",
    "ClusterParameters",
    "CommandInvocation",
    "ErrorClassification",
    "ExecutionContext",
    "ExternalObservation",
    "ObservedResourceStatus",
    "RemoteLifecycleStatus",
]
