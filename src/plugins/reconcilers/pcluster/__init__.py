"""
pcluster reconciler plugin.

Reconciles Cluster records against AWS ParallelCluster by driving the
pcluster CLI.
"""

from plugins.reconcilers.pcluster.external import ClusterExternalClient
from plugins.reconcilers.pcluster.reconciler import ClusterConnector, PClusterReconciler

__all__ = ["ClusterConnector", "ClusterExternalClient", "PClusterReconciler"]
