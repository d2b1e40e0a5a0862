"""
Reconciler plugins package.

Reconciler plugins own the reconciliation logic for managed clusters.
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)

__all__ = ["ReconcilerPlugin", "ReconcilerContext", "ReconcileResult"]
