"""
Input plugins package.

Input plugins accept cluster definitions and store them for reconciliation.
"""

from plugins.inputs.base import ClusterCallback, InputPlugin

__all__ = ["ClusterCallback", "InputPlugin"]
