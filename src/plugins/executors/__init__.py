"""
Command executor plugins package.

Executors run the pcluster CLI on behalf of the reconciliation engine.
"""

from plugins.executors.base import CommandExecutor
from plugins.executors.process import SubprocessExecutor, new_executor

__all__ = ["CommandExecutor", "SubprocessExecutor", "new_executor"]
