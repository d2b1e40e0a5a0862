"""
Command Executor Base - Abstract interface for running the pcluster CLI.

The reconciliation engine only talks to pcluster through this interface, so
tests can substitute a scripted executor for the real process runner.
"""

from abc import ABC, abstractmethod
from typing import List

from plugins.base import CommandInvocation, ExecutionContext


class CommandExecutor(ABC):
    """
    Abstract base class for command executors.

    A single operation: run the context's executable with a verb and
    arguments, using the context's environment, working directory and
    cancellation event.
    """

    @abstractmethod
    async def run(
        self, ctx: ExecutionContext, verb: str, args: List[str]
    ) -> CommandInvocation:
        """
        Run a command to completion.

        Args:
            ctx: Execution context (executable, environment, working
                directory, cancellation event)
            verb: The pcluster subcommand, e.g. 'describe-cluster'
            args: Flags and values following the verb

        Returns:
            CommandInvocation holding the combined stdout/stderr. The output
            is populated even when the process exits non-zero, since pcluster
            reports errors as JSON on its output streams. exit_code is None
            and termination_error is set if the process could not be started.
        """
        pass
