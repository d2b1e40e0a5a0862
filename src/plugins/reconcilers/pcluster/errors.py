"""
Errors raised by the pcluster reconciliation engine.

Only a "cluster does not exist" payload is translated into a normal
observation; everything here is surfaced to the caller unmodified.
"""

from typing import Optional

from plugins.base import CommandInvocation, ErrorClassification


class PClusterError(Exception):
    """Base class for all pcluster engine errors."""


class ToolNotFoundError(PClusterError):
    """The configured pcluster installation does not contain the executable."""


class WorkspaceIOError(PClusterError):
    """The ephemeral workspace could not be created or written."""


class MalformedPayloadError(PClusterError):
    """pcluster output could not be decoded into the expected schema."""

    def __init__(self, message: str, output: bytes = b""):
        super().__init__(message)
        self.output = output


class MalformedSuccessPayloadError(MalformedPayloadError):
    """A zero-exit response did not match the success schema."""


class MalformedErrorPayloadError(MalformedPayloadError):
    """A failed invocation did not produce a {"message": ...} payload."""


class CommandFailedError(PClusterError):
    """pcluster failed to start or exited with an error."""

    def __init__(self, invocation: CommandInvocation, message: Optional[str] = None):
        self.invocation = invocation
        if message is None:
            reason = invocation.termination_error or f"exit code {invocation.exit_code}"
            message = (
                f"pcluster {invocation.verb} failed ({reason}): "
                f"{invocation.combined_output.decode('utf-8', errors='replace')}"
            )
        super().__init__(message)

    @property
    def output(self) -> bytes:
        return self.invocation.combined_output


class UnclassifiedRemoteFailure(CommandFailedError):
    """An error payload that matched none of the known messages."""

    def __init__(
        self,
        invocation: CommandInvocation,
        classification: ErrorClassification = ErrorClassification.EMPTY_OR_UNCLASSIFIED,
    ):
        self.classification = classification
        super().__init__(
            invocation,
            f"pcluster {invocation.verb} failed with {classification.value}: "
            f"{invocation.combined_output.decode('utf-8', errors='replace')}",
        )


class UnexpectedDryRunSuccess(CommandFailedError):
    """A dry-run update exited 0, which pcluster never does."""

    def __init__(self, invocation: CommandInvocation):
        super().__init__(
            invocation,
            "dry-run update-cluster exited with code 0; "
            "cannot determine whether the cluster is up to date",
        )
