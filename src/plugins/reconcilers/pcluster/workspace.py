"""
Workspace Materializer.

Every pcluster command that reads the cluster configuration runs in its
own temporary directory, which is removed when the command returns.
"""

import dataclasses
import logging
import os
import shutil
import tempfile
from typing import Awaitable, Callable, TypeVar

from plugins.base import ExecutionContext
from plugins.reconcilers.pcluster.errors import WorkspaceIOError

logger = logging.getLogger(__name__)

CLUSTER_CONFIG_FILE_NAME = "cluster-config.yaml"

T = TypeVar("T")


def write_config_file(configuration_document: str, path: str) -> None:
    """Write the configuration document byte for byte."""
    try:
        with open(path, "wb") as config_file:
            config_file.write(configuration_document.encode("utf-8"))
    except OSError as e:
        raise WorkspaceIOError(f"failed to write config file {path}: {e}") from e


async def with_workspace(
    resource_name: str,
    configuration_document: str,
    ctx: ExecutionContext,
    operation: Callable[[ExecutionContext], Awaitable[T]],
) -> T:
    """
    Run an operation inside a fresh workspace holding the cluster config.

    Args:
        resource_name: Cluster name, used as the directory prefix
        configuration_document: Cluster configuration written to
            CLUSTER_CONFIG_FILE_NAME inside the workspace
        ctx: Execution context; its working directory is replaced
        operation: Coroutine function receiving the bound context

    Returns:
        Whatever the operation returns.

    Raises:
        WorkspaceIOError: If the workspace cannot be prepared. The
            operation is not invoked in that case.
    """
    try:
        workspace_dir = tempfile.mkdtemp(prefix=f"{resource_name}-")
    except OSError as e:
        raise WorkspaceIOError(f"failed to create tmp dir: {e}") from e

    try:
        write_config_file(
            configuration_document,
            os.path.join(workspace_dir, CLUSTER_CONFIG_FILE_NAME),
        )
        return await operation(
            dataclasses.replace(ctx, working_directory=workspace_dir)
        )
    finally:
        shutil.rmtree(workspace_dir, ignore_errors=True)
        logger.debug(f"Removed workspace {workspace_dir}")
