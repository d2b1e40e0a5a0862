"""
Execution Context Builder.

Assembles the environment for invoking pcluster. The environment is carried
per invocation and never written to os.environ, so concurrent reconciles
of different clusters cannot observe each other's settings.
"""

import asyncio
import logging
import os
from typing import Mapping, Optional

from plugins.base import ExecutionContext
from plugins.reconcilers.pcluster.errors import ToolNotFoundError

logger = logging.getLogger(__name__)

PCLUSTER_EXECUTABLE = "pcluster"


def build_execution_context(
    venv_path: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
    base_environment: Optional[Mapping[str, str]] = None,
) -> ExecutionContext:
    """
    Build the execution context for a reconciliation pass.

    Args:
        venv_path: Optional root of an alternate pcluster installation
            (a Python virtualenv). Its bin/ directory must contain pcluster.
        cancel_event: Event that terminates running commands when set
        base_environment: Environment to start from (defaults to os.environ)

    Returns:
        An ExecutionContext with no working directory bound.

    Raises:
        ToolNotFoundError: If venv_path is set but has no bin/pcluster
    """
    if base_environment is None:
        base_environment = os.environ
    environment = [f"{key}={value}" for key, value in base_environment.items()]

    if not venv_path:
        return ExecutionContext(
            executable_path=PCLUSTER_EXECUTABLE,
            environment=environment,
            cancel_event=cancel_event,
        )

    bin_dir = os.path.join(venv_path, "bin")
    executable = os.path.join(bin_dir, PCLUSTER_EXECUTABLE)
    if not os.path.isfile(executable):
        raise ToolNotFoundError(f"pcluster file not found: {executable}")

    search_path = base_environment.get("PATH", "")
    environment.append(
        f"PATH={bin_dir}{os.pathsep}{search_path}" if search_path else f"PATH={bin_dir}"
    )
    logger.debug(f"Using pcluster from {executable}")

    return ExecutionContext(
        executable_path=executable,
        environment=environment,
        cancel_event=cancel_event,
    )
