"""
Subprocess Executor - runs pcluster as a local child process.

Output is collected with stderr folded into stdout. The child is killed when
the context's cancel event fires, when the command timeout elapses, or when
the awaiting task is cancelled, so no pcluster process outlives its caller.
"""

import asyncio
import logging
from typing import List, Optional

from plugins.base import CommandInvocation, ExecutionContext
from plugins.executors.base import CommandExecutor

logger = logging.getLogger(__name__)


class SubprocessExecutor(CommandExecutor):
    """Executor backed by asyncio.create_subprocess_exec."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    async def run(
        self, ctx: ExecutionContext, verb: str, args: List[str]
    ) -> CommandInvocation:
        invocation = CommandInvocation(verb=verb, arguments=list(args))

        try:
            proc = await asyncio.create_subprocess_exec(
                ctx.executable_path,
                verb,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=ctx.env_dict(),
                cwd=ctx.working_directory,
            )
        except OSError as e:
            invocation.termination_error = (
                f"failed to start {ctx.executable_path}: {e}"
            )
            return invocation

        communicate = asyncio.ensure_future(proc.communicate())
        waiters = {communicate}
        cancel_waiter = None
        if ctx.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(ctx.cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._kill(proc, communicate)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if communicate in done:
            output, _ = communicate.result()
            invocation.combined_output = output or b""
            invocation.exit_code = proc.returncode
            return invocation

        if cancel_waiter is not None and cancel_waiter in done:
            invocation.termination_error = "cancelled"
        else:
            invocation.termination_error = f"timed out after {self.timeout}s"
        logger.warning(
            f"Terminating pcluster {verb} (pid {proc.pid}): "
            f"{invocation.termination_error}"
        )
        invocation.combined_output = await self._kill(proc, communicate)
        invocation.exit_code = proc.returncode
        return invocation

    async def _kill(
        self, proc: asyncio.subprocess.Process, communicate: asyncio.Future
    ) -> bytes:
        """Kill the child and return whatever output it produced."""
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        try:
            output, _ = await communicate
        except asyncio.CancelledError:
            output = b""
        await proc.wait()
        return output or b""


def new_executor(
    credentials: bytes, timeout: Optional[float] = None
) -> CommandExecutor:
    """
    Build the production executor.

    pcluster reads AWS credentials from its environment and config files,
    so the credential blob is accepted for interface parity and not parsed.
    """
    return SubprocessExecutor(timeout=timeout)
