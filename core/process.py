"""
Child-process runner shared by the shell/git tools and the bounty executor.

Commands run with asyncio subprocess pipes and a hard timeout; on timeout the
child is killed and reaped before returning.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

logger = logging.getLogger("roly.process")


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


async def run_command(
    command: Union[str, Sequence[str]],
    cwd: Optional[str] = None,
    timeout: float = 30.0,
) -> CommandResult:
    """
    Run a command and collect its output.

    A str runs through the shell; a sequence runs as argv with no shell.
    Raises FileNotFoundError when the executable or cwd does not exist.
    """
    if isinstance(command, str):
        proc = await asyncio.create_subprocess_shell(
            command, cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    else:
        proc = await asyncio.create_subprocess_exec(
            *command, cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        logger.warning(f"Command timed out after {timeout}s: {command!r}")
        return CommandResult(returncode=-1, stderr=f"Timed out after {timeout}s", timed_out=True)

    return CommandResult(
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
