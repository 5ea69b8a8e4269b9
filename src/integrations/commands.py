"""Async subprocess execution for the external analysis tools.

Commands run with stdout and stderr combined. A non-zero exit raises
CommandError carrying the exit code and output. If the awaiting task is
cancelled (a delivery timeout), the child process is killed before the
cancellation propagates.

Public API:
    run_command: Run a command and return its output
    CommandError: Raised when a command cannot be started or exits non-zero
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

REDACTED = "***"
# Output kept in error messages; the full output stays on the exception
OUTPUT_TAIL_CHARS = 2000


class CommandError(Exception):
    """An external command failed.

    Attributes:
        argv: Command line with secrets redacted
        returncode: Exit status, or None if the command could not be started
        output: Combined stdout/stderr
    """

    def __init__(self, argv: Sequence[str], returncode: Optional[int], output: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        if returncode is None:
            message = f"Command could not be started: {' '.join(self.argv)}"
        else:
            message = f"Command exited with status {returncode}: {' '.join(self.argv)}"
        tail = output.strip()[-OUTPUT_TAIL_CHARS:]
        if tail:
            message = f"{message}\n{tail}"
        super().__init__(message)


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    returncode: int
    output: str


def redact(argv: Sequence[str], secrets: Sequence[str] = ()) -> list[str]:
    """Copy of argv with every secret value replaced."""
    hidden = {s for s in secrets if s}
    return [REDACTED if arg in hidden else arg for arg in argv]


async def run_command(
    argv: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    secrets: Sequence[str] = (),
) -> CommandResult:
    """Run a command to completion.

    Args:
        argv: Program and arguments (no shell involved)
        cwd: Working directory for the command
        secrets: Argument values to hide in logs and errors

    Returns:
        CommandResult with exit status 0 and the combined output

    Raises:
        CommandError: If the command cannot be started or exits non-zero
    """
    shown = redact(argv, secrets)
    logger.debug("Running command: %s (cwd=%s)", " ".join(shown), cwd)

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise CommandError(shown, None, str(e)) from e

    try:
        stdout, _ = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            logger.warning("Killing command after cancellation: %s", " ".join(shown))
            process.kill()
            await process.wait()
        raise

    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    for secret in secrets:
        if secret:
            output = output.replace(secret, REDACTED)

    if process.returncode != 0:
        raise CommandError(shown, process.returncode, output)

    logger.debug("Command finished: %s", " ".join(shown))
    return CommandResult(argv=shown, returncode=process.returncode, output=output)
