"""Shell command execution."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..errors import StepTimeoutError
from ..models import Step
from .base import StepContext
from .base import StepResult
from .base import Tool

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    exit_code: int


async def run_command(
    command: str,
    cwd: Path,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    step_name: str = "shell",
) -> CommandResult:
    """
    Run a shell command and capture its output.

    The process is killed if the timeout expires or the awaiting task is
    cancelled.

    Args:
        command: Command line passed to the shell
        cwd: Working directory
        env: Extra environment variables layered over the current environment
        timeout: Seconds before the command is killed
        step_name: Step name used in error messages

    Returns:
        CommandResult with stdout, stderr and exit code

    Raises:
        StepTimeoutError: If the command exceeds the timeout
        ValueError: If the command cannot be started
    """
    process_env = os.environ.copy()
    if env:
        process_env.update({key: str(value) for key, value in env.items()})

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=process_env,
        )
    except OSError as e:
        raise ValueError(f"Step '{step_name}': failed to execute command: {e}") from e

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise StepTimeoutError(step_name, timeout or 0) from None
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        exit_code=process.returncode or 0,
    )


class ShellTool(Tool):
    """Runs a command; a no-op during collect passes and dry runs."""

    kind = "shell"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.command is not None, "Shell step must have command"

        command = context.substitute(step.command)

        if context.collect_mode or context.dry_run:
            reason = "collect pass" if context.collect_mode else "dry run"
            logger.debug(f"Not running '{step.name}' during {reason}: {command}")
            return self.result(step, output={"command": command, "executed": False})

        if step.cwd:
            cwd = context.resolve_path(context.substitute(step.cwd))
            if not cwd.is_dir():
                raise ValueError(f"Step '{step.name}': cwd is not a directory: {cwd}")
        else:
            cwd = context.cwd

        env = {key: str(context.substitute(str(value))) for key, value in (step.env or {}).items()}

        result = await run_command(
            command,
            cwd=cwd,
            env=env,
            timeout=step.timeout or context.step_timeout,
            step_name=step.name,
        )

        if result.exit_code != 0:
            message = f"Step '{step.name}': command failed with exit code {result.exit_code}"
            if result.stderr.strip():
                message += f"\nstderr: {result.stderr.strip()}"
            raise ValueError(message)

        return self.result(
            step,
            output={
                "command": command,
                "executed": True,
                "stdout": result.stdout,
                "stderr": result.stderr,
                "exit_code": result.exit_code,
            },
        )
