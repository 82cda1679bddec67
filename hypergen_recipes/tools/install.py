"""Package installation via the project's package manager."""

import logging
import shlex
from pathlib import Path

from ..models import Step
from .base import StepContext
from .base import StepResult
from .base import Tool
from .shell import run_command

logger = logging.getLogger(__name__)

# Checked in order; the first lockfile present wins
LOCKFILES: tuple[tuple[str, str], ...] = (
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
)

PACKAGE_MANAGERS = ("npm", "yarn", "pnpm", "bun")


def detect_package_manager(cwd: Path) -> str:
    """Pick a package manager from the lockfile in ``cwd``, defaulting to npm."""
    for lockfile, manager in LOCKFILES:
        if (cwd / lockfile).exists():
            return manager
    return "npm"


def build_install_command(manager: str, packages: list[str], dev: bool = False) -> str:
    """Build the add/install command line for a package manager."""
    if manager not in PACKAGE_MANAGERS:
        raise ValueError(f"Unsupported package manager: {manager}")

    if manager == "npm":
        parts = ["npm", "install"]
        if dev:
            parts.append("--save-dev")
    else:
        parts = [manager, "add"]
        if dev:
            parts.append({"yarn": "--dev", "pnpm": "-D", "bun": "-d"}[manager])

    parts.extend(shlex.quote(package) for package in packages)
    return " ".join(parts)


class InstallTool(Tool):
    """Installs packages; a no-op during collect passes.

    ``optional: true`` turns an install failure into a warning.
    """

    kind = "install"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        packages = [str(context.substitute(p)) for p in step.packages]
        manager = step.package_manager or detect_package_manager(context.cwd)
        command = build_install_command(manager, packages, dev=step.dev)

        result = self.result(step, output={"command": command, "package_manager": manager, "executed": False})
        if context.collect_mode:
            return result

        manifest = context.cwd / "package.json"
        if context.dry_run:
            logger.info(f"Dry run: would run {command}")
            result.files_modified.append(str(manifest))
            return result

        command_result = await run_command(
            command,
            cwd=context.cwd,
            timeout=step.timeout or context.step_timeout,
            step_name=step.name,
        )
        result.output["executed"] = True

        if command_result.exit_code != 0:
            message = f"Step '{step.name}': {manager} exited with code {command_result.exit_code}"
            if command_result.stderr.strip():
                message += f"\nstderr: {command_result.stderr.strip()}"
            if not step.optional:
                raise ValueError(message)
            logger.warning(message)
            result.warnings.append(message)
            return result

        result.files_modified.append(str(manifest))
        return result
