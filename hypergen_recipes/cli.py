"""Command-line entry point: ``hypergen-recipe run|validate``."""

import argparse
import asyncio
import logging
import shlex
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .engine import ExecutionOptions
from .engine import ExecutionResult
from .engine import RecipeEngine
from .errors import RecipeError
from .errors import RecipeValidationError
from .models import Recipe

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

console = Console()
err_console = Console(stderr=True)


class ConsoleDisplay:
    """Progress display that writes engine messages to stderr."""

    STYLES = {"info": "dim", "warning": "yellow", "error": "red"}

    def __init__(self, console: Console):
        self.console = console

    def show_message(self, message: str, level: str = "info", source: str = "recipe") -> None:
        self.console.print(message, style=self.STYLES.get(level, ""), markup=False, highlight=False)


def parse_var(text: str) -> tuple[str, str]:
    if "=" not in text:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got '{text}'")
    name, _, value = text.partition("=")
    return name.strip(), value


def coerce_variables(recipe: Recipe, pairs: list[tuple[str, str]]) -> dict[str, Any]:
    """Convert ``--var`` text to each declared variable's type; undeclared values stay strings."""
    variables: dict[str, Any] = {}
    for name, value in pairs:
        spec = recipe.variables.get(name)
        variables[name] = spec.coerce(value) if spec is not None else value
    return variables


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hypergen-recipe", description="Run Hypergen code-generation recipes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Execute a recipe")
    run.add_argument("recipe", help="Recipe file or directory")
    run.add_argument("--var", dest="variables", action="append", type=parse_var, default=[], metavar="NAME=VALUE")
    run.add_argument("--ask", choices=("me", "ai", "nobody"), default=None, help="How to resolve missing variables")
    run.add_argument("--no-defaults", action="store_true", help="Do not apply variable defaults")
    run.add_argument("--answers", type=Path, default=None, help="JSON file with AI block answers")
    run.add_argument("--cwd", type=Path, default=None, help="Project directory (default: current)")
    run.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    run.add_argument("--force", action="store_true", help="Overwrite existing files")
    run.add_argument("--ai-mode", choices=("stdout", "command", "api"), default=None)
    run.add_argument("--ai-command", default=None, help="Command used by the command transport")

    validate = subparsers.add_parser("validate", help="Validate a recipe")
    validate.add_argument("recipe", help="Recipe file or directory")
    validate.add_argument("--cwd", type=Path, default=None)

    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=verbose)],
    )


def _original_command(argv: list[str]) -> str:
    """Rebuild the invoking command line without any --answers argument."""
    kept: list[str] = []
    skip_next = False
    for arg in argv:
        if skip_next:
            skip_next = False
            continue
        if arg == "--answers":
            skip_next = True
            continue
        if arg.startswith("--answers="):
            continue
        kept.append(arg)
    return " ".join(["hypergen-recipe", *(shlex.quote(arg) for arg in kept)])


def render_result(result: ExecutionResult) -> None:
    if result.needs_answers:
        # The prompt goes to stdout so it can be piped to an agent
        console.print(result.pending_prompt or "", markup=False, highlight=False, soft_wrap=True)
        return

    table = Table(title=f"Recipe: {result.recipe_name}", show_header=False)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Steps", str(result.total_steps))
    table.add_row("Completed", str(result.completed_steps))
    table.add_row("Skipped", str(result.skipped_steps))
    table.add_row("Failed", str(result.failed_steps))
    table.add_row("Duration", f"{result.duration:.2f}s")
    err_console.print(table)

    for path in result.files_created:
        err_console.print(f"[green]created[/green]  {path}")
    for path in result.files_modified:
        err_console.print(f"[yellow]modified[/yellow] {path}")
    for warning in result.warnings:
        err_console.print(f"[yellow]warning:[/yellow] {warning}")
    if result.errors:
        err_console.print(Panel("\n".join(result.errors), title="Errors", border_style="red"))


async def _run(args: argparse.Namespace, argv: list[str]) -> int:
    cwd = (args.cwd or Path.cwd()).resolve()
    engine = RecipeEngine.from_directory(cwd, display=ConsoleDisplay(err_console))

    if args.ai_mode:
        engine.config.ai.mode = args.ai_mode
    if args.ai_command:
        engine.config.ai.command = args.ai_command

    try:
        recipe = engine.load_recipe(args.recipe, cwd)
    except (ValueError, TypeError) as e:
        raise RecipeValidationError([str(e)]) from e

    variables = coerce_variables(recipe, args.variables)
    options = ExecutionOptions(
        variables=variables,
        ask=args.ask or "nobody",
        no_defaults=args.no_defaults,
        answers_path=args.answers,
        cwd=cwd,
        dry_run=args.dry_run,
        force=args.force,
        original_command=_original_command(argv),
    )

    result = await engine.execute_recipe(recipe, options)
    render_result(result)
    return result.exit_code


def _validate(args: argparse.Namespace) -> int:
    cwd = (args.cwd or Path.cwd()).resolve()
    errors = RecipeEngine().validate_recipe(args.recipe, cwd)
    if errors:
        err_console.print(Panel("\n".join(errors), title="Invalid recipe", border_style="red"))
        return EXIT_FAILURE
    err_console.print(f"[green]Recipe is valid:[/green] {args.recipe}")
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        if args.command == "validate":
            return _validate(args)
        return asyncio.run(_run(args, argv))
    except RecipeValidationError as e:
        err_console.print(Panel("\n".join(e.errors), title="Invalid recipe", border_style="red"))
        return EXIT_FAILURE
    except (RecipeError, FileNotFoundError) as e:
        err_console.print(f"[red]Error:[/red] {e}", highlight=False)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        return 130
    except Exception as e:
        logger.error(f"Recipe run failed: {e}", exc_info=True)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
