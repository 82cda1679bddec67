"""Shared types for recipe tools."""

import dataclasses
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any
from typing import Literal

from ..collector import AiCollector
from ..models import Recipe
from ..models import RecursionConfig
from ..models import Step
from ..rendering import TemplateRenderer

if TYPE_CHECKING:
    from ..executor import StepExecutor
    from ..variables import ResolveOptions

StepStatus = Literal["completed", "skipped", "failed"]


@dataclass
class RecursionState:
    """Track recursion across nested recipe executions."""

    current_depth: int = 0
    total_steps: int = 0
    max_depth: int = 5
    max_total_steps: int = 500
    recipe_stack: list[str] = field(default_factory=list)

    def check_depth(self, recipe_name: str) -> None:
        """Raise if depth limit exceeded."""
        if self.current_depth >= self.max_depth:
            raise ValueError(
                f"Recipe recursion depth {self.current_depth} exceeds limit {self.max_depth} "
                f"entering '{recipe_name}'. Stack: {' -> '.join(self.recipe_stack)}"
            )

    def increment_steps(self) -> None:
        """Increment total steps counter and check limit."""
        self.total_steps += 1
        if self.total_steps > self.max_total_steps:
            raise ValueError(f"Total steps {self.total_steps} exceeds limit {self.max_total_steps}")

    def enter_recipe(self, recipe_name: str, override_config: RecursionConfig | None = None) -> "RecursionState":
        """
        Create child state for a sub-recipe.

        Args:
            recipe_name: Name of recipe being entered
            override_config: Optional per-step recursion config override
        """
        self.check_depth(recipe_name)
        max_depth = override_config.max_depth if override_config else self.max_depth
        max_total_steps = override_config.max_total_steps if override_config else self.max_total_steps

        return RecursionState(
            current_depth=self.current_depth + 1,
            total_steps=self.total_steps,
            max_depth=max_depth,
            max_total_steps=max_total_steps,
            recipe_stack=[*self.recipe_stack, recipe_name],
        )


@dataclass
class StepContext:
    """Everything a tool needs to run one step.

    The context is treated as read-only by tools. Executors derive new
    contexts with :meth:`child` instead of mutating a shared one.
    """

    variables: dict[str, Any]
    cwd: Path
    collector: AiCollector
    renderer: TemplateRenderer
    answers: dict[str, Any] | None = None
    dry_run: bool = False
    force: bool = False
    recipe: Recipe | None = None
    recursion: RecursionState | None = None
    executor: "StepExecutor | None" = None
    resolve_options: "ResolveOptions | None" = None
    step_timeout: float = 600.0
    step_path: tuple[str, ...] = ()
    # Values shared by every pass of one run, keyed by step_path
    run_cache: dict[tuple[str, ...], Any] | None = None

    @property
    def collect_mode(self) -> bool:
        return self.collector.collect_mode

    @property
    def recipe_dir(self) -> Path | None:
        return self.recipe.base_dir if self.recipe else None

    def child(self, **changes: Any) -> "StepContext":
        return dataclasses.replace(self, **changes)

    def cached(self) -> tuple[bool, Any]:
        """Return ``(found, value)`` for what this step stored earlier in the run."""
        if self.run_cache is None or self.step_path not in self.run_cache:
            return False, None
        return True, self.run_cache[self.step_path]

    def cache(self, value: Any) -> None:
        if self.run_cache is not None:
            self.run_cache[self.step_path] = value

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve a path relative to the working directory."""
        resolved = Path(path).expanduser()
        if not resolved.is_absolute():
            resolved = self.cwd / resolved
        return resolved

    def condition_functions(self) -> dict[str, Any]:
        """Helper functions available to guard expressions."""
        return {
            "fileExists": lambda p: self.resolve_path(str(p)).is_file(),
            "dirExists": lambda p: self.resolve_path(str(p)).is_dir(),
        }

    def substitute(self, value: Any, extra: dict[str, Any] | None = None) -> Any:
        """
        Render ``{{ }}`` expressions in strings, recursing into dicts and lists.

        Other values pass through unchanged.
        """
        if isinstance(value, str):
            if "{{" not in value and "{%" not in value:
                return value
            return self.renderer.render(value, {**self.variables, **(extra or {})})
        if isinstance(value, dict):
            return {k: self.substitute(v, extra) for k, v in value.items()}
        if isinstance(value, list):
            return [self.substitute(item, extra) for item in value]
        return value


@dataclass
class StepResult:
    """Outcome of one step; composites carry their children's results."""

    name: str
    tool: str
    status: StepStatus = "completed"
    output: Any = None
    error: str | None = None
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    children: list["StepResult"] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    tolerated: bool = False  # failed, but the step allowed its sequence to continue
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class Tool:
    """Base class for leaf tools.

    Tools raise on failure; the executor turns exceptions into failed
    step results.
    """

    kind = ""

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        raise NotImplementedError

    def result(self, step: Step, **fields: Any) -> StepResult:
        return StepResult(name=step.name, tool=step.tool, **fields)
