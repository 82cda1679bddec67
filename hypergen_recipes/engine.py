"""Recipe engine: variable resolution plus the two-pass AI generation protocol."""

import json
import logging
import time
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

from .collector import AiCollector
from .config import EngineConfig
from .config import load_config
from .errors import RecipeError
from .errors import RecipeValidationError
from .errors import TransportError
from .executor import StepExecutor
from .executor import collect_files
from .executor import count_results
from .executor import walk_results
from .models import Recipe
from .models import RecursionConfig
from .rendering import TemplateRenderer
from .tools import RecursionState
from .tools import StepContext
from .tools import StepResult
from .tools import ToolRegistry
from .tools.recipe import resolve_recipe_path
from .transports import NEEDS_ANSWERS_EXIT_CODE
from .transports import Transport
from .transports import resolve_transport
from .variables import Prompter
from .variables import ResolveOptions
from .variables import VariableResolver

logger = logging.getLogger(__name__)

RecipeRef = Recipe | Path | str | dict[str, Any]


@dataclass
class ExecutionOptions:
    """Per-invocation options for :meth:`RecipeEngine.execute_recipe`."""

    variables: dict[str, Any] = field(default_factory=dict)
    ask: str = "nobody"
    no_defaults: bool = False
    answers: dict[str, Any] | None = None
    answers_path: Path | None = None
    cwd: Path | None = None
    dry_run: bool = False
    force: bool = False
    original_command: str | None = None
    transport: Transport | None = None
    prompter: Prompter | None = None


@dataclass
class ExecutionResult:
    """Structured outcome of one recipe execution; the CLI renders this."""

    success: bool
    recipe_name: str
    variables: dict[str, Any] = field(default_factory=dict)
    step_results: list[StepResult] = field(default_factory=list)
    total_steps: int = 0
    completed_steps: int = 0
    skipped_steps: int = 0
    failed_steps: int = 0
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration: float = 0.0
    answers: dict[str, Any] = field(default_factory=dict)
    needs_answers: bool = False
    pending_prompt: str | None = None
    exit_code: int = 0


def load_answers(path: Path) -> dict[str, Any]:
    """Load an answers file: a flat JSON object keyed by AI block key."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise RecipeError(f"Answers file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise RecipeError(f"Answers file is not valid JSON: {path}: {e}") from e
    if not isinstance(data, dict):
        raise RecipeError(f"Answers file must contain a JSON object: {path}")
    return data


class RecipeEngine:
    """Loads recipes, resolves variables and runs steps, two passes when AI blocks exist."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        registry: ToolRegistry | None = None,
        renderer: TemplateRenderer | None = None,
        display: Any = None,
    ):
        """
        Initialize engine.

        Args:
            config: Engine configuration (defaults when omitted)
            registry: Tool registry (default tools when omitted)
            renderer: Template renderer (a fresh one when omitted)
            display: Optional object with ``show_message(message, level, source)``
        """
        self.config = config or EngineConfig()
        self.renderer = renderer or TemplateRenderer()
        if self.config.helpers and renderer is None:
            self.renderer.register_helpers(self.config.helpers, str(self.config.source or "config"))
        self.registry = registry or ToolRegistry.with_defaults()
        self.display = display
        self.executor = StepExecutor(self.registry, progress=self._show_progress)
        self.resolver = VariableResolver()

    @classmethod
    def from_directory(cls, cwd: Path, display: Any = None) -> "RecipeEngine":
        """Build an engine from the config file found at or above ``cwd``."""
        renderer = TemplateRenderer()
        config = load_config(cwd, on_ready=renderer.register_helpers)
        return cls(config, renderer=renderer, display=display)

    def _show_progress(self, message: str, level: str = "info") -> None:
        """
        Show progress message to user via display system.

        Args:
            message: Progress message to display
            level: Message level (info, warning, error)
        """
        if self.display is not None:
            self.display.show_message(message=message, level=level, source="recipe")

    def load_recipe(self, recipe_ref: RecipeRef, cwd: Path | None = None) -> Recipe:
        """Load a recipe from an object, mapping, YAML text or file/directory path."""
        if isinstance(recipe_ref, Recipe):
            return recipe_ref
        if isinstance(recipe_ref, dict):
            return Recipe.from_dict(recipe_ref)
        if isinstance(recipe_ref, str) and "\n" in recipe_ref:
            return Recipe.from_string(recipe_ref)
        path = resolve_recipe_path(str(recipe_ref), (cwd or Path.cwd()).resolve())
        return Recipe.from_yaml(path)

    def validate_recipe(self, recipe_ref: RecipeRef, cwd: Path | None = None) -> list[str]:
        """Return validation errors for a recipe; loading problems are reported as errors too."""
        try:
            recipe = self.load_recipe(recipe_ref, cwd)
        except (ValueError, TypeError, FileNotFoundError) as e:
            return [str(e)]
        return recipe.validate()

    async def execute_recipe(
        self,
        recipe_ref: RecipeRef,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """
        Execute a recipe.

        With answers supplied, one write pass runs. Otherwise a collect pass
        renders every template without writing. If it collected no AI
        blocks, a write pass follows immediately. If it did, the configured
        transport is asked for answers: ``command`` and ``api`` transports
        answer directly and the write pass follows, while ``stdout`` defers
        and the result carries the prompt with ``needs_answers`` set.

        Args:
            recipe_ref: Recipe object, mapping, YAML text or path
            options: Invocation options

        Returns:
            ExecutionResult describing the final pass

        Raises:
            RecipeValidationError: If the recipe is malformed
            MissingRequiredVariablesError: If required variables stay unresolved
            EnumValidationError: If a variable value is outside its allowed set
            DuplicateAiKeyError: If two AI blocks share a key in one pass
        """
        started = time.monotonic()
        options = options or ExecutionOptions()
        cwd = (options.cwd or Path.cwd()).resolve()

        try:
            recipe = self.load_recipe(recipe_ref, cwd)
        except (ValueError, TypeError) as e:
            raise RecipeValidationError([str(e)]) from e

        errors = recipe.validate()
        if errors:
            raise RecipeValidationError(errors, recipe.name)

        answers = options.answers
        if answers is None and options.answers_path is not None:
            answers = load_answers(options.answers_path)

        self._show_progress(f"Starting recipe: {recipe.name} ({len(recipe.steps)} steps)")

        variables = await self.resolver.resolve(
            recipe.variables,
            options.variables,
            ResolveOptions(
                ask=options.ask,
                no_defaults=options.no_defaults,
                ai_config=self.config.ai,
                transport=options.transport,
                prompter=options.prompter,
                recipe_name=recipe.name,
                recipe_description=recipe.description,
            ),
        )

        collector = AiCollector()
        run_cache: dict[tuple[str, ...], Any] = {}

        if answers is not None:
            logger.info(f"Running '{recipe.name}' with {len(answers)} supplied answers")
            results = await self._run_pass(recipe, variables, collector, cwd, options, answers, run_cache)
            return self._build_result(recipe, variables, results, started, answers)

        results = await self._run_pass(recipe, variables, collector, cwd, options, None, run_cache)

        if not collector.has_entries():
            logger.info("No AI blocks collected; running write pass")
            results = await self._run_pass(recipe, variables, collector, cwd, options, {}, run_cache)
            return self._build_result(recipe, variables, results, started, {})

        collected = self._build_result(recipe, variables, results, started, {})
        if not collected.success:
            return collected

        self._show_progress(f"Collected {len(collector)} AI blocks")
        original_command = options.original_command or f"hypergen-recipe run {recipe.source_path or recipe.name}"
        try:
            transport = options.transport or resolve_transport(self.config.ai)
            transport_result = await transport.resolve_blocks(
                collector,
                original_command,
                str(options.answers_path) if options.answers_path else None,
            )
        except TransportError as e:
            collected.success = False
            collected.exit_code = 1
            collected.errors.append(f"AI transport failed: {e}")
            collected.duration = time.monotonic() - started
            return collected

        if transport_result.status == "deferred":
            collected.needs_answers = True
            collected.pending_prompt = transport_result.prompt
            collected.exit_code = NEEDS_ANSWERS_EXIT_CODE
            collected.warnings.append(f"{len(collector)} AI blocks need answers")
            collected.duration = time.monotonic() - started
            return collected

        results = await self._run_pass(
            recipe, variables, collector, cwd, options, transport_result.answers, run_cache
        )
        return self._build_result(recipe, variables, results, started, transport_result.answers)

    async def _run_pass(
        self,
        recipe: Recipe,
        variables: dict[str, Any],
        collector: AiCollector,
        cwd: Path,
        options: ExecutionOptions,
        answers: dict[str, Any] | None,
        run_cache: dict[tuple[str, ...], Any] | None = None,
    ) -> list[StepResult]:
        """Run every step once; ``answers is None`` means a collect pass."""
        collector.clear()
        collector.collect_mode = answers is None

        recursion_config = recipe.recursion or self.config.recursion or RecursionConfig()
        context = StepContext(
            variables=dict(variables),
            cwd=cwd,
            collector=collector,
            renderer=self.renderer,
            answers=answers,
            dry_run=options.dry_run,
            force=options.force,
            recipe=recipe,
            recursion=RecursionState(
                max_depth=recursion_config.max_depth,
                max_total_steps=recursion_config.max_total_steps,
                recipe_stack=[recipe.name],
            ),
            executor=self.executor,
            resolve_options=ResolveOptions(
                ask=options.ask,
                no_defaults=options.no_defaults,
                ai_config=self.config.ai,
                transport=options.transport,
                prompter=options.prompter,
            ),
            step_timeout=self.config.step_timeout,
            run_cache=run_cache,
        )

        pass_name = "collect" if collector.collect_mode else "write"
        logger.debug(f"Starting {pass_name} pass for '{recipe.name}'")
        return await self.executor.execute(recipe.steps, context)

    def _build_result(
        self,
        recipe: Recipe,
        variables: dict[str, Any],
        results: list[StepResult],
        started: float,
        answers: dict[str, Any],
    ) -> ExecutionResult:
        counts = count_results(results)
        created, modified = collect_files(results)

        errors: list[str] = []
        warnings: list[str] = []
        for result in walk_results(results):
            warnings.extend(result.warnings)
            if result.failed and not result.children and result.error:
                errors.append(f"{result.name}: {result.error}")

        success = counts.failed == 0
        if success:
            self._show_progress(f"Recipe completed: {recipe.name}")
        return ExecutionResult(
            success=success,
            recipe_name=recipe.name,
            variables=variables,
            step_results=results,
            total_steps=counts.total,
            completed_steps=counts.completed,
            skipped_steps=counts.skipped,
            failed_steps=counts.failed,
            files_created=created,
            files_modified=modified,
            errors=errors,
            warnings=warnings,
            duration=time.monotonic() - started,
            answers=dict(answers),
            exit_code=0 if success else 1,
        )
