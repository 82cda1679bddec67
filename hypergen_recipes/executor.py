"""Step execution: guards, tool dispatch, composites and result aggregation."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from jinja2 import TemplateError

from .errors import DuplicateAiKeyError
from .errors import EnumValidationError
from .errors import MissingRequiredVariablesError
from .errors import RecipeValidationError
from .errors import StepTimeoutError
from .expression_evaluator import ExpressionError
from .expression_evaluator import evaluate_condition
from .expression_evaluator import evaluate_expression
from .models import Step
from .tools import StepContext
from .tools import StepResult
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]

# Errors that end the whole run instead of failing one step
FATAL_ERRORS = (DuplicateAiKeyError, RecipeValidationError, MissingRequiredVariablesError, EnumValidationError)


@dataclass
class StepCounts:
    """Aggregate step counts. Composites are not counted themselves; their leaves are."""

    total: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0


def count_results(results: list[StepResult]) -> StepCounts:
    """
    Count leaf step outcomes across a result tree.

    A step that was never attempted (after a sequence aborted) has no result
    and is not counted. A composite with no children, because its guard was
    false or no conditional branch matched, counts as one step.
    """
    counts = StepCounts()
    pending = list(results)
    while pending:
        result = pending.pop()
        if result.children:
            pending.extend(result.children)
            continue
        counts.total += 1
        if result.status == "completed":
            counts.completed += 1
        elif result.status == "skipped":
            counts.skipped += 1
        else:
            counts.failed += 1
    return counts


def walk_results(results: list[StepResult]) -> list[StepResult]:
    """Flatten a result tree in execution order (parents before children)."""
    flat: list[StepResult] = []
    for result in results:
        flat.append(result)
        flat.extend(walk_results(result.children))
    return flat


def collect_files(results: list[StepResult]) -> tuple[list[str], list[str]]:
    """Return (created, modified) file paths reported anywhere in the tree, de-duplicated."""
    created: dict[str, None] = {}
    modified: dict[str, None] = {}
    for result in walk_results(results):
        created.update(dict.fromkeys(result.files_created))
        modified.update(dict.fromkeys(result.files_modified))
    return list(created), [path for path in modified if path not in created]


class StepExecutor:
    """Executes step trees.

    Failure policy per composite kind:
    - sequence: a failed child aborts the remaining siblings, unless that
      child has ``on_error: continue``
    - parallel: all children run to completion; the parallel step fails if
      any child failed
    - conditional: a false guard with no ``else`` branch is a skip, not a
      failure
    """

    def __init__(self, registry: ToolRegistry | None = None, progress: ProgressCallback | None = None):
        self.registry = registry or ToolRegistry.with_defaults()
        self._progress = progress

    def _show_progress(self, message: str, level: str = "info") -> None:
        if self._progress is not None:
            self._progress(message, level)

    async def execute(self, steps: list[Step], context: StepContext) -> list[StepResult]:
        """
        Execute a list of steps in order.

        Args:
            steps: Steps to run as a sequence
            context: Shared step context

        Returns:
            Results for every step that was attempted, in order
        """
        if context.executor is None:
            context = context.child(executor=self)
        return await self._run_sequence(steps, context)

    async def _run_sequence(self, steps: list[Step], context: StepContext) -> list[StepResult]:
        results: list[StepResult] = []
        for step in steps:
            result = await self.execute_step(step, context)
            results.append(result)

            if result.outputs:
                context = context.child(variables={**context.variables, **result.outputs})

            if result.failed and not result.tolerated:
                logger.info(f"Step '{step.name}' failed; skipping remaining steps in sequence")
                break
        return results

    async def _run_parallel(self, step: Step, context: StepContext) -> list[StepResult]:
        semaphore = asyncio.Semaphore(step.limit) if step.limit else None

        async def run_child(child: Step) -> StepResult:
            if semaphore is None:
                return await self.execute_step(child, context)
            async with semaphore:
                return await self.execute_step(child, context)

        # Join every child before re-raising a fatal error so none outlives the run
        outcomes = await asyncio.gather(*(run_child(child) for child in step.steps), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    def _guard_scope(self, context: StepContext) -> dict[str, Any]:
        return {
            **context.variables,
            "variables": context.variables,
            "collect_mode": context.collect_mode,
            "cwd": str(context.cwd),
        }

    async def execute_step(self, step: Step, context: StepContext) -> StepResult:
        """
        Execute one step, including composite children.

        Ordinary failures (tool exceptions, timeouts, bad guard expressions)
        become a failed result. Collection-integrity, recipe validation and
        variable resolution errors (``FATAL_ERRORS``) propagate.
        """
        started = time.monotonic()
        self._show_progress(f"  {step.name} ({step.tool})")
        context = context.child(step_path=(*context.step_path, step.name))

        try:
            if step.when and step.tool != "conditional":
                if not evaluate_condition(step.when, self._guard_scope(context), context.condition_functions()):
                    logger.debug(f"Skipping '{step.name}': guard '{step.when}' is false")
                    return StepResult(name=step.name, tool=step.tool, status="skipped")

            if step.tool == "sequence":
                result = self._composite(step, await self._run_sequence(step.steps, context))
            elif step.tool == "parallel":
                result = self._composite(step, await self._run_parallel(step, context))
            elif step.tool == "conditional":
                result = await self._run_conditional(step, context)
            else:
                result = await self._run_tool(step, context)
        except FATAL_ERRORS:
            raise
        except ExpressionError as e:
            result = self._failed(step, f"Step '{step.name}': condition error: {e}")
        except asyncio.TimeoutError:
            result = self._failed(step, str(StepTimeoutError(step.name, step.timeout or context.step_timeout)))
        except Exception as e:
            logger.debug(f"Step '{step.name}' raised", exc_info=True)
            result = self._failed(step, str(e))

        if result.failed:
            result.tolerated = step.on_error == "continue"
            self._show_progress(f"  {step.name} failed: {result.error}", "error")
        elif result.status == "completed" and step.output:
            result.outputs = {**result.outputs, **self._evaluate_outputs(step, result, context)}

        result.duration = time.monotonic() - started
        return result

    async def _run_tool(self, step: Step, context: StepContext) -> StepResult:
        tool = self.registry.get(step.tool)
        if context.recursion is not None:
            context.recursion.increment_steps()
        timeout = step.timeout or context.step_timeout
        logger.debug(f"Dispatching '{step.name}' to {type(tool).__name__}")
        return await asyncio.wait_for(tool.execute(step, context), timeout=timeout)

    async def _run_conditional(self, step: Step, context: StepContext) -> StepResult:
        assert step.when is not None, "Conditional step must have when"

        matched = evaluate_condition(step.when, self._guard_scope(context), context.condition_functions())
        branch = step.steps if matched else step.else_steps
        if not branch:
            logger.debug(f"Conditional '{step.name}': no branch for {matched}")
            return StepResult(name=step.name, tool=step.tool, status="skipped")
        result = self._composite(step, await self._run_sequence(branch, context))
        result.output = {"branch": "then" if matched else "else"}
        return result

    @staticmethod
    def _composite(step: Step, children: list[StepResult]) -> StepResult:
        failed = [child for child in children if child.failed and not child.tolerated]
        result = StepResult(name=step.name, tool=step.tool, children=children)
        if failed:
            result.status = "failed"
            result.error = f"{len(failed)} of {len(children)} child steps failed: " + ", ".join(
                child.name for child in failed
            )
        return result

    @staticmethod
    def _failed(step: Step, error: str) -> StepResult:
        logger.warning(error)
        return StepResult(name=step.name, tool=step.tool, status="failed", error=error)

    def _evaluate_outputs(self, step: Step, result: StepResult, context: StepContext) -> dict[str, Any]:
        """Evaluate a step's ``output`` expressions; failures yield None."""
        scope = {
            **context.variables,
            "result": result.output if result.output is not None else {},
            "step": step.name,
            "status": result.status,
        }
        outputs: dict[str, Any] = {}
        for name, expression in (step.output or {}).items():
            try:
                if "{{" in expression or "{%" in expression:
                    outputs[name] = context.renderer.render(expression, scope).strip()
                else:
                    outputs[name] = evaluate_expression(expression, scope, context.condition_functions())
            except (ExpressionError, TemplateError) as e:
                logger.warning(f"Step '{step.name}': output '{name}' could not be evaluated: {e}")
                outputs[name] = None
        return outputs
