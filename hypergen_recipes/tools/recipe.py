"""Sub-recipe composition."""

import dataclasses
import logging
from pathlib import Path

from ..errors import RecipeValidationError
from ..models import Recipe
from ..models import Step
from ..variables import ResolveOptions
from ..variables import VariableResolver
from .base import RecursionState
from .base import StepContext
from .base import StepResult
from .base import Tool

logger = logging.getLogger(__name__)

RECIPE_FILENAMES = ("recipe.yml", "recipe.yaml")


def resolve_recipe_path(reference: str, cwd: Path, base_dir: Path | None = None) -> Path:
    """
    Resolve a recipe reference to a file.

    Relative references are tried against ``base_dir`` (the referencing
    recipe's directory) first, then ``cwd``. A directory resolves to the
    recipe file inside it.
    """
    path = Path(reference).expanduser()
    if path.is_absolute():
        candidates = [path]
    else:
        candidates = [cwd / path]
        if base_dir is not None:
            candidates.insert(0, base_dir / path)

    for candidate in candidates:
        if candidate.is_file():
            return candidate
        if candidate.is_dir():
            for filename in RECIPE_FILENAMES:
                if (candidate / filename).is_file():
                    return candidate / filename

    raise FileNotFoundError(f"Recipe not found: {reference}")


class RecipeTool(Tool):
    """Runs another recipe as a step.

    The sub-recipe sees only ``variable_overrides`` (rendered against the
    parent's variables) unless ``inherit_variables`` is set. Its step
    results become this step's children.
    """

    kind = "recipe"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.recipe is not None, "Recipe step must have recipe path"
        if context.executor is None:
            raise RuntimeError(f"Step '{step.name}': sub-recipes need an executor in the step context")

        path = resolve_recipe_path(str(context.substitute(step.recipe)), context.cwd, context.recipe_dir)
        sub_recipe = Recipe.from_yaml(path)
        errors = sub_recipe.validate()
        if errors:
            raise RecipeValidationError(errors, sub_recipe.name)

        recursion = context.recursion or RecursionState(recipe_stack=[context.recipe.name if context.recipe else ""])
        child_state = recursion.enter_recipe(sub_recipe.name, step.recursion)

        # Both passes of a run must see the same values, so resolve only once
        found, variables = context.cached()
        if not found:
            overrides = context.substitute(step.variable_overrides or {})
            provided = {**context.variables, **overrides} if step.inherit_variables else overrides
            options = dataclasses.replace(
                context.resolve_options or ResolveOptions(),
                recipe_name=sub_recipe.name,
                recipe_description=sub_recipe.description,
            )
            variables = await VariableResolver().resolve(sub_recipe.variables, provided, options)
            context.cache(variables)

        logger.info(f"Entering sub-recipe '{sub_recipe.name}' (depth {child_state.current_depth})")
        children = await context.executor.execute(
            sub_recipe.steps,
            context.child(variables=dict(variables), recipe=sub_recipe, recursion=child_state),
        )

        # Propagate total steps back to parent state
        recursion.total_steps = child_state.total_steps

        result = self.result(
            step,
            children=children,
            output={"recipe": sub_recipe.name, "path": str(path), "variables": dict(variables)},
        )
        if any(child.failed and not child.tolerated for child in children):
            result.status = "failed"
            result.error = f"Sub-recipe '{sub_recipe.name}' failed"
        return result
