"""Registered code actions and codemods."""

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..models import Step
from .base import StepContext
from .base import StepResult
from .base import Tool

logger = logging.getLogger(__name__)

ActionFunction = Callable[[dict[str, Any], "ActionContext"], Any]
CodemodFunction = Callable[[str, dict[str, Any], Path], str]

_ACTIONS: dict[str, ActionFunction] = {}
_CODEMODS: dict[str, CodemodFunction] = {}


@dataclass
class ActionContext:
    """What an action can see about the current run."""

    variables: dict[str, Any]
    cwd: Path
    collect_mode: bool
    dry_run: bool
    answers: dict[str, Any] | None = None


def action(name: str) -> Callable[[ActionFunction], ActionFunction]:
    """Register a function as a recipe action.

    The function receives ``(parameters, ActionContext)`` and may be async.
    """

    def decorator(fn: ActionFunction) -> ActionFunction:
        if name in _ACTIONS and _ACTIONS[name] is not fn:
            logger.warning(f"Replacing registered action '{name}'")
        _ACTIONS[name] = fn
        return fn

    return decorator


def codemod(name: str) -> Callable[[CodemodFunction], CodemodFunction]:
    """Register a function as a codemod: ``(content, parameters, path) -> new content``."""

    def decorator(fn: CodemodFunction) -> CodemodFunction:
        _CODEMODS[name] = fn
        return fn

    return decorator


def get_action(name: str) -> ActionFunction:
    try:
        return _ACTIONS[name]
    except KeyError:
        available = ", ".join(sorted(_ACTIONS)) or "none"
        raise ValueError(f"Unknown action '{name}'. Registered actions: {available}") from None


def get_codemod(name: str) -> CodemodFunction:
    try:
        return _CODEMODS[name]
    except KeyError:
        available = ", ".join(sorted(_CODEMODS)) or "none"
        raise ValueError(f"Unknown codemod '{name}'. Registered codemods: {available}") from None


class ActionTool(Tool):
    """Calls a registered action. Actions run in both passes and decide for themselves."""

    kind = "action"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.action is not None, "Action step must have action"

        fn = get_action(step.action)
        parameters = context.substitute(step.parameters)
        action_context = ActionContext(
            variables=dict(context.variables),
            cwd=context.cwd,
            collect_mode=context.collect_mode,
            dry_run=context.dry_run,
            answers=context.answers,
        )

        value = fn(parameters, action_context)
        if inspect.isawaitable(value):
            value = await value
        return self.result(step, output=value)


class CodemodTool(Tool):
    """Applies a registered codemod to every file matching the step's globs."""

    kind = "codemod"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.codemod is not None, "Codemod step must have codemod"

        fn = get_codemod(step.codemod)
        result = self.result(step, output={"changed": [], "unchanged": []})
        if context.collect_mode:
            return result

        parameters = context.substitute(step.parameters)
        paths: list[Path] = []
        for pattern in step.files:
            paths.extend(sorted(p for p in context.cwd.glob(str(context.substitute(pattern))) if p.is_file()))

        for path in dict.fromkeys(paths):
            original = path.read_text(encoding="utf-8")
            updated = fn(original, parameters, path)
            if updated == original:
                result.output["unchanged"].append(str(path))
                continue

            if not context.dry_run:
                if step.backup:
                    path.with_name(path.name + ".bak").write_text(original, encoding="utf-8")
                path.write_text(updated, encoding="utf-8")
            result.output["changed"].append(str(path))
            result.files_modified.append(str(path))

        return result
