"""File-system tools: ensure-dirs, patch and query."""

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from ..expression_evaluator import ExpressionError
from ..expression_evaluator import evaluate_expression
from ..models import Step
from .base import StepContext
from .base import StepResult
from .base import Tool

logger = logging.getLogger(__name__)

_MISSING = object()


def infer_format(path: Path, explicit: str | None = None) -> str:
    """Infer a data file format from its extension."""
    if explicit:
        return explicit
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return "yaml"
    if suffix == ".env" or path.name.startswith(".env"):
        return "env"
    return "json"


def parse_env(text: str) -> dict[str, str]:
    """Parse KEY=VALUE lines, ignoring comments and blank lines."""
    data: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :]
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        data[key.strip()] = value
    return data


def load_data_file(path: Path, fmt: str) -> Any:
    text = path.read_text(encoding="utf-8")
    if fmt == "yaml":
        return yaml.safe_load(text) or {}
    if fmt == "env":
        return parse_env(text)
    return json.loads(text) if text.strip() else {}


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` into a copy of ``base``; nested dicts merge, other values replace."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def lookup(data: Any, dotted_key: str) -> Any:
    """Follow a dotted key through nested mappings; returns a sentinel when absent."""
    value = data
    for part in dotted_key.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


class EnsureDirsTool(Tool):
    """Creates directories, reporting which already existed."""

    kind = "ensure-dirs"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        created: list[str] = []
        existing: list[str] = []

        for raw_path in step.paths:
            path = context.resolve_path(context.substitute(raw_path))
            if path.is_dir():
                existing.append(str(path))
                continue
            if path.exists():
                raise ValueError(f"Step '{step.name}': {path} exists and is not a directory")
            if not (context.collect_mode or context.dry_run):
                path.mkdir(parents=True, exist_ok=True)
            created.append(str(path))

        return self.result(step, output={"created": created, "existing": existing})


class PatchTool(Tool):
    """Deep-merges values into a JSON or YAML file."""

    kind = "patch"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.file is not None, "Patch step must have file"

        path = context.resolve_path(context.substitute(step.file))
        fmt = infer_format(path, step.format)
        if fmt not in ("json", "yaml"):
            raise ValueError(f"Step '{step.name}': cannot patch {fmt} files")

        existed = path.exists()
        if existed:
            current = load_data_file(path, fmt)
            if not isinstance(current, dict):
                raise ValueError(f"Step '{step.name}': {path} does not contain a mapping")
        elif step.create_if_missing:
            current = {}
        else:
            raise FileNotFoundError(f"Step '{step.name}': file to patch not found: {path}")

        merged = deep_merge(current, context.substitute(step.merge or {}))
        result = self.result(step, output={"file": str(path), "changed": merged != current or not existed})

        if not result.output["changed"] or context.collect_mode:
            return result

        if not context.dry_run:
            path.parent.mkdir(parents=True, exist_ok=True)
            if fmt == "yaml":
                text = yaml.safe_dump(merged, sort_keys=False, indent=step.indent)
            else:
                text = json.dumps(merged, indent=step.indent) + "\n"
            path.write_text(text, encoding="utf-8")

        if existed:
            result.files_modified.append(str(path))
        else:
            result.files_created.append(str(path))
        return result


class QueryTool(Tool):
    """Reads a JSON, YAML or .env file and evaluates checks against it.

    Read-only, so it runs in collect passes too. The output is
    ``{data, checks, passed, value}`` for use in ``output`` expressions.
    """

    kind = "query"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.file is not None, "Query step must have file"

        path = context.resolve_path(context.substitute(step.file))
        if not path.exists():
            raise FileNotFoundError(f"Step '{step.name}': file to query not found: {path}")

        data = load_data_file(path, infer_format(path, step.format))

        checks = []
        for check in step.checks:
            key = str(check.get("key", ""))
            value = lookup(data, key)
            found = value is not _MISSING
            passed = found if check.get("exists", True) else not found
            if passed and "equals" in check:
                passed = found and value == check["equals"]
            checks.append({"key": key, "passed": passed, "value": value if found else None})

        value = None
        if step.expression:
            scope = {**data, "data": data} if isinstance(data, dict) else {"data": data}
            try:
                value = evaluate_expression(step.expression, scope, context.condition_functions())
            except ExpressionError as e:
                raise ValueError(f"Step '{step.name}': {e}") from e

        passed = all(check["passed"] for check in checks)
        if step.expression:
            passed = passed and bool(value)

        return self.result(step, output={"data": data, "checks": checks, "passed": passed, "value": value})
