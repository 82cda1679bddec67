"""Template rendering and file generation."""

import logging
import re
from pathlib import Path
from typing import Any

from ..models import Step
from .base import StepContext
from .base import StepResult
from .base import Tool

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".j2", ".jinja", ".jinja2", ".t")


class TemplateTool(Tool):
    """Renders a template file (or a directory of templates) and writes the results.

    Targets come from the template's front-matter ``to`` or the step's ``to``.
    During a collect pass templates are rendered so AI blocks reach the
    collector, but nothing is written.

    Front-matter keys:
    - to: target path
    - force: overwrite an existing target
    - unless_exists: skip when the target exists
    - skip_if: skip when the existing target content matches this regex
    - inject: insert into an existing file using after/before/prepend/append
    """

    kind = "template"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.template is not None, "Template step must have template"

        template_path = self._resolve_template(context.substitute(step.template), context)
        variables = {**context.variables, **context.substitute(step.variables or {})}
        render_context: dict[str, Any] = {
            **variables,
            "variables": variables,
            "recipe": self._recipe_meta(context),
            "step": {"name": step.name, "description": step.description},
        }

        if template_path.is_dir():
            sources = sorted(p for p in template_path.rglob("*") if p.is_file() and p.suffix in TEMPLATE_SUFFIXES)
        else:
            sources = [template_path]

        result = self.result(step, output={"rendered": [], "skipped": []})

        for source in sources:
            rendered = context.renderer.render_file(
                source,
                render_context,
                collector=context.collector,
                collect_mode=context.collect_mode,
                answers=context.answers,
            )
            result.output["rendered"].append(str(source))

            if context.collect_mode:
                continue

            target = self._target(step, source, template_path, rendered.front_matter, render_context, context)
            if target is None:
                logger.debug(f"Template {source} has no target; nothing written")
                continue

            self._write(step, target, rendered.content, rendered.front_matter, context, result)

        return result

    @staticmethod
    def _recipe_meta(context: StepContext) -> dict[str, Any]:
        if context.recipe is None:
            return {}
        return {
            "name": context.recipe.name,
            "version": context.recipe.version,
            "description": context.recipe.description,
        }

    @staticmethod
    def _resolve_template(reference: str, context: StepContext) -> Path:
        path = Path(reference).expanduser()
        if path.is_absolute():
            candidates = [path]
        else:
            candidates = [context.cwd / path]
            if context.recipe_dir is not None:
                candidates.insert(0, context.recipe_dir / path)
        for candidate in candidates:
            if candidate.exists():
                return candidate
        raise FileNotFoundError(f"Template not found: {reference}")

    def _target(
        self,
        step: Step,
        source: Path,
        template_root: Path,
        front_matter: dict[str, Any],
        render_context: dict[str, Any],
        context: StepContext,
    ) -> Path | None:
        if front_matter.get("to"):
            return context.resolve_path(str(front_matter["to"]))
        if not step.to:
            return None
        to = context.resolve_path(context.renderer.render(step.to, render_context))
        if template_root.is_dir():
            relative = source.relative_to(template_root)
            if relative.suffix in TEMPLATE_SUFFIXES:
                relative = relative.with_suffix("")
            return to / relative
        return to

    def _write(
        self,
        step: Step,
        target: Path,
        content: str,
        front_matter: dict[str, Any],
        context: StepContext,
        result: StepResult,
    ) -> None:
        exists = target.exists()

        if exists and front_matter.get("unless_exists"):
            result.output["skipped"].append(str(target))
            return

        skip_if = front_matter.get("skip_if")
        if exists and skip_if and re.search(str(skip_if), target.read_text(encoding="utf-8")):
            result.output["skipped"].append(str(target))
            return

        if front_matter.get("inject"):
            if not exists:
                raise FileNotFoundError(f"Step '{step.name}': cannot inject into missing file {target}")
            content = self._inject(target.read_text(encoding="utf-8"), content, front_matter, step)
            if not context.dry_run:
                target.write_text(content, encoding="utf-8")
            result.files_modified.append(str(target))
            return

        overwrite = step.overwrite or bool(front_matter.get("force")) or context.force
        if exists and not overwrite:
            logger.info(f"Skipping existing file {target} (use overwrite/force to replace)")
            result.output["skipped"].append(str(target))
            return

        if not context.dry_run:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        if exists:
            result.files_modified.append(str(target))
        else:
            result.files_created.append(str(target))

    @staticmethod
    def _inject(existing: str, content: str, front_matter: dict[str, Any], step: Step) -> str:
        if not content.endswith("\n"):
            content += "\n"
        if front_matter.get("prepend"):
            return content + existing
        if front_matter.get("append"):
            separator = "" if not existing or existing.endswith("\n") else "\n"
            return existing + separator + content

        for position in ("after", "before"):
            pattern = front_matter.get(position)
            if not pattern:
                continue
            lines = existing.splitlines(keepends=True)
            for index, line in enumerate(lines):
                if re.search(str(pattern), line):
                    if not line.endswith("\n"):
                        lines[index] = line + "\n"
                    insert_at = index + 1 if position == "after" else index
                    lines.insert(insert_at, content)
                    return "".join(lines)
            raise ValueError(f"Step '{step.name}': inject pattern '{pattern}' not found")

        raise ValueError(f"Step '{step.name}': inject requires one of after, before, prepend, append")
