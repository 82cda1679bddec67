"""AI generation steps."""

import logging
from pathlib import Path
from typing import Any

from ..config import AiConfig
from ..errors import GenerationError
from ..generation import GenerationPrompt
from ..generation import GenerationResult
from ..generation import build_prompt
from ..generation import check_output
from ..generation import collect_context
from ..generation import generate
from ..models import Guardrails
from ..models import Step
from ..rendering import format_answer
from ..transports import Transport
from ..transports import resolve_transport
from .base import StepContext
from .base import StepResult
from .base import Tool

logger = logging.getLogger(__name__)


class AiTool(Tool):
    """Generates text from a prompt and writes it to a file or a variable.

    With the interactive stdout transport the prompt joins the AI blocks
    collected from templates, and the write pass reads the answer under the
    step's ``key``. Other transports are called directly; the reply is
    generated once per run and reused by every pass.
    """

    kind = "ai"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        assert step.prompt is not None, "AI step must have prompt"

        guardrails = step.guardrails or Guardrails()
        key = step.key or step.name
        prompt = self._build(step, context, guardrails)

        if context.answers is not None and key in context.answers:
            generated = self._from_answer(step, key, context.answers[key], guardrails, context.cwd)
        elif self._transport(context).interactive:
            if context.collect_mode:
                context.collector.add_entry(
                    key,
                    contexts=[prompt.system] if prompt.system else [],
                    prompt=prompt.user,
                    output_description="The generated content only, without explanation.",
                    source_file=f"step:{step.name}",
                )
                return self.result(step, output={"key": key, "collected": True})
            raise ValueError(f"Step '{step.name}': no answer provided for AI key '{key}'")
        else:
            found, generated = context.cached()
            if not found:
                logger.debug(f"Generating '{step.name}' (~{prompt.estimated_tokens} tokens)")
                generated = await generate(self._transport(context), prompt, guardrails, context.cwd, step.name)
                context.cache(generated)

        result = self.result(
            step,
            output={
                "text": generated.output,
                "attempts": generated.attempts,
                "used_fallback": generated.used_fallback,
            },
            warnings=[f"Step '{step.name}': {warning}" for warning in generated.warnings],
        )
        if step.variable:
            result.outputs[step.variable] = generated.output
        if step.to:
            self._write(step, generated.output, context, result)
        return result

    @staticmethod
    def _build(step: Step, context: StepContext, guardrails: Guardrails) -> GenerationPrompt:
        patterns = [str(context.substitute(pattern)) for pattern in step.context_files]
        bundle = collect_context(context.cwd, patterns, step.max_context_tokens, step.overflow)
        return build_prompt(
            context.substitute(step.prompt),
            system=context.substitute(step.system) if step.system else None,
            guardrails=guardrails,
            examples=context.substitute(step.examples),
            context=bundle,
        )

    @staticmethod
    def _transport(context: StepContext) -> Transport:
        options = context.resolve_options
        if options is not None and options.transport is not None:
            return options.transport
        config = options.ai_config if options is not None and options.ai_config is not None else AiConfig()
        return resolve_transport(config)

    @staticmethod
    def _from_answer(step: Step, key: str, answer: Any, guardrails: Guardrails, cwd: Path) -> GenerationResult:
        text = format_answer(answer)
        check = check_output(text, guardrails, cwd)
        if not check.passed:
            raise GenerationError(step.name, check.errors)
        logger.debug(f"Using supplied answer for AI key '{key}'")
        return GenerationResult(output=text, attempts=0, warnings=check.warnings)

    @staticmethod
    def _write(step: Step, text: str, context: StepContext, result: StepResult) -> None:
        target = context.resolve_path(context.substitute(step.to))
        if context.collect_mode:
            return

        exists = target.exists()
        if exists and not (step.overwrite or context.force):
            logger.info(f"Skipping existing file {target} (use overwrite/force to replace)")
            result.output["skipped"] = str(target)
            return

        if not text.endswith("\n"):
            text += "\n"
        if not context.dry_run:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")

        if exists:
            result.files_modified.append(str(target))
        else:
            result.files_created.append(str(target))
