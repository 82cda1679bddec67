"""Turn collected AI blocks into a single self-contained request document."""

import json
import logging

from .collector import AiBlockEntry
from .collector import AiCollector

logger = logging.getLogger(__name__)

DEFAULT_ANSWERS_PATH = "./ai-answers.json"


class PromptAssembler:
    """Builds the markdown request an AI agent (or a human) answers with JSON.

    The document lists global and per-block context, every prompt with its
    expected output format, the JSON response shape, and optionally the
    command to re-run with ``--answers``. Output depends only on the
    collector contents and the arguments, and entries keep collection order.
    """

    def assemble(
        self,
        collector: AiCollector,
        original_command: str,
        answers_path: str | None = None,
        include_callback: bool = True,
    ) -> str:
        """
        Assemble the request document.

        Args:
            collector: Collector populated by a collect-mode pass
            original_command: Command line to re-run for the answer pass
            answers_path: Suggested answers file path
            include_callback: Whether to append the re-run instruction

        Returns:
            The assembled markdown document
        """
        entries = collector.get_entries()
        global_contexts = collector.get_global_contexts()
        answers_path = answers_path or DEFAULT_ANSWERS_PATH

        parts: list[str] = ["# Hypergen AI Generation Request\n"]

        has_block_contexts = any(entry.contexts for entry in entries.values())
        if global_contexts or has_block_contexts:
            parts.append("## Context\n")
            if global_contexts:
                parts.append("### Global Context\n")
                for ctx in global_contexts:
                    parts.append(ctx)
                    parts.append("")
            for key, entry in entries.items():
                if entry.contexts:
                    parts.append(f"### Context for `{key}`\n")
                    for ctx in entry.contexts:
                        parts.append(ctx)
                        parts.append("")

        parts.append("## Prompts\n")
        for key, entry in entries.items():
            parts.extend(self._format_entry(key, entry))

        parts.append("## Response Format\n")
        parts.append("Respond with a JSON object whose keys are exactly the prompt keys above:\n")
        parts.append("```json")
        parts.append(json.dumps(self.response_schema(entries), indent=2))
        parts.append("```\n")

        if include_callback:
            parts.append("## Instructions\n")
            parts.append("Save your response as JSON to a file and run:\n")
            parts.append("```")
            parts.append(f"{original_command} --answers {answers_path}")
            parts.append("```\n")

        result = "\n".join(parts)
        logger.debug(f"Assembled prompt ({len(result)} chars, {len(entries)} entries)")
        return result

    def _format_entry(self, key: str, entry: AiBlockEntry) -> list[str]:
        lines = [f"### `{key}`\n", entry.prompt, ""]
        if entry.output_description.strip():
            lines.append("**Expected output format:**\n")
            lines.append(entry.output_description)
            lines.append("")
        if entry.examples:
            lines.append("**Examples:**\n")
            for example in entry.examples:
                lines.append(example)
                lines.append("")
        return lines

    @staticmethod
    def response_schema(entries: dict[str, AiBlockEntry]) -> dict[str, str]:
        """Placeholder JSON object showing the expected answer keys."""
        return {
            key: "<see format above>" if entry.output_description.strip() else "<your answer>"
            for key, entry in entries.items()
        }
