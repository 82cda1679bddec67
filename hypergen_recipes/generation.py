"""Prompt building and output checks for ``ai`` generation steps.

Context files are read into the prompt within a token budget, estimated at
four characters per token. Generated text is checked against the step's
guardrails, and failed checks can be retried with the errors fed back to
the model.
"""

import ast
import json
import logging
import math
import re
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

import yaml

from .errors import GenerationError
from .models import Guardrails
from .transports import Transport
from .transports import strip_fences

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
LARGE_PROMPT_TOKENS = 100_000
TRUNCATION_MARKER = "\n... [truncated]"

_IMPORT_PATTERN = re.compile(
    r"""(?:import\s+(?:[\w{}\s,*]+\s+from\s+)?['"]([^'"]+)['"]|require\s*\(\s*['"]([^'"]+)['"]\s*\))"""
)

_NODE_BUILTINS = frozenset(
    {
        "assert",
        "buffer",
        "child_process",
        "cluster",
        "crypto",
        "dns",
        "events",
        "fs",
        "http",
        "https",
        "net",
        "os",
        "path",
        "process",
        "querystring",
        "readline",
        "stream",
        "timers",
        "tls",
        "url",
        "util",
        "vm",
        "worker_threads",
        "zlib",
    }
)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class ContextBundle:
    """Files read for a prompt, in the order they were collected."""

    files: dict[str, str] = field(default_factory=dict)
    estimated_tokens: int = 0
    truncated: bool = False


def collect_context(
    cwd: Path,
    patterns: list[str],
    max_tokens: int | None = None,
    overflow: str = "skip",
) -> ContextBundle:
    """
    Read files matching ``patterns`` (relative to ``cwd``) within a token budget.

    A file that would exceed ``max_tokens`` is skipped, cut to the remaining
    budget (``truncate``), or rejected (``error``).

    Raises:
        ValueError: If ``overflow`` is ``error`` and the budget is exceeded
    """
    bundle = ContextBundle()
    budget = max_tokens if max_tokens is not None else math.inf

    for pattern in patterns:
        if Path(pattern).is_absolute():
            matches = [Path(pattern)]
        else:
            matches = sorted(cwd.glob(pattern))
        if not matches:
            logger.debug(f"No context files match '{pattern}'")

        for match in matches:
            if not match.is_file():
                continue
            name = str(match.relative_to(cwd)) if match.is_relative_to(cwd) else str(match)
            if name in bundle.files:
                continue

            content = match.read_text(encoding="utf-8")
            tokens = estimate_tokens(content)
            if bundle.estimated_tokens + tokens <= budget:
                bundle.files[name] = content
                bundle.estimated_tokens += tokens
                continue

            if overflow == "error":
                raise ValueError(
                    f"Context exceeds token budget ({bundle.estimated_tokens + tokens} > {max_tokens}): {name}"
                )
            bundle.truncated = True
            remaining_chars = int(budget - bundle.estimated_tokens) * CHARS_PER_TOKEN
            if overflow == "truncate" and remaining_chars > 100:
                bundle.files[name] = content[:remaining_chars] + TRUNCATION_MARKER
                bundle.estimated_tokens = int(budget)
                logger.debug(f"Truncated context file {name} to fit the token budget")
            else:
                logger.debug(f"Skipping context file {name}: would exceed the token budget")

    return bundle


def guardrail_rules(guardrails: Guardrails) -> str | None:
    """Guardrails phrased as instructions for the system prompt."""
    rules = []
    if guardrails.validate_syntax:
        rules.append(f"- Output MUST be valid {guardrails.validate_syntax} syntax.")
    if guardrails.allowed_imports:
        rules.append(f"- Only use imports from these packages: {', '.join(guardrails.allowed_imports)}.")
    if guardrails.blocked_imports:
        rules.append(f"- Do NOT import from: {', '.join(guardrails.blocked_imports)}.")
    if guardrails.require_known_imports:
        rules.append("- Only import packages that exist in the project's package.json.")
    if guardrails.max_output_length:
        rules.append(f"- Output must be at most {guardrails.max_output_length} characters.")
    if not rules:
        return None
    return "## Rules\n\n" + "\n".join(rules)


@dataclass
class GenerationPrompt:
    """System and user messages for one generation request."""

    system: str
    user: str
    context: ContextBundle = field(default_factory=ContextBundle)

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.system) + estimate_tokens(self.user)


def build_prompt(
    prompt: str,
    system: str | None = None,
    guardrails: Guardrails | None = None,
    examples: list[dict[str, Any]] | None = None,
    context: ContextBundle | None = None,
) -> GenerationPrompt:
    """
    Assemble the messages for an ``ai`` step.

    The system message is the step's system prompt followed by the guardrail
    rules. The user message has ``## Context`` (one fenced block per file),
    ``## Examples`` and ``## Task`` sections, in that order.
    """
    context = context or ContextBundle()
    rules = guardrail_rules(guardrails) if guardrails else None
    system_text = "\n\n".join(part for part in (system, rules) if part)

    parts: list[str] = []
    if context.files:
        parts.append("## Context\n")
        for name, content in context.files.items():
            language = Path(name).suffix.lstrip(".")
            parts.append(f"### {name}\n```{language}\n{content}\n```\n")
        if context.truncated:
            parts.append("> Note: Some context was truncated to fit the token budget.\n")

    if examples:
        parts.append("## Examples\n")
        for example in examples:
            if example.get("label"):
                parts.append(f"### {example['label']}")
            if example.get("input"):
                parts.append(f"**Input:**\n{example['input']}\n")
            parts.append(f"**Output:**\n{example['output']}\n")

    parts.append("## Task\n")
    parts.append(prompt)

    assembled = GenerationPrompt(system=system_text, user="\n".join(parts), context=context)
    if assembled.estimated_tokens > LARGE_PROMPT_TOKENS:
        logger.warning(f"Generation prompt is very large (~{assembled.estimated_tokens} tokens)")
    return assembled


@dataclass
class OutputCheck:
    """Result of checking generated output against guardrails."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors


def extract_imports(source: str) -> list[str]:
    """
    Package names imported by JavaScript or TypeScript source.

    Relative paths, subpath aliases (``#``) and Node built-ins are ignored;
    scoped packages keep their scope (``@scope/name``).
    """
    packages: list[str] = []
    for match in _IMPORT_PATTERN.finditer(source):
        specifier = match.group(1) or match.group(2)
        if specifier.startswith((".", "/", "#", "node:")) or specifier in _NODE_BUILTINS:
            continue
        segments = specifier.split("/")
        name = "/".join(segments[:2]) if specifier.startswith("@") else segments[0]
        if name not in packages:
            packages.append(name)
    return packages


def _syntax_error(output: str, language: str) -> str | None:
    try:
        if language == "json":
            json.loads(output)
        elif language == "yaml":
            yaml.safe_load(output)
        elif language == "python":
            ast.parse(output)
    except json.JSONDecodeError as e:
        return f"JSON syntax error: {e}"
    except yaml.YAMLError as e:
        return f"YAML syntax error: {e}"
    except SyntaxError as e:
        return f"python syntax error at line {e.lineno}: {e.msg}"
    return None


def _known_packages(cwd: Path, check: OutputCheck) -> set[str] | None:
    package_json = cwd / "package.json"
    if not package_json.is_file():
        check.warnings.append("No package.json found for import validation")
        return None
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        check.warnings.append("Could not read package.json for import validation")
        return None
    known: set[str] = set()
    for section in ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies"):
        known.update(data.get(section) or {})
    return known


def check_output(output: str, guardrails: Guardrails, cwd: Path) -> OutputCheck:
    """Check generated output; empty output always fails."""
    check = OutputCheck()
    stripped = output.strip()
    if not stripped:
        check.errors.append("AI returned empty output")
        return check
    if len(stripped) < 10:
        check.warnings.append("AI output is suspiciously short")

    if guardrails.validate_syntax:
        error = _syntax_error(output, guardrails.validate_syntax)
        if error:
            check.errors.append(error)

    if guardrails.allowed_imports is not None or guardrails.blocked_imports or guardrails.require_known_imports:
        imports = extract_imports(output)
        for name in imports:
            if guardrails.blocked_imports and name in guardrails.blocked_imports:
                check.errors.append(f'Blocked import: "{name}" is not allowed')
            if guardrails.allowed_imports is not None and name not in guardrails.allowed_imports:
                allowed = ", ".join(guardrails.allowed_imports)
                check.errors.append(f'Import "{name}" is not in the allowed list: {allowed}')
        if imports and guardrails.require_known_imports:
            known = _known_packages(cwd, check)
            if known is not None:
                unknown = [name for name in imports if name not in known]
                check.errors.extend(f'Import "{name}" not found in package.json' for name in unknown)

    if guardrails.max_output_length and len(output) > guardrails.max_output_length:
        check.errors.append(f"Output length ({len(output)}) exceeds maximum ({guardrails.max_output_length})")

    logger.debug(f"Output check: {len(check.errors)} errors, {len(check.warnings)} warnings")
    return check


def build_feedback(check: OutputCheck, previous_output: str) -> str:
    """Correction section appended to the prompt when retrying with feedback."""
    lines = ["## Correction Required", "", "Your previous output had the following errors:"]
    lines.extend(f"- {error}" for error in check.errors)
    lines.extend(
        [
            "",
            "Fix these errors and regenerate. Do NOT include any explanation, only the corrected output.",
            "",
            "## Previous (Incorrect) Output",
            "",
            "```",
            previous_output,
            "```",
        ]
    )
    return "\n".join(lines)


@dataclass
class GenerationResult:
    output: str
    attempts: int
    warnings: list[str] = field(default_factory=list)
    used_fallback: bool = False


async def generate(
    transport: Transport,
    prompt: GenerationPrompt,
    guardrails: Guardrails,
    cwd: Path,
    step_name: str,
) -> GenerationResult:
    """
    Send a prompt through a transport and check the reply.

    A reply that fails its checks is retried up to ``guardrails.retries``
    times. With ``guardrails.feedback`` each retry carries the errors and
    the rejected output.

    Raises:
        GenerationError: If every attempt fails and no fallback is configured
        TransportError: If the transport itself fails
    """
    user = prompt.user
    check = OutputCheck()
    output = ""
    attempts = guardrails.retries + 1

    for attempt in range(1, attempts + 1):
        output = strip_fences(await transport.send(user, system=prompt.system or None))
        check = check_output(output, guardrails, cwd)
        if check.passed:
            return GenerationResult(output=output, attempts=attempt, warnings=check.warnings)

        logger.info(f"Step '{step_name}': attempt {attempt}/{attempts} failed checks: {'; '.join(check.errors)}")
        if guardrails.feedback:
            user = f"{prompt.user}\n\n{build_feedback(check, output)}"

    if guardrails.fallback is not None:
        logger.warning(f"Step '{step_name}': using fallback output after {attempts} failed attempts")
        return GenerationResult(
            output=guardrails.fallback,
            attempts=attempts,
            warnings=[*check.warnings, f"Used fallback output: {'; '.join(check.errors)}"],
            used_fallback=True,
        )
    raise GenerationError(step_name, check.errors, attempts)
