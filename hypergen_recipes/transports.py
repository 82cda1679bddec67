"""AI transports: how assembled prompts reach an answerer.

Three kinds are supported, selected purely by ``AiConfig.mode``:

- ``stdout``: nothing is invoked; the prompt is handed back to the caller,
  who prints it and re-runs later with ``--answers``.
- ``command``: the prompt is passed to an external command (substituted for
  ``{prompt}`` or piped on stdin) and stdout is the answer.
- ``api``: the prompt is posted to a model provider over HTTP.
"""

import asyncio
import json
import logging
import re
import shlex
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Literal

import httpx

from .collector import AiBlockEntry
from .collector import AiCollector
from .config import PROVIDER_API_KEY_ENV_VARS
from .config import AiConfig
from .errors import ConfigError
from .errors import TransportError
from .models import VariableSpec
from .prompt_assembler import PromptAssembler
from .rendering import format_answer

logger = logging.getLogger(__name__)

NEEDS_ANSWERS_EXIT_CODE = 2

JSON_ONLY_INSTRUCTION = "IMPORTANT: Respond with ONLY a valid JSON object. No markdown fences, no explanation."

_FENCE_PATTERN = re.compile(r"^```[\w+-]*[ \t]*\n?(.*?)\n?\s*```$", re.DOTALL)


@dataclass
class TransportResult:
    """Outcome of asking a transport to answer collected AI blocks."""

    status: Literal["resolved", "deferred"]
    answers: dict[str, Any] = field(default_factory=dict)
    prompt: str | None = None
    exit_code: int = 0


@dataclass
class VariableRequest:
    """An unresolved variable handed to a transport for AI resolution."""

    spec: VariableSpec
    skipped_default: Any = None  # default suppressed by --no-defaults, shown as a hint

    @property
    def name(self) -> str:
        return self.spec.name


def strip_fences(text: str) -> str:
    """Remove a markdown code fence wrapping the whole text."""
    text = text.strip()
    match = _FENCE_PATTERN.match(text)
    if match:
        return match.group(1).strip()
    return text


def parse_json_object(raw: str) -> dict[str, Any]:
    """
    Extract a JSON object from model output.

    Strategies (in order):
    1. Whole output (after removing markdown fences) is a JSON object
    2. Substring from the first '{' to the last '}'

    Raises:
        TransportError: If no JSON object can be found
    """
    text = strip_fences(raw)
    if not text:
        raise TransportError("AI response was empty")

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise TransportError(f"AI response is not valid JSON: {text[:200]}") from None
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError as e:
            raise TransportError(f"AI response is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise TransportError("AI response must be a JSON object")
    return parsed


def parse_block_answers(raw: str, keys: list[str]) -> dict[str, Any]:
    """
    Parse a batched answer for AI blocks.

    Every expected key must be present. Non-string values are serialized to
    JSON text so templates always receive a string.
    """
    parsed = parse_json_object(raw)
    missing = [key for key in keys if key not in parsed]
    if missing:
        raise TransportError(f"AI response missing keys: {', '.join(missing)}")

    answers: dict[str, Any] = {}
    for key in keys:
        value = parsed[key]
        answers[key] = format_answer(value)
    return answers


def build_variable_prompt(
    requests: list[VariableRequest],
    resolved: dict[str, Any],
    recipe_name: str,
    recipe_description: str | None = None,
) -> str:
    """Describe the recipe, known variables and every unresolved variable for the model."""
    lines = ["# Variable Resolution Request", "", f"**Recipe:** {recipe_name}"]
    if recipe_description:
        lines.append(f"**Description:** {recipe_description}")
    lines.append("")

    if resolved:
        lines.extend(["## Already Known Variables", ""])
        for name, value in resolved.items():
            lines.append(f"- **{name}**: `{json.dumps(value, default=str)}`")
        lines.append("")

    lines.extend(
        [
            "## Variables to Resolve",
            "",
            "For each variable below, determine the best value based on the recipe context, "
            "already-known variables, and any constraints.",
            "",
        ]
    )

    for request in requests:
        spec = request.spec
        lines.append(f"### `{spec.name}`")
        lines.append(f"- **Type:** {spec.type}")
        if spec.required:
            lines.append("- **Required:** yes")
        if spec.description:
            lines.append(f"- **Description:** {spec.description}")
        if spec.suggestion is not None:
            lines.append(f"- **Suggestion:** `{json.dumps(spec.suggestion, default=str)}`")
        if request.skipped_default is not None:
            lines.append(f"- **Default (skipped):** `{json.dumps(request.skipped_default, default=str)}`")
        if spec.values:
            lines.append(f"- **Allowed values:** {', '.join(f'`{v}`' for v in spec.values)}")
        lines.append("")

    return "\n".join(lines)


def build_variable_system_prompt(requests: list[VariableRequest]) -> str:
    keys = ", ".join(f'"{request.name}"' for request in requests)
    return "\n".join(
        [
            "You are a code generation configuration assistant.",
            "You MUST respond with ONLY a valid JSON object, with no markdown fences and no text outside the JSON.",
            f"The JSON object must have exactly these keys: {keys}.",
            "Each value must match the type and constraints described in the prompt.",
            "For enum values, pick from the allowed values list. For arrays, provide a JSON array.",
            "Use the suggestion or skipped default as a strong hint when available.",
        ]
    )


def parse_variable_response(raw: str, requests: list[VariableRequest]) -> dict[str, Any]:
    """
    Parse AI-resolved variable values, coercing each to its declared type.

    Unparseable responses and missing keys mean the AI declined; those
    variables are simply absent from the result.
    """
    try:
        parsed = parse_json_object(raw)
    except TransportError as e:
        logger.warning(f"Ignoring AI variable response: {e}")
        return {}

    result: dict[str, Any] = {}
    for request in requests:
        if request.name not in parsed:
            logger.debug(f"AI response missing variable: {request.name}")
            continue
        value = request.spec.coerce(parsed[request.name])
        if value is not None:
            result[request.name] = value
    logger.debug(f"Parsed {len(result)}/{len(requests)} variables from AI response")
    return result


def build_block_prompt(entry: AiBlockEntry, global_contexts: list[str]) -> str:
    """Prompt for a single AI block, used by per-block command mode."""
    parts: list[str] = []
    contexts = [*global_contexts, *entry.contexts]
    if contexts:
        parts.append("## Context\n")
        parts.append("\n\n".join(contexts))
        parts.append("")

    parts.append("## Prompt\n")
    parts.append(entry.prompt)
    parts.append("")

    if entry.output_description.strip():
        parts.append("## Expected Output Format\n")
        parts.append(entry.output_description)
        parts.append("")

    if entry.examples:
        parts.append("## Examples\n")
        parts.append("\n\n".join(entry.examples))
        parts.append("")

    parts.append(
        "Respond with ONLY the generated content. "
        "No explanation, no markdown fences unless they are part of the output."
    )
    return "\n".join(parts)


class Transport:
    """Base class for AI transports."""

    name = "base"
    interactive = False

    def __init__(self) -> None:
        self.assembler = PromptAssembler()

    async def send(self, prompt: str, system: str | None = None) -> str:
        """Deliver a prompt and return the raw answer text."""
        raise NotImplementedError

    async def resolve_blocks(
        self,
        collector: AiCollector,
        original_command: str,
        answers_path: str | None = None,
    ) -> TransportResult:
        """Answer every collected AI block with one batched request."""
        entries = collector.get_entries()
        prompt = self.assembler.assemble(collector, original_command, answers_path, include_callback=False)
        keys = list(entries)
        system = (
            "You are a code generation assistant. Respond with ONLY a valid JSON object "
            f"containing exactly these keys: {', '.join(keys)}."
        )
        raw = await self.send(f"{prompt}\n\n{JSON_ONLY_INSTRUCTION}", system=system)
        answers = parse_block_answers(raw, keys)
        logger.info(f"{self.name} transport resolved {len(answers)} AI blocks")
        return TransportResult(status="resolved", answers=answers)

    async def resolve_batch(
        self,
        requests: list[VariableRequest],
        resolved: dict[str, Any],
        recipe_name: str,
        recipe_description: str | None = None,
    ) -> dict[str, Any]:
        """Resolve a batch of variables in one round trip."""
        if not requests:
            return {}
        prompt = build_variable_prompt(requests, resolved, recipe_name, recipe_description)
        raw = await self.send(prompt, system=build_variable_system_prompt(requests))
        return parse_variable_response(raw, requests)


class StdoutTransport(Transport):
    """Defers to an external answerer: the prompt is returned, not sent."""

    name = "stdout"
    interactive = True

    async def send(self, prompt: str, system: str | None = None) -> str:
        raise TransportError("The stdout transport cannot answer prompts non-interactively")

    async def resolve_blocks(
        self,
        collector: AiCollector,
        original_command: str,
        answers_path: str | None = None,
    ) -> TransportResult:
        prompt = self.assembler.assemble(collector, original_command, answers_path)
        return TransportResult(status="deferred", prompt=prompt, exit_code=NEEDS_ANSWERS_EXIT_CODE)

    async def resolve_batch(
        self,
        requests: list[VariableRequest],
        resolved: dict[str, Any],
        recipe_name: str,
        recipe_description: str | None = None,
    ) -> dict[str, Any]:
        raise TransportError("The stdout transport cannot resolve variables; prompt interactively instead")


class CommandTransport(Transport):
    """Runs an external command per request.

    When the command contains ``{prompt}`` the shell-quoted prompt is
    substituted in place; otherwise the prompt is written to stdin.
    """

    name = "command"

    def __init__(self, command: str, command_mode: str = "batched", timeout: float = 300.0):
        super().__init__()
        self.command = command
        self.command_mode = command_mode
        self.timeout = timeout

    async def send(self, prompt: str, system: str | None = None) -> str:
        payload = f"{system}\n\n{prompt}" if system else prompt

        if "{prompt}" in self.command:
            command = self.command.replace("{prompt}", shlex.quote(payload))
            stdin_data = None
        else:
            command = self.command
            stdin_data = payload.encode("utf-8")

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransportError(f"Failed to start AI command: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(input=stdin_data),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TransportError(f"AI command timed out after {self.timeout}s") from None

        if process.returncode:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            message = f"AI command failed with exit code {process.returncode}"
            if stderr:
                message += f"\nstderr: {stderr}"
            raise TransportError(message)

        return stdout_bytes.decode("utf-8", errors="replace")

    async def resolve_blocks(
        self,
        collector: AiCollector,
        original_command: str,
        answers_path: str | None = None,
    ) -> TransportResult:
        if self.command_mode != "per-block":
            return await super().resolve_blocks(collector, original_command, answers_path)

        global_contexts = collector.get_global_contexts()
        answers: dict[str, Any] = {}
        for key, entry in collector.get_entries().items():
            logger.debug(f"Resolving AI block '{key}' via command")
            raw = await self.send(build_block_prompt(entry, global_contexts))
            answers[key] = strip_fences(raw)
        return TransportResult(status="resolved", answers=answers)


class ApiTransport(Transport):
    """Calls a model provider's HTTP API with httpx."""

    name = "api"

    ANTHROPIC_URL = "https://api.anthropic.com"
    OPENAI_URL = "https://api.openai.com/v1"

    def __init__(self, config: AiConfig, api_key: str):
        super().__init__()
        self.config = config
        self.api_key = api_key

    def _build_request(self, prompt: str, system: str | None) -> tuple[str, dict[str, str], dict[str, Any]]:
        model = self.config.resolve_model()
        if self.config.provider == "anthropic":
            url = f"{(self.config.base_url or self.ANTHROPIC_URL).rstrip('/')}/v1/messages"
            headers = {
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            }
            body: dict[str, Any] = {
                "model": model,
                "max_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system:
                body["system"] = system
            return url, headers, body

        url = f"{(self.config.base_url or self.OPENAI_URL).rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "content-type": "application/json"}
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        body = {
            "model": model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": messages,
        }
        return url, headers, body

    def _extract_text(self, data: dict[str, Any]) -> str:
        try:
            if self.config.provider == "anthropic":
                return "".join(block.get("text", "") for block in data["content"] if block.get("type") == "text")
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise TransportError(f"Unexpected response shape from {self.config.provider}: {e}") from e

    async def send(self, prompt: str, system: str | None = None) -> str:
        url, headers, body = self._build_request(prompt, system)
        logger.debug(f"POST {url} (model={body['model']})")
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(url, headers=headers, json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{self.config.provider} API returned {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.config.provider} API request failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"{self.config.provider} API returned invalid JSON: {e}") from e
        return self._extract_text(data)


def resolve_transport(config: AiConfig) -> Transport:
    """
    Select the transport described by configuration.

    Raises:
        ConfigError: If the selected mode is missing required settings
    """
    if config.mode == "stdout":
        return StdoutTransport()

    if config.mode == "command":
        if not config.command or not config.command.strip():
            raise ConfigError("AI mode 'command' requires ai.command to be set")
        return CommandTransport(config.command, config.command_mode, config.timeout)

    if config.mode == "api":
        if not config.provider:
            raise ConfigError("AI mode 'api' requires ai.provider to be set")
        api_key = config.resolve_api_key()
        if not api_key:
            env_var = config.api_key_env_var or PROVIDER_API_KEY_ENV_VARS.get(config.provider, "the API key")
            raise ConfigError(f"AI mode 'api' requires an API key: set {env_var} or ai.api_key")
        return ApiTransport(config, api_key)

    raise ConfigError(f"Unknown AI mode: {config.mode}")
