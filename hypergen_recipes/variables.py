"""Variable resolution: provided values, defaults, prompts and AI."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from typing import Protocol

from rich.console import Console
from rich.prompt import Confirm
from rich.prompt import Prompt

from .config import AiConfig
from .errors import EnumValidationError
from .errors import MissingRequiredVariablesError
from .errors import TransportError
from .models import VariableSpec
from .transports import Transport
from .transports import VariableRequest
from .transports import resolve_transport

logger = logging.getLogger(__name__)

ASK_MODES = ("me", "ai", "nobody")


@dataclass
class PromptRequest:
    """A variable to ask the user for, with the hint to pre-fill."""

    spec: VariableSpec
    hint: Any = None


class Prompter(Protocol):
    """Asks a human for a batch of variables in one session."""

    async def prompt(self, requests: list[PromptRequest]) -> dict[str, Any]: ...


class RichPrompter:
    """Interactive prompter backed by ``rich.prompt``."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(stderr=True)

    async def prompt(self, requests: list[PromptRequest]) -> dict[str, Any]:
        # rich prompts block on stdin; keep the event loop free while waiting
        return await asyncio.to_thread(self._prompt_all, requests)

    def _prompt_all(self, requests: list[PromptRequest]) -> dict[str, Any]:
        answers: dict[str, Any] = {}
        for request in requests:
            value = self._prompt_one(request)
            if value not in (None, ""):
                answers[request.spec.name] = value
        return answers

    def _prompt_one(self, request: PromptRequest) -> Any:
        spec = request.spec
        label = f"[bold]{spec.name}[/bold]"
        if spec.description:
            label += f" [dim]({spec.description})[/dim]"

        if spec.type == "boolean":
            default = spec.coerce(request.hint) if request.hint is not None else ...
            return Confirm.ask(label, default=default, console=self.console)

        choices = [str(v) for v in spec.values] if spec.values else None
        default = str(request.hint) if request.hint is not None else ""
        while True:
            answer = Prompt.ask(
                label,
                choices=choices,
                default=default,
                show_default=request.hint is not None,
                console=self.console,
            )
            if answer or not spec.required:
                return answer
            self.console.print(f"[red]{spec.name} is required[/red]")


@dataclass
class ResolveOptions:
    """How unresolved variables are handled.

    ask:
    - "nobody": never prompt; missing required variables are an error
    - "me": prompt the user interactively for every unresolved variable
    - "ai": ask the configured AI transport, falling back to prompting when
      the transport is the interactive stdout transport
    """

    ask: str = "nobody"
    no_defaults: bool = False
    ai_config: AiConfig | None = None
    transport: Transport | None = None
    prompter: Prompter | None = None
    recipe_name: str = ""
    recipe_description: str | None = None


class VariableResolver:
    """Resolves declared recipe variables in a fixed precedence order."""

    def __init__(self, prompter: Prompter | None = None):
        self.prompter = prompter

    async def resolve(
        self,
        specs: dict[str, VariableSpec],
        provided: dict[str, Any],
        options: ResolveOptions | None = None,
    ) -> dict[str, Any]:
        """
        Resolve variables for one recipe execution.

        Precedence per declared variable: explicitly provided value, then the
        default (unless ``no_defaults``), then the mode-specific path. A
        ``suggestion`` is only ever shown as a prompt hint. Provided values
        without a declaration pass through unchanged.

        Args:
            specs: Declared variables, in declaration order
            provided: Values passed on invocation
            options: Resolution mode and collaborators

        Returns:
            Resolved variables; unresolved optional variables are absent

        Raises:
            MissingRequiredVariablesError: Naming every unresolved required variable
            EnumValidationError: When any resolved value is outside its allowed set
        """
        options = options or ResolveOptions()
        if options.ask not in ASK_MODES:
            raise ValueError(f"ask must be one of {', '.join(ASK_MODES)}, got '{options.ask}'")

        result: dict[str, Any] = {}
        unresolved: list[VariableSpec] = []

        for name, spec in specs.items():
            if provided.get(name) is not None:
                result[name] = self._validated(spec, provided[name])
            elif spec.has_default and not options.no_defaults:
                result[name] = self._validated(spec, spec.default)
            else:
                unresolved.append(spec)

        for name, value in provided.items():
            if name not in specs:
                result[name] = value

        if unresolved and options.ask != "nobody":
            answers = await self._resolve_unresolved(unresolved, result, options)
            for spec in unresolved:
                value = answers.get(spec.name)
                if value is None or value == "":
                    continue
                result[spec.name] = self._validated(spec, spec.coerce(value))

        # A suppressed default still marks the variable as one that needs a value
        missing = [
            spec.name
            for spec in unresolved
            if (spec.required or (options.no_defaults and spec.has_default)) and spec.name not in result
        ]
        if missing:
            raise MissingRequiredVariablesError(missing)

        logger.debug(f"Resolved {len(result)} variables ({len(unresolved)} needed {options.ask} resolution)")
        return result

    async def _resolve_unresolved(
        self,
        unresolved: list[VariableSpec],
        resolved: dict[str, Any],
        options: ResolveOptions,
    ) -> dict[str, Any]:
        if options.ask == "ai":
            transport = options.transport or resolve_transport(options.ai_config or AiConfig())
            if not transport.interactive:
                requests = [
                    VariableRequest(spec=spec, skipped_default=spec.default if options.no_defaults else None)
                    for spec in unresolved
                ]
                try:
                    return await transport.resolve_batch(
                        requests, dict(resolved), options.recipe_name, options.recipe_description
                    )
                except TransportError as e:
                    logger.warning(f"AI variable resolution failed: {e}")
                    return {}
            logger.debug("AI transport is interactive; prompting instead")

        return await self._prompt(unresolved, options)

    async def _prompt(self, unresolved: list[VariableSpec], options: ResolveOptions) -> dict[str, Any]:
        prompter = options.prompter or self.prompter or RichPrompter()
        requests = [PromptRequest(spec=spec, hint=self._hint(spec, options)) for spec in unresolved]
        return await prompter.prompt(requests)

    @staticmethod
    def _hint(spec: VariableSpec, options: ResolveOptions) -> Any:
        if spec.suggestion is not None:
            return spec.suggestion
        if options.no_defaults and spec.has_default:
            return spec.default
        return None

    @staticmethod
    def _validated(spec: VariableSpec, value: Any) -> Any:
        if spec.values and value not in spec.values:
            raise EnumValidationError(spec.name, value, spec.values)
        return value
