"""Jinja2 template rendering with AI directive tags.

Templates declare AI blocks with::

    {% ai "hero_copy" %}
      {% context %}The product is {{ name }}.{% endcontext %}
      {% prompt %}Write a one-line tagline.{% endprompt %}
      {% output %}Plain text, under 80 characters.{% endoutput %}
      {% example %}Ship faster with less code.{% endexample %}
    {% endai %}

A ``{% context %}`` block outside any ``{% ai %}`` block adds global
context shared by every AI block. In collect mode the directive bodies
are rendered and handed to the collector and the ``ai`` tag produces no
text. In answer mode the ``ai`` tag is replaced by ``answers[key]`` and its
body is never rendered.
"""

import json
import logging
import re
from collections.abc import Callable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment
from jinja2 import nodes
from jinja2.exceptions import TemplateRuntimeError
from jinja2.ext import Extension

from .collector import AiCollector

logger = logging.getLogger(__name__)

STATE_KEY = "_ai_state"

_FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_WORDS = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")


def format_answer(value: Any) -> str:
    """Text written for an AI answer; structured answers become indented JSON."""
    return value if isinstance(value, str) else json.dumps(value, indent=2)


@dataclass
class _BlockFrame:
    key: str
    contexts: list[str] = field(default_factory=list)
    prompt: str = ""
    output: str = ""
    examples: list[str] = field(default_factory=list)


@dataclass
class _RenderState:
    """Per-render AI state, passed to the extension through the template context."""

    collector: AiCollector | None
    collect_mode: bool
    answers: Mapping[str, Any]
    source_file: str
    stack: list[_BlockFrame] = field(default_factory=list)


@dataclass
class RenderedTemplate:
    """A rendered template file split into front-matter and body."""

    front_matter: dict[str, Any]
    content: str


class AiExtension(Extension):
    """Adds the ``ai``, ``context``, ``prompt``, ``output`` and ``example`` tags."""

    tags = {"ai", "context", "prompt", "output", "example"}

    def parse(self, parser: Any) -> nodes.Node:
        token = next(parser.stream)
        lineno = token.lineno
        tag = token.value

        if tag == "ai":
            # Accept both `{% ai "key" %}` and `{% ai key="key" %}`
            if parser.stream.current.test("name:key") and parser.stream.look().test("assign"):
                next(parser.stream)
                next(parser.stream)
            key = parser.parse_expression()
            body = parser.parse_statements(("name:endai",), drop_needle=True)
            call = self.call_method("_ai_block", [nodes.ContextReference(), key], lineno=lineno)
        else:
            body = parser.parse_statements((f"name:end{tag}",), drop_needle=True)
            call = self.call_method("_section_block", [nodes.ContextReference(), nodes.Const(tag)], lineno=lineno)

        return nodes.CallBlock(call, [], [], body).set_lineno(lineno)

    @staticmethod
    def _state(context: Any) -> _RenderState:
        state = context.get(STATE_KEY)
        if state is None:
            return _RenderState(
                collector=None,
                collect_mode=False,
                answers=context.get("answers") or {},
                source_file="<string>",
            )
        return state

    def _ai_block(self, context: Any, key: Any, caller: Callable[[], str]) -> str:
        state = self._state(context)
        key = str(key)

        if not state.collect_mode:
            if key not in state.answers:
                raise TemplateRuntimeError(f"No answer provided for AI block '{key}' in {state.source_file}")
            return format_answer(state.answers[key])

        if state.stack:
            raise TemplateRuntimeError(f"AI block '{key}' cannot be nested inside '{state.stack[-1].key}'")

        frame = _BlockFrame(key=key)
        state.stack.append(frame)
        try:
            caller()
        finally:
            state.stack.pop()

        if state.collector is None:
            raise TemplateRuntimeError("Collect mode requires an AI collector")
        state.collector.add_entry(
            key,
            contexts=frame.contexts,
            prompt=frame.prompt,
            output_description=frame.output,
            source_file=state.source_file,
            examples=frame.examples,
        )
        return ""

    def _section_block(self, context: Any, tag: str, caller: Callable[[], str]) -> str:
        state = self._state(context)
        frame = state.stack[-1] if state.stack else None

        if frame is None:
            if tag != "context":
                raise TemplateRuntimeError(f"'{tag}' must appear inside an ai block ({state.source_file})")
            if state.collect_mode and state.collector is not None:
                state.collector.add_global_context(caller())
            return ""

        text = caller().strip()
        if tag == "context":
            if text:
                frame.contexts.append(text)
        elif tag == "prompt":
            frame.prompt = text
        elif tag == "output":
            frame.output = text
        elif tag == "example":
            frame.examples.append(text)
        return ""


def _words(value: Any) -> list[str]:
    return _WORDS.findall(str(value))


def camel_case(value: Any) -> str:
    words = [w.lower() for w in _words(value)]
    return words[0] + "".join(w.capitalize() for w in words[1:]) if words else ""


def pascal_case(value: Any) -> str:
    return "".join(w.capitalize() for w in _words(value))


def kebab_case(value: Any) -> str:
    return "-".join(w.lower() for w in _words(value))


def snake_case(value: Any) -> str:
    return "_".join(w.lower() for w in _words(value))


BUILTIN_HELPERS: dict[str, Callable[..., Any]] = {
    "camel_case": camel_case,
    "pascal_case": pascal_case,
    "kebab_case": kebab_case,
    "snake_case": snake_case,
    "camelCase": camel_case,
    "pascalCase": pascal_case,
    "kebabCase": kebab_case,
    "snakeCase": snake_case,
}


def split_front_matter(source: str) -> tuple[str | None, str]:
    """Split ``---`` delimited front-matter from a template body."""
    match = _FRONT_MATTER.match(source)
    if not match:
        return None, source
    return match.group(1), source[match.end() :]


class TemplateRenderer:
    """Renders template strings and files for the template tool."""

    def __init__(self) -> None:
        self.env = Environment(
            autoescape=False,
            keep_trailing_newline=True,
            extensions=[AiExtension],
        )
        self.register_helpers(BUILTIN_HELPERS, "builtin")

    def register_helpers(self, helpers: Mapping[str, Callable[..., Any]], source_label: str) -> None:
        """Expose helper functions to templates as both globals and filters."""
        for name, helper in helpers.items():
            if not callable(helper):
                logger.warning(f"Skipping non-callable helper '{name}' from {source_label}")
                continue
            self.env.globals[name] = helper
            self.env.filters[name] = helper
        logger.debug(f"Registered {len(helpers)} helpers from {source_label}")

    def render(
        self,
        source: str,
        context: Mapping[str, Any],
        collector: AiCollector | None = None,
        collect_mode: bool = False,
        answers: Mapping[str, Any] | None = None,
        source_file: str = "<string>",
    ) -> str:
        """
        Render a template string.

        Args:
            source: Template text
            context: Variables visible to the template
            collector: Collector that receives AI blocks in collect mode
            collect_mode: Whether AI blocks are collected rather than answered
            answers: AI block answers for answer mode
            source_file: Label used in AI block entries and errors

        Returns:
            Rendered text
        """
        answers = dict(answers or {})
        state = _RenderState(
            collector=collector,
            collect_mode=collect_mode,
            answers=answers,
            source_file=source_file,
        )
        template = self.env.from_string(source)
        return template.render({**context, "answers": answers, "collect_mode": collect_mode, STATE_KEY: state})

    def render_file(
        self,
        path: Path,
        context: Mapping[str, Any],
        collector: AiCollector | None = None,
        collect_mode: bool = False,
        answers: Mapping[str, Any] | None = None,
    ) -> RenderedTemplate:
        """Render a template file, rendering and parsing its YAML front-matter."""
        source = path.read_text(encoding="utf-8")
        front_text, body = split_front_matter(source)

        front_matter: dict[str, Any] = {}
        if front_text is not None:
            rendered_front = self.render(front_text, context, collector, collect_mode, answers, str(path))
            loaded = yaml.safe_load(rendered_front)
            if loaded is not None and not isinstance(loaded, dict):
                raise ValueError(f"Front-matter must be a dictionary: {path}")
            front_matter = loaded or {}

        content = self.render(body, context, collector, collect_mode, answers, str(path))
        return RenderedTemplate(front_matter=front_matter, content=content)
