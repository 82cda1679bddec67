"""Recipe data models and YAML parsing."""

import json
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import Literal

import yaml

ToolKind = Literal[
    "template",
    "shell",
    "ai",
    "sequence",
    "parallel",
    "conditional",
    "ensure-dirs",
    "install",
    "patch",
    "query",
    "recipe",
    "action",
    "codemod",
]

TOOL_KINDS: tuple[str, ...] = (
    "template",
    "shell",
    "ai",
    "sequence",
    "parallel",
    "conditional",
    "ensure-dirs",
    "install",
    "patch",
    "query",
    "recipe",
    "action",
    "codemod",
)

COMPOSITE_KINDS: tuple[str, ...] = ("sequence", "parallel", "conditional")

VARIABLE_TYPES: tuple[str, ...] = ("string", "number", "boolean", "enum", "array", "object", "file", "directory")

SYNTAX_LANGUAGES: tuple[str, ...] = ("json", "yaml", "python")

OVERFLOW_MODES: tuple[str, ...] = ("skip", "truncate", "error")

# Key that identifies a step's tool when 'tool' is omitted, checked in order
_TOOL_INFERENCE: tuple[tuple[str, str], ...] = (
    ("command", "shell"),
    ("prompt", "ai"),
    ("recipe", "recipe"),
    ("parallel", "parallel"),
    ("then", "conditional"),
    ("steps", "sequence"),
    ("template", "template"),
    ("action", "action"),
    ("codemod", "codemod"),
    ("packages", "install"),
    ("paths", "ensure-dirs"),
    ("merge", "patch"),
)

_TRUE_STRINGS = ("true", "yes", "y", "1", "on")
_FALSE_STRINGS = ("false", "no", "n", "0", "off")


@dataclass
class RecursionConfig:
    """Recursion protection configuration for sub-recipe composition."""

    max_depth: int = 5  # Default: 5, configurable 1-20
    max_total_steps: int = 500  # Default: 500, configurable 1-5000

    def validate(self) -> list[str]:
        """Validate recursion config."""
        errors = []
        if not 1 <= self.max_depth <= 20:
            errors.append(f"recursion.max_depth must be 1-20, got {self.max_depth}")
        if not 1 <= self.max_total_steps <= 5000:
            errors.append(f"recursion.max_total_steps must be 1-5000, got {self.max_total_steps}")
        return errors


@dataclass
class Guardrails:
    """Checks applied to the output of an ``ai`` step.

    ``retries`` extra attempts are made when a check fails; with
    ``feedback`` the retry prompt carries the errors and the rejected
    output. ``fallback`` replaces the output when every attempt fails.
    """

    validate_syntax: str | None = None
    allowed_imports: list[str] | None = None
    blocked_imports: list[str] | None = None
    require_known_imports: bool = False
    max_output_length: int | None = None
    retries: int = 0
    feedback: bool = True
    fallback: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Guardrails":
        unknown = sorted(set(data) - set(cls.__dataclass_fields__))
        if unknown:
            raise ValueError(f"unknown guardrails fields: {', '.join(unknown)}")
        return cls(**data)

    def validate(self) -> list[str]:
        """Validate guardrail settings."""
        errors = []
        if self.validate_syntax is not None and self.validate_syntax not in SYNTAX_LANGUAGES:
            allowed = ", ".join(SYNTAX_LANGUAGES)
            errors.append(f"guardrails.validate_syntax must be one of {allowed}, got '{self.validate_syntax}'")
        if self.max_output_length is not None and self.max_output_length <= 0:
            errors.append("guardrails.max_output_length must be positive")
        if self.retries < 0:
            errors.append("guardrails.retries cannot be negative")
        return errors


@dataclass
class VariableSpec:
    """Declared recipe variable.

    ``default`` is applied automatically unless defaults are disabled.
    ``suggestion`` is only ever shown as a hint when prompting.
    """

    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    suggestion: Any = None
    values: list[Any] | None = None
    description: str | None = None

    @property
    def has_default(self) -> bool:
        return self.default is not None

    def validate(self) -> list[str]:
        """Validate variable declaration."""
        errors = []
        if self.type not in VARIABLE_TYPES:
            errors.append(
                f"Variable '{self.name}': type must be one of {', '.join(VARIABLE_TYPES)}, got '{self.type}'"
            )
        if self.type == "enum" and not self.values:
            errors.append(f"Variable '{self.name}': enum variables require 'values'")
        if self.values is not None and not isinstance(self.values, list):
            errors.append(f"Variable '{self.name}': 'values' must be a list")
        elif self.values and self.has_default and self.default not in self.values:
            errors.append(f"Variable '{self.name}': default '{self.default}' is not one of the allowed values")
        return errors

    def coerce(self, value: Any) -> Any:
        """
        Convert a prompted or AI-produced value to the declared type.

        Values that cannot be converted are returned unchanged so that
        downstream validation can report them.
        """
        if value is None:
            return None

        # Command-line and prompted values arrive as text; match them to allowed values
        if self.values and value not in self.values:
            for allowed in self.values:
                if str(allowed) == str(value):
                    return allowed

        if self.type == "number":
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
            text = str(value).strip()
            try:
                return int(text)
            except ValueError:
                pass
            try:
                return float(text)
            except ValueError:
                return value

        if self.type == "boolean":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
            return bool(value)

        if self.type == "array":
            if isinstance(value, list):
                return value
            text = str(value).strip()
            if text.startswith("["):
                try:
                    parsed = json.loads(text)
                    if isinstance(parsed, list):
                        return parsed
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in text.split(",") if item.strip()]

        if self.type == "object":
            if isinstance(value, dict):
                return value
            try:
                parsed = json.loads(str(value))
            except json.JSONDecodeError:
                return value
            return parsed if isinstance(parsed, dict) else value

        if isinstance(value, str):
            return value
        return str(value)


@dataclass
class Step:
    """A single unit of work in a recipe.

    ``tool`` discriminates which fields apply. Composite kinds
    (sequence, parallel, conditional) carry children in ``steps``;
    a conditional's false branch lives in ``else_steps``.
    """

    name: str
    tool: str = "template"
    when: str | None = None
    description: str | None = None
    on_error: str = "fail"
    timeout: float | None = None
    output: dict[str, str] | None = None

    # Template fields
    template: str | None = None
    to: str | None = None
    overwrite: bool = False
    variables: dict[str, Any] | None = None

    # Shell fields
    command: str | None = None
    cwd: str | None = None
    env: dict[str, str] | None = None

    # Composite fields
    steps: list["Step"] = field(default_factory=list)
    else_steps: list["Step"] = field(default_factory=list)
    limit: int | None = None

    # ensure-dirs
    paths: list[str] = field(default_factory=list)

    # Install fields
    packages: list[str] = field(default_factory=list)
    dev: bool = False
    optional: bool = False
    package_manager: str | None = None

    # Patch and query fields
    file: str | None = None
    merge: dict[str, Any] | None = None
    format: str | None = None
    create_if_missing: bool = False
    indent: int = 2
    checks: list[dict[str, Any]] = field(default_factory=list)
    expression: str | None = None

    # AI generation fields
    prompt: str | None = None
    system: str | None = None
    examples: list[dict[str, Any]] = field(default_factory=list)
    context_files: list[str] = field(default_factory=list)
    max_context_tokens: int | None = None
    overflow: str = "skip"
    guardrails: Guardrails | None = None
    key: str | None = None
    variable: str | None = None

    # Sub-recipe fields
    recipe: str | None = None
    variable_overrides: dict[str, Any] | None = None
    inherit_variables: bool = False
    recursion: RecursionConfig | None = None

    # Action and codemod fields
    action: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    codemod: str | None = None
    files: list[str] = field(default_factory=list)
    backup: bool = False

    @property
    def is_composite(self) -> bool:
        return self.tool in COMPOSITE_KINDS

    def validate(self) -> list[str]:
        """Validate step structure and tool-specific fields, recursing into children."""
        errors = []

        if not self.name:
            errors.append("Step missing required field: name")

        label = f"Step '{self.name}'"

        if self.tool not in TOOL_KINDS:
            errors.append(f"{label}: tool must be one of {', '.join(TOOL_KINDS)}, got '{self.tool}'")
            return errors

        if self.on_error not in ("fail", "continue"):
            errors.append(f"{label}: on_error must be 'fail' or 'continue', got '{self.on_error}'")

        if self.timeout is not None and self.timeout <= 0:
            errors.append(f"{label}: timeout must be positive")

        if self.output is not None and not isinstance(self.output, dict):
            errors.append(f"{label}: output must be a mapping of variable name to expression")

        if self.tool == "template" and not self.template:
            errors.append(f"{label}: template steps require 'template' field")
        elif self.tool == "shell":
            if not self.command:
                errors.append(f"{label}: shell steps require 'command' field")
            elif not self.command.strip():
                errors.append(f"{label}: shell command cannot be empty or whitespace")
        elif self.tool == "ai":
            errors.extend(f"{label}: {error}" for error in self._validate_ai())
        elif self.tool in ("sequence", "parallel") and not self.steps:
            errors.append(f"{label}: {self.tool} steps require at least one child step")
        elif self.tool == "conditional":
            if not self.when:
                errors.append(f"{label}: conditional steps require a 'when' expression")
            if not self.steps and not self.else_steps:
                errors.append(f"{label}: conditional steps require 'then' or 'else' steps")
        elif self.tool == "ensure-dirs" and not self.paths:
            errors.append(f"{label}: ensure-dirs steps require 'paths'")
        elif self.tool == "install" and not self.packages:
            errors.append(f"{label}: install steps require 'packages'")
        elif self.tool == "patch":
            if not self.file:
                errors.append(f"{label}: patch steps require 'file' field")
            if not isinstance(self.merge, dict):
                errors.append(f"{label}: patch steps require a 'merge' mapping")
        elif self.tool == "query" and not self.file:
            errors.append(f"{label}: query steps require 'file' field")
        elif self.tool == "recipe":
            if not self.recipe:
                errors.append(f"{label}: recipe steps require 'recipe' field")
            if self.recursion:
                errors.extend(self.recursion.validate())
        elif self.tool == "action" and not self.action:
            errors.append(f"{label}: action steps require 'action' field")
        elif self.tool == "codemod":
            if not self.codemod:
                errors.append(f"{label}: codemod steps require 'codemod' field")
            if not self.files:
                errors.append(f"{label}: codemod steps require 'files'")

        if self.limit is not None and self.limit < 1:
            errors.append(f"{label}: limit must be a positive integer")

        if self.is_composite:
            errors.extend(_validate_step_list(self.steps, scope=label))
            errors.extend(_validate_step_list(self.else_steps, scope=f"{label} (else)"))

        return errors

    def _validate_ai(self) -> list[str]:
        errors = []
        if not self.prompt or not str(self.prompt).strip():
            errors.append("ai steps require a non-empty 'prompt'")
        if self.overflow not in OVERFLOW_MODES:
            errors.append(f"overflow must be one of {', '.join(OVERFLOW_MODES)}, got '{self.overflow}'")
        if self.max_context_tokens is not None and self.max_context_tokens <= 0:
            errors.append("max_context_tokens must be positive")
        for example in self.examples:
            if not isinstance(example, dict) or "output" not in example:
                errors.append("each example must be a mapping with an 'output'")
                break
        if self.guardrails is not None:
            errors.extend(self.guardrails.validate())
        return errors


def _validate_step_list(steps: list[Step], scope: str | None = None) -> list[str]:
    """Validate sibling steps and check their names are unique."""
    errors = []
    for step in steps:
        errors.extend(step.validate())

    names = [step.name for step in steps if step.name]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        where = f"{scope}: " if scope else ""
        errors.append(f"{where}duplicate step names: {', '.join(duplicates)}")
    return errors


@dataclass
class Recipe:
    """A named, versioned workflow of declared variables and steps."""

    name: str
    description: str = ""
    version: str = ""
    variables: dict[str, VariableSpec] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    author: str | None = None
    tags: list[str] = field(default_factory=list)
    recursion: RecursionConfig | None = None
    source_path: Path | None = None

    @property
    def base_dir(self) -> Path | None:
        """Directory the recipe was loaded from, used to resolve relative paths."""
        return self.source_path.parent if self.source_path else None

    @classmethod
    def _parse_variable(cls, name: str, spec_data: Any) -> VariableSpec:
        """Parse a single variable declaration."""
        if not isinstance(spec_data, dict):
            # Shorthand: `name: value` declares a default
            return VariableSpec(name=name, default=spec_data)

        data = dict(spec_data)
        values = data.get("values")
        var_type = data.get("type") or ("enum" if values else "string")
        return VariableSpec(
            name=name,
            type=var_type,
            required=bool(data.get("required", False)),
            default=data.get("default"),
            suggestion=data.get("suggestion"),
            values=values,
            description=data.get("description"),
        )

    @classmethod
    def _parse_step(cls, step_data: dict[str, Any], index: int = 0) -> Step:
        """Parse a single step, inferring its tool and remapping YAML keys."""
        if not isinstance(step_data, dict):
            raise ValueError("Each step must be a dictionary")

        data = dict(step_data)

        if not data.get("tool"):
            for key, tool in _TOOL_INFERENCE:
                if key in data:
                    data["tool"] = tool
                    break

        tool = data.get("tool", "template")
        data.setdefault("name", f"{tool}-{index + 1}")

        # 'parallel: [...]' and 'then: [...]' both carry the child list
        if isinstance(data.get("parallel"), list):
            data["steps"] = data.pop("parallel")
        if "then" in data:
            data["steps"] = data.pop("then")
        if "else" in data:
            data["else_steps"] = data.pop("else")

        # 'args' passes variables to a sub-recipe
        if "args" in data:
            data["variable_overrides"] = data.pop("args")

        if data.pop("continueOnError", False) or data.pop("continue_on_error", False):
            data["on_error"] = "continue"

        for key in ("steps", "else_steps"):
            if key in data:
                children = data[key]
                if not isinstance(children, list):
                    raise ValueError(f"Step '{data['name']}': '{key}' must be a list")
                data[key] = [cls._parse_step(child, i) for i, child in enumerate(children)]

        if isinstance(data.get("paths"), str):
            data["paths"] = [data["paths"]]
        if isinstance(data.get("packages"), str):
            data["packages"] = data["packages"].split()
        if isinstance(data.get("files"), str):
            data["files"] = [data["files"]]
        if isinstance(data.get("context_files"), str):
            data["context_files"] = [data["context_files"]]

        if "recursion" in data and isinstance(data["recursion"], dict):
            data["recursion"] = RecursionConfig(**data["recursion"])
        if isinstance(data.get("guardrails"), dict):
            try:
                data["guardrails"] = Guardrails.from_dict(data["guardrails"])
            except ValueError as e:
                raise ValueError(f"Step '{data['name']}': {e}") from e

        known = set(Step.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Step '{data['name']}': unknown fields: {', '.join(unknown)}")

        return Step(**data)

    @classmethod
    def from_dict(cls, data: dict[str, Any], source_path: Path | None = None) -> "Recipe":
        """Build a recipe from an already-parsed mapping."""
        if not isinstance(data, dict):
            raise ValueError("Recipe must be a dictionary")

        variables_data = data.get("variables") or {}
        if not isinstance(variables_data, dict):
            raise ValueError("'variables' must be a dictionary")
        variables = {name: cls._parse_variable(name, spec) for name, spec in variables_data.items()}

        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list):
            raise ValueError("'steps' must be a list")
        steps = [cls._parse_step(sd, i) for i, sd in enumerate(steps_data)]

        recursion_config = None
        if "recursion" in data and isinstance(data["recursion"], dict):
            recursion_config = RecursionConfig(**data["recursion"])

        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            version=str(data.get("version", "")),
            variables=variables,
            steps=steps,
            author=data.get("author"),
            tags=data.get("tags", []),
            recursion=recursion_config,
            source_path=source_path,
        )

    @classmethod
    def from_string(cls, content: str, source_path: Path | None = None) -> "Recipe":
        """Parse recipe from YAML text."""
        data = yaml.safe_load(content)
        if not isinstance(data, dict):
            raise ValueError("Recipe YAML must be a dictionary")
        return cls.from_dict(data, source_path)

    @classmethod
    def from_yaml(cls, path: Path) -> "Recipe":
        """Load recipe from YAML file."""
        if not path.exists():
            raise FileNotFoundError(f"Recipe file not found: {path}")

        with open(path, encoding="utf-8") as f:
            content = f.read()

        return cls.from_string(content, source_path=path.resolve())

    def validate(self) -> list[str]:
        """Validate recipe structure and constraints."""
        errors = []

        if not self.name:
            errors.append("Recipe missing required field: name")

        if self.version:
            parts = self.version.split(".")
            if self.version.startswith("v") or not all(part.isdigit() for part in parts):
                errors.append(f"Recipe version must look like MAJOR.MINOR.PATCH, got '{self.version}'")

        if not self.steps:
            errors.append("Recipe must have at least one step")

        for spec in self.variables.values():
            errors.extend(spec.validate())

        errors.extend(_validate_step_list(self.steps))

        if self.recursion:
            errors.extend(self.recursion.validate())

        return errors

    def get_step(self, name: str) -> Step | None:
        """Find a step by name anywhere in the step tree."""
        pending = list(self.steps)
        while pending:
            step = pending.pop(0)
            if step.name == name:
                return step
            pending.extend(step.steps)
            pending.extend(step.else_steps)
        return None
