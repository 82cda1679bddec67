"""Engine and AI configuration loading."""

import importlib
import logging
import os
from collections.abc import Callable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .models import RecursionConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("hypergen.config.yaml", "hypergen.config.yml", ".hypergenrc.yaml")

PROVIDER_API_KEY_ENV_VARS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openai-compatible": "OPENAI_API_KEY",
}

DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "openai-compatible": "gpt-4o",
}

HelpersCallback = Callable[[Mapping[str, Callable[..., Any]], str], None]


@dataclass
class AiConfig:
    """How AI-resolved variables and AI blocks are answered.

    mode:
    - "stdout": print the assembled prompt and wait for a later run with answers
    - "command": pipe the prompt through an external command
    - "api": call a model provider directly
    """

    mode: str = "stdout"
    command: str | None = None
    command_mode: str = "batched"  # "batched" or "per-block"
    provider: str | None = None
    model: str | None = None
    api_key: str | None = None
    api_key_env_var: str | None = None
    base_url: str | None = None
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout: float = 300.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "AiConfig":
        if not data:
            return cls()
        known = set(cls.__dataclass_fields__)
        # Accept camelCase keys used by JavaScript config files
        aliases = {
            "commandMode": "command_mode",
            "apiKey": "api_key",
            "apiKeyEnvVar": "api_key_env_var",
            "baseUrl": "base_url",
            "maxTokens": "max_tokens",
        }
        values = {}
        for key, value in data.items():
            key = aliases.get(key, key)
            if key in known:
                values[key] = value
            else:
                logger.warning(f"Ignoring unknown ai config key: {key}")
        return cls(**values)

    def validate(self) -> list[str]:
        """Validate AI configuration."""
        errors = []
        if self.mode not in ("stdout", "command", "api"):
            errors.append(f"ai.mode must be 'stdout', 'command', or 'api', got '{self.mode}'")
        if self.mode == "command" and not (self.command and self.command.strip()):
            errors.append("ai.command is required when ai.mode is 'command'")
        if self.command_mode not in ("batched", "per-block"):
            errors.append(f"ai.command_mode must be 'batched' or 'per-block', got '{self.command_mode}'")
        if self.mode == "api":
            if not self.provider:
                errors.append("ai.provider is required when ai.mode is 'api'")
            elif self.provider not in PROVIDER_API_KEY_ENV_VARS:
                errors.append(
                    f"ai.provider must be one of {', '.join(PROVIDER_API_KEY_ENV_VARS)}, got '{self.provider}'"
                )
            if self.provider == "openai-compatible" and not self.base_url:
                errors.append("ai.base_url is required for provider 'openai-compatible'")
        if not 0.0 <= self.temperature <= 2.0:
            errors.append(f"ai.temperature must be 0.0-2.0, got {self.temperature}")
        if self.timeout <= 0:
            errors.append("ai.timeout must be positive")
        return errors

    def resolve_api_key(self) -> str | None:
        """Return the API key from config or from the provider's environment variable."""
        if self.api_key:
            return self.api_key
        env_var = self.api_key_env_var or PROVIDER_API_KEY_ENV_VARS.get(self.provider or "")
        if not env_var:
            return None
        return os.environ.get(env_var) or None

    def resolve_model(self) -> str:
        return self.model or DEFAULT_MODELS.get(self.provider or "", "gpt-4o")


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    ai: AiConfig = field(default_factory=AiConfig)
    recursion: RecursionConfig = field(default_factory=RecursionConfig)
    step_timeout: float = 600.0
    helpers: dict[str, Callable[..., Any]] = field(default_factory=dict)
    source: Path | None = None

    def validate(self) -> list[str]:
        errors = self.ai.validate()
        errors.extend(self.recursion.validate())
        if self.step_timeout <= 0:
            errors.append("step_timeout must be positive")
        return errors


def find_config_file(start: Path) -> Path | None:
    """Search ``start`` and its parents for a config file."""
    current = start.resolve()
    for directory in (current, *current.parents):
        for filename in CONFIG_FILENAMES:
            candidate = directory / filename
            if candidate.is_file():
                return candidate
    return None


def _import_helpers(reference: str) -> Mapping[str, Callable[..., Any]]:
    """Import a ``module:attribute`` reference that names a mapping of helpers."""
    module_name, _, attr = reference.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import helpers module '{module_name}': {e}") from e

    helpers = getattr(module, attr or "helpers", None)
    if callable(helpers) and not isinstance(helpers, Mapping):
        helpers = helpers()
    if not isinstance(helpers, Mapping):
        raise ConfigError(f"Helpers reference '{reference}' must resolve to a mapping of functions")
    return helpers


def _apply_env_overrides(ai: AiConfig) -> None:
    overrides = {
        "HYPERGEN_AI_MODE": "mode",
        "HYPERGEN_AI_COMMAND": "command",
        "HYPERGEN_AI_PROVIDER": "provider",
        "HYPERGEN_AI_MODEL": "model",
    }
    for env_var, attr in overrides.items():
        value = os.environ.get(env_var)
        if value:
            logger.debug(f"Config override from {env_var}")
            setattr(ai, attr, value)


def load_config(cwd: Path, on_ready: HelpersCallback | None = None) -> EngineConfig:
    """
    Load engine configuration for a working directory.

    Helper modules listed under ``helpers`` are imported and handed to
    ``on_ready(helpers, source_label)`` one module at a time, so the caller
    (typically the template renderer) can register them without this module
    depending on it.

    Args:
        cwd: Directory to start the config file search from
        on_ready: Optional callback receiving each loaded helper mapping

    Returns:
        Loaded configuration (defaults when no file exists)

    Raises:
        ConfigError: If the config file is malformed or invalid
    """
    config = EngineConfig()
    path = find_config_file(cwd)

    data: dict[str, Any] = {}
    if path is not None:
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file must be a dictionary: {path}")
        data = loaded
        config.source = path
        logger.debug(f"Loaded config from {path}")

    config.ai = AiConfig.from_dict(data.get("ai"))
    if isinstance(data.get("recursion"), dict):
        config.recursion = RecursionConfig(**data["recursion"])
    if "step_timeout" in data:
        config.step_timeout = float(data["step_timeout"])

    _apply_env_overrides(config.ai)

    errors = config.validate()
    if errors:
        raise ConfigError("Invalid configuration:\n" + "\n".join(f"  - {err}" for err in errors))

    helper_refs = data.get("helpers") or []
    if isinstance(helper_refs, str):
        helper_refs = [helper_refs]
    for reference in helper_refs:
        helpers = _import_helpers(reference)
        config.helpers.update(helpers)
        if on_ready is not None:
            on_ready(helpers, reference)

    return config
