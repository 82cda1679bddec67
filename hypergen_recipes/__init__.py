"""Hypergen recipe engine - multi-step code generation with two-pass AI resolution."""

from .collector import AiBlockEntry
from .collector import AiCollector
from .config import AiConfig
from .config import EngineConfig
from .config import load_config
from .engine import ExecutionOptions
from .engine import ExecutionResult
from .engine import RecipeEngine
from .errors import ConfigError
from .errors import DuplicateAiKeyError
from .errors import EnumValidationError
from .errors import GenerationError
from .errors import MissingRequiredVariablesError
from .errors import RecipeError
from .errors import RecipeValidationError
from .errors import StepTimeoutError
from .errors import TransportError
from .executor import StepExecutor
from .models import Guardrails
from .models import Recipe
from .models import Step
from .models import VariableSpec
from .prompt_assembler import PromptAssembler
from .rendering import TemplateRenderer
from .tools import StepContext
from .tools import StepResult
from .tools import ToolRegistry
from .transports import ApiTransport
from .transports import CommandTransport
from .transports import StdoutTransport
from .transports import resolve_transport
from .variables import ResolveOptions
from .variables import VariableResolver

__version__ = "0.1.0"

__all__ = [
    "AiBlockEntry",
    "AiCollector",
    "AiConfig",
    "ApiTransport",
    "CommandTransport",
    "ConfigError",
    "DuplicateAiKeyError",
    "EngineConfig",
    "EnumValidationError",
    "ExecutionOptions",
    "ExecutionResult",
    "GenerationError",
    "Guardrails",
    "MissingRequiredVariablesError",
    "PromptAssembler",
    "Recipe",
    "RecipeEngine",
    "RecipeError",
    "RecipeValidationError",
    "ResolveOptions",
    "StdoutTransport",
    "Step",
    "StepContext",
    "StepExecutor",
    "StepResult",
    "StepTimeoutError",
    "TemplateRenderer",
    "ToolRegistry",
    "TransportError",
    "VariableResolver",
    "VariableSpec",
    "load_config",
    "resolve_transport",
]
