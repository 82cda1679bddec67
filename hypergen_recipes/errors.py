"""Exception types raised by the recipe engine."""

from typing import Any


class RecipeError(Exception):
    """Base class for recipe engine errors."""

    pass


class RecipeValidationError(RecipeError):
    """Raised when a recipe definition is malformed."""

    def __init__(self, errors: list[str], recipe_name: str | None = None):
        self.errors = list(errors)
        self.recipe_name = recipe_name
        prefix = f"Recipe '{recipe_name}' is invalid" if recipe_name else "Recipe is invalid"
        super().__init__(f"{prefix}:\n" + "\n".join(f"  - {err}" for err in self.errors))


class MissingRequiredVariablesError(RecipeError):
    """Raised when required variables remain unresolved after resolution."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required variables: {', '.join(self.missing)}")


class EnumValidationError(RecipeError):
    """Raised when a resolved value is not one of a variable's allowed values."""

    def __init__(self, name: str, value: Any, allowed: list[Any]):
        self.name = name
        self.value = value
        self.allowed = list(allowed)
        allowed_str = ", ".join(str(v) for v in self.allowed)
        super().__init__(f"Variable '{name}' has invalid value '{value}'. Allowed values: {allowed_str}")


class DuplicateAiKeyError(RecipeError):
    """Raised when two AI blocks in one collection pass share an output key."""

    def __init__(self, key: str, first_source: str, second_source: str):
        self.key = key
        self.first_source = first_source
        self.second_source = second_source
        super().__init__(
            f"Duplicate AI block key '{key}': first defined in {first_source}, redefined in {second_source}"
        )


class TransportError(RecipeError):
    """Raised when an AI transport fails to produce a usable answer."""

    pass


class ConfigError(RecipeError):
    """Raised for invalid AI or engine configuration."""

    pass


class StepTimeoutError(RecipeError):
    """Raised when a step exceeds its timeout."""

    def __init__(self, step_name: str, timeout: float):
        self.step_name = step_name
        self.timeout = timeout
        super().__init__(f"Step '{step_name}': timed out after {timeout}s")


class GenerationError(RecipeError):
    """Raised when AI-generated output fails its checks after every attempt."""

    def __init__(self, step_name: str, errors: list[str], attempts: int = 1):
        self.step_name = step_name
        self.errors = list(errors)
        self.attempts = attempts
        super().__init__(
            f"Step '{step_name}': AI output failed validation after {attempts} attempt(s): {'; '.join(self.errors)}"
        )
