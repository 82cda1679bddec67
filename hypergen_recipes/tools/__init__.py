"""Recipe tools and the registry that maps step kinds to them."""

import logging
from collections.abc import Callable

from ..models import COMPOSITE_KINDS
from ..models import TOOL_KINDS
from .actions import ActionContext
from .actions import ActionTool
from .actions import CodemodTool
from .actions import action
from .actions import codemod
from .ai import AiTool
from .base import RecursionState
from .base import StepContext
from .base import StepResult
from .base import Tool
from .files import EnsureDirsTool
from .files import PatchTool
from .files import QueryTool
from .install import InstallTool
from .recipe import RecipeTool
from .shell import ShellTool
from .template import TemplateTool

logger = logging.getLogger(__name__)

ToolFactory = Callable[[], Tool]

DEFAULT_TOOLS: dict[str, ToolFactory] = {
    "template": TemplateTool,
    "shell": ShellTool,
    "ai": AiTool,
    "ensure-dirs": EnsureDirsTool,
    "install": InstallTool,
    "patch": PatchTool,
    "query": QueryTool,
    "recipe": RecipeTool,
    "action": ActionTool,
    "codemod": CodemodTool,
}


class ToolRegistry:
    """Maps leaf step kinds to tool factories.

    Composite kinds (sequence, parallel, conditional) are handled by the
    executor and cannot be registered. Instances are created on first use
    and reused afterwards. Register everything before execution starts;
    lookups take no lock.
    """

    def __init__(self) -> None:
        self._factories: dict[str, ToolFactory] = {}
        self._instances: dict[str, Tool] = {}

    @classmethod
    def with_defaults(cls) -> "ToolRegistry":
        registry = cls()
        for kind, factory in DEFAULT_TOOLS.items():
            registry.register(kind, factory)
        return registry

    def register(self, kind: str, factory: ToolFactory, replace: bool = False) -> None:
        if kind in COMPOSITE_KINDS:
            raise ValueError(f"'{kind}' is a composite step kind handled by the executor")
        if kind in self._factories and not replace:
            raise ValueError(f"Tool '{kind}' is already registered")
        if kind not in TOOL_KINDS:
            logger.debug(f"Registering non-standard tool kind '{kind}'")
        self._factories[kind] = factory
        self._instances.pop(kind, None)

    def has(self, kind: str) -> bool:
        return kind in self._factories

    def kinds(self) -> list[str]:
        return list(self._factories)

    def get(self, kind: str) -> Tool:
        """Return the tool instance for a step kind, creating it on first use."""
        tool = self._instances.get(kind)
        if tool is not None:
            return tool
        factory = self._factories.get(kind)
        if factory is None:
            raise ValueError(f"No tool registered for '{kind}'. Registered tools: {', '.join(self._factories)}")
        tool = factory()
        self._instances[kind] = tool
        return tool


__all__ = [
    "ActionContext",
    "ActionTool",
    "AiTool",
    "CodemodTool",
    "EnsureDirsTool",
    "InstallTool",
    "PatchTool",
    "QueryTool",
    "RecipeTool",
    "RecursionState",
    "ShellTool",
    "StepContext",
    "StepResult",
    "TemplateTool",
    "Tool",
    "ToolRegistry",
    "action",
    "codemod",
]
