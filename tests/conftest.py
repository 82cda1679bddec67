"""Shared fixtures for recipe engine tests."""

from pathlib import Path

import pytest
from hypergen_recipes.collector import AiCollector
from hypergen_recipes.executor import StepExecutor
from hypergen_recipes.rendering import TemplateRenderer
from hypergen_recipes.tools import StepContext


@pytest.fixture
def temp_dir(tmp_path):
    """Create temp directory for tests."""
    return tmp_path


@pytest.fixture
def collector():
    """Fresh collector in answer mode."""
    return AiCollector()


@pytest.fixture
def renderer():
    return TemplateRenderer()


@pytest.fixture
def make_context(temp_dir, collector, renderer):
    """Build a StepContext rooted at the temp directory."""

    def _make(variables=None, collect_mode=False, answers=None, **kwargs):
        collector.collect_mode = collect_mode
        kwargs.setdefault("executor", StepExecutor())
        return StepContext(
            variables=dict(variables or {}),
            cwd=Path(temp_dir),
            collector=collector,
            renderer=renderer,
            answers=answers,
            **kwargs,
        )

    return _make
