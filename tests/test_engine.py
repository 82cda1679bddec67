"""End-to-end tests for RecipeEngine and the two-pass AI protocol."""

import json
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest
from hypergen_recipes.engine import ExecutionOptions
from hypergen_recipes.engine import RecipeEngine
from hypergen_recipes.errors import MissingRequiredVariablesError
from hypergen_recipes.errors import RecipeError
from hypergen_recipes.errors import RecipeValidationError
from hypergen_recipes.transports import CommandTransport
from hypergen_recipes.transports import TransportResult

WIDGET_TEMPLATE = """\
---
to: src/{{ name | kebab_case }}.ts
---
{% context %}Widgets are UI components.{% endcontext %}
// {{ name }} ({{ color }})
export const description = "{% ai 'description' %}
{% prompt %}Describe the {{ name }} widget in one sentence.{% endprompt %}
{% output %}A single sentence.{% endoutput %}
{% endai %}";
"""

WIDGET_RECIPE = """\
name: widget
description: Generate a widget
version: 1.0.0
variables:
  name:
    type: string
    required: true
  color:
    type: string
    default: blue
steps:
  - name: render
    template: templates/widget.jinja
"""


def write_file(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def project(temp_dir):
    path = temp_dir / "project"
    path.mkdir()
    return path


@pytest.fixture
def widget_recipe(temp_dir):
    recipe_dir = temp_dir / "recipes" / "widget"
    write_file(recipe_dir / "templates" / "widget.jinja", WIDGET_TEMPLATE)
    return write_file(recipe_dir / "recipe.yml", WIDGET_RECIPE)


def options(project, **kwargs):
    kwargs.setdefault("variables", {"name": "FancyButton"})
    return ExecutionOptions(cwd=project, **kwargs)


class TestStdoutTwoPass:
    """Deferred answering through printed prompts."""

    @pytest.mark.asyncio
    async def test_collect_pass_defers(self, project, widget_recipe):
        """Collect pass returns the prompt and writes nothing."""
        result = await RecipeEngine().execute_recipe(
            str(widget_recipe), options(project, original_command="hypergen-recipe run widget")
        )

        assert result.needs_answers is True
        assert result.exit_code == 2
        assert result.success is True
        assert "Describe the FancyButton widget in one sentence." in result.pending_prompt
        assert "Widgets are UI components." in result.pending_prompt
        assert "hypergen-recipe run widget --answers ./ai-answers.json" in result.pending_prompt
        assert list(project.iterdir()) == []

    @pytest.mark.asyncio
    async def test_answer_pass_writes(self, project, widget_recipe):
        answers = {"description": "A button with flair."}

        result = await RecipeEngine().execute_recipe(str(widget_recipe), options(project, answers=answers))

        target = project / "src" / "fancy-button.ts"
        assert result.success is True
        assert result.exit_code == 0
        assert result.files_created == [str(target)]
        assert 'export const description = "A button with flair.";' in target.read_text()
        assert "// FancyButton (blue)" in target.read_text()

    @pytest.mark.asyncio
    async def test_answer_pass_is_repeatable(self, temp_dir, widget_recipe):
        """Same answers give byte-identical files."""
        answers = {"description": "Stable text."}
        outputs = []
        for run in ("first", "second"):
            cwd = temp_dir / run
            cwd.mkdir()
            await RecipeEngine().execute_recipe(str(widget_recipe), options(cwd, answers=answers))
            outputs.append((cwd / "src" / "fancy-button.ts").read_bytes())

        assert outputs[0] == outputs[1]

    @pytest.mark.asyncio
    async def test_answers_file(self, temp_dir, project, widget_recipe):
        answers_path = write_file(temp_dir / "answers.json", json.dumps({"description": "From file."}))

        result = await RecipeEngine().execute_recipe(
            str(widget_recipe), options(project, answers_path=answers_path)
        )

        assert result.success is True
        assert result.answers == {"description": "From file."}
        assert "From file." in (project / "src" / "fancy-button.ts").read_text()

    @pytest.mark.asyncio
    async def test_missing_answer_fails_step(self, project, widget_recipe):
        result = await RecipeEngine().execute_recipe(str(widget_recipe), options(project, answers={}))

        assert result.success is False
        assert result.exit_code == 1
        assert "No answer provided for AI block 'description'" in result.errors[0]

    @pytest.mark.asyncio
    async def test_bad_answers_file(self, temp_dir, project, widget_recipe):
        bad = write_file(temp_dir / "answers.json", "[1, 2]")

        with pytest.raises(RecipeError, match="must contain a JSON object"):
            await RecipeEngine().execute_recipe(str(widget_recipe), options(project, answers_path=bad))

        with pytest.raises(RecipeError, match="not found"):
            await RecipeEngine().execute_recipe(
                str(widget_recipe), options(project, answers_path=temp_dir / "missing.json")
            )


class TestResolvingTransports:
    """Transports that answer within one invocation."""

    @pytest.mark.asyncio
    async def test_command_transport(self, project, widget_recipe):
        transport = CommandTransport("""cat >/dev/null && printf '%s' '{"description": "Piped answer."}'""")

        result = await RecipeEngine().execute_recipe(str(widget_recipe), options(project, transport=transport))

        assert result.success is True
        assert result.needs_answers is False
        assert "Piped answer." in (project / "src" / "fancy-button.ts").read_text()

    @pytest.mark.asyncio
    async def test_transport_receives_collected_blocks(self, project, widget_recipe):
        seen = []

        async def resolve_blocks(collector, original_command, answers_path=None):
            seen.append((list(collector.get_entries()), original_command))
            return TransportResult(status="resolved", answers={"description": "Mocked."})

        transport = MagicMock()
        transport.resolve_blocks = AsyncMock(side_effect=resolve_blocks)

        result = await RecipeEngine().execute_recipe(str(widget_recipe), options(project, transport=transport))

        assert seen == [(["description"], f"hypergen-recipe run {widget_recipe.resolve()}")]
        assert result.answers == {"description": "Mocked."}

    @pytest.mark.asyncio
    async def test_transport_failure(self, project, widget_recipe):
        transport = CommandTransport("exit 1")

        result = await RecipeEngine().execute_recipe(str(widget_recipe), options(project, transport=transport))

        assert result.success is False
        assert result.exit_code == 1
        assert any("AI transport failed" in error for error in result.errors)
        assert not (project / "src").exists()


class TestSinglePass:
    """Recipes without AI blocks."""

    @pytest.mark.asyncio
    async def test_no_ai_blocks_writes_immediately(self, project):
        recipe = {
            "name": "plain",
            "variables": {"name": {"required": True}},
            "steps": [{"name": "dirs", "paths": ["src/{{ name }}"]}, {"name": "hello", "command": "echo hi"}],
        }
        transport = MagicMock()
        transport.resolve_blocks = AsyncMock()

        result = await RecipeEngine().execute_recipe(recipe, options(project, transport=transport))

        assert result.success is True
        assert (project / "src" / "FancyButton").is_dir()
        assert result.step_results[1].output["stdout"].strip() == "hi"
        transport.resolve_blocks.assert_not_called()

    @pytest.mark.asyncio
    async def test_sequence_abort_counts(self, project):
        recipe = {
            "name": "abort",
            "steps": [{"command": "true"}, {"command": "exit 1"}, {"command": "touch never"}],
        }

        result = await RecipeEngine().execute_recipe(recipe, options(project, variables={}))

        assert result.success is False
        assert result.exit_code == 1
        assert (result.total_steps, result.completed_steps, result.failed_steps, result.skipped_steps) == (2, 1, 1, 0)
        assert not (project / "never").exists()
        assert result.errors[0].startswith("shell-2:")

    @pytest.mark.asyncio
    async def test_collect_failure_stops_before_transport(self, project, temp_dir):
        write_file(temp_dir / "t" / "ai.jinja", "{% ai 'k' %}{% prompt %}p{% endprompt %}{% endai %}")
        recipe = {
            "name": "broken",
            "steps": [
                {"name": "ok", "template": str(temp_dir / "t" / "ai.jinja"), "to": "out.txt"},
                {"name": "missing", "template": "nope.jinja"},
            ],
        }
        transport = MagicMock()
        transport.resolve_blocks = AsyncMock()

        result = await RecipeEngine().execute_recipe(recipe, options(project, variables={}, transport=transport))

        assert result.success is False
        transport.resolve_blocks.assert_not_called()


class CountingPrompter:
    """Prompter that answers from a dict and counts prompt sessions."""

    def __init__(self, answers):
        self.answers = answers
        self.sessions = 0

    async def prompt(self, requests):
        self.sessions += 1
        return {r.spec.name: self.answers[r.spec.name] for r in requests if r.spec.name in self.answers}


SUB_RECIPE = """\
name: sub
variables:
  title:
    type: string
    required: true
steps:
  - name: write
    command: printf '%s' "{{ title }}" > title.txt
"""


class TestSubRecipes:
    """Sub-recipes across the passes of one run."""

    @pytest.mark.asyncio
    async def test_prompts_once_per_run(self, project):
        write_file(project / "sub.yml", SUB_RECIPE)
        prompter = CountingPrompter({"title": "Hello"})
        recipe = {"name": "main", "steps": [{"name": "child", "recipe": "sub.yml"}]}

        result = await RecipeEngine().execute_recipe(
            recipe, options(project, variables={}, ask="me", prompter=prompter)
        )

        assert result.success is True
        assert prompter.sessions == 1
        assert (project / "title.txt").read_text() == "Hello"

    @pytest.mark.asyncio
    async def test_same_values_after_ai_blocks(self, project, temp_dir):
        """The write pass after a resolving transport reuses the collect pass values."""
        write_file(project / "sub.yml", SUB_RECIPE)
        write_file(temp_dir / "t" / "ai.jinja", "{% ai 'k' %}{% prompt %}p{% endprompt %}{% endai %}\n")
        prompter = CountingPrompter({"title": "Once"})
        transport = CommandTransport("""cat >/dev/null && printf '%s' '{"k": "answered"}'""")
        recipe = {
            "name": "main",
            "steps": [
                {"name": "child", "recipe": "sub.yml"},
                {"name": "ai", "template": str(temp_dir / "t" / "ai.jinja"), "to": "ai.txt"},
            ],
        }

        result = await RecipeEngine().execute_recipe(
            recipe, options(project, variables={}, ask="me", prompter=prompter, transport=transport)
        )

        assert result.success is True
        assert prompter.sessions == 1
        assert (project / "ai.txt").read_text() == "answered\n"

    @pytest.mark.asyncio
    async def test_missing_variable_ends_run(self, project):
        write_file(project / "sub.yml", SUB_RECIPE)
        recipe = {"name": "main", "steps": [{"name": "child", "recipe": "sub.yml", "on_error": "continue"}]}

        with pytest.raises(MissingRequiredVariablesError, match="title"):
            await RecipeEngine().execute_recipe(recipe, options(project, variables={}))

    @pytest.mark.asyncio
    async def test_parallel_siblings_finish_before_error(self, project):
        write_file(project / "broken.yml", "name: broken\nsteps: []\n")
        recipe = {
            "name": "main",
            "steps": [
                {
                    "name": "group",
                    "parallel": [
                        {"name": "slow", "command": "sleep 0.5 && touch late.txt"},
                        {"name": "bad", "recipe": "broken.yml"},
                    ],
                }
            ],
        }

        with pytest.raises(RecipeValidationError):
            await RecipeEngine().execute_recipe(recipe, options(project, variables={}, answers={}))

        assert (project / "late.txt").exists()


class TestAiSteps:
    """``ai`` steps inside full runs."""

    README_RECIPE = {"name": "docs", "steps": [{"name": "readme", "prompt": "Describe {{ name }}", "to": "README.md"}]}

    @pytest.mark.asyncio
    async def test_stdout_defers_then_writes(self, project):
        deferred = await RecipeEngine().execute_recipe(self.README_RECIPE, options(project))

        assert deferred.needs_answers is True
        assert "Describe FancyButton" in deferred.pending_prompt
        assert not (project / "README.md").exists()

        result = await RecipeEngine().execute_recipe(
            self.README_RECIPE, options(project, answers={"readme": "FancyButton docs."})
        )

        assert result.success is True
        assert (project / "README.md").read_text() == "FancyButton docs.\n"

    @pytest.mark.asyncio
    async def test_command_transport_generates_once(self, project):
        calls = project / "calls.log"
        transport = CommandTransport(f"cat >/dev/null && echo call >> {calls} && printf '%s' 'Generated readme'")

        result = await RecipeEngine().execute_recipe(self.README_RECIPE, options(project, transport=transport))

        assert result.success is True
        assert result.needs_answers is False
        assert (project / "README.md").read_text() == "Generated readme\n"
        assert calls.read_text().splitlines() == ["call"]


class TestStructuredAnswers:
    @pytest.mark.asyncio
    async def test_mapping_answer_written_as_json(self, project, temp_dir):
        write_file(temp_dir / "t" / "cfg.jinja", "{% ai 'cfg' %}{% prompt %}Config{% endprompt %}{% endai %}\n")
        template = str(temp_dir / "t" / "cfg.jinja")
        recipe = {"name": "cfg", "steps": [{"name": "cfg", "template": template, "to": "cfg.json"}]}

        result = await RecipeEngine().execute_recipe(
            recipe, options(project, variables={}, answers={"cfg": {"port": 8080, "debug": True}})
        )

        assert result.success is True
        assert json.loads((project / "cfg.json").read_text()) == {"port": 8080, "debug": True}


class TestEngineErrors:
    """Errors raised before any step runs."""

    @pytest.mark.asyncio
    async def test_invalid_recipe(self, project):
        with pytest.raises(RecipeValidationError) as exc_info:
            await RecipeEngine().execute_recipe({"name": "empty", "steps": []}, options(project))
        assert "Recipe must have at least one step" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_missing_variables(self, project, widget_recipe):
        with pytest.raises(MissingRequiredVariablesError):
            await RecipeEngine().execute_recipe(str(widget_recipe), options(project, variables={}))

    @pytest.mark.asyncio
    async def test_yaml_text_recipe(self, project):
        result = await RecipeEngine().execute_recipe(
            "name: inline\nsteps:\n  - command: 'true'\n", options(project, variables={})
        )
        assert result.success is True

    def test_validate_recipe_reports_load_errors(self, project):
        errors = RecipeEngine().validate_recipe("missing-recipe", project)
        assert errors and "Recipe not found" in errors[0]


class TestProgressDisplay:
    @pytest.mark.asyncio
    async def test_messages_routed_to_display(self, project):
        display = MagicMock()
        engine = RecipeEngine(display=display)

        await engine.execute_recipe({"name": "p", "steps": [{"command": "true"}]}, options(project, variables={}))

        messages = [c.kwargs["message"] for c in display.show_message.call_args_list]
        assert messages[0] == "Starting recipe: p (1 steps)"
        assert "Recipe completed: p" in messages
        assert all(c.kwargs["source"] == "recipe" for c in display.show_message.call_args_list)
