"""Tests for variable resolution across ask modes."""

from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest
from hypergen_recipes.errors import EnumValidationError
from hypergen_recipes.errors import MissingRequiredVariablesError
from hypergen_recipes.errors import TransportError
from hypergen_recipes.models import VariableSpec
from hypergen_recipes.transports import StdoutTransport
from hypergen_recipes.variables import ResolveOptions
from hypergen_recipes.variables import VariableResolver


class RecordingPrompter:
    """Prompter that answers from a dict and records what it was asked."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []

    async def prompt(self, requests):
        self.calls.append(requests)
        return {r.spec.name: self.answers[r.spec.name] for r in requests if r.spec.name in self.answers}


def specs(*items):
    return {spec.name: spec for spec in items}


def ai_transport(answers=None, side_effect=None):
    transport = MagicMock()
    transport.interactive = False
    transport.resolve_batch = AsyncMock(return_value=answers or {}, side_effect=side_effect)
    return transport


@pytest.fixture
def widget_specs():
    return specs(
        VariableSpec(name="name", type="string", required=True),
        VariableSpec(name="color", type="string", default="blue"),
    )


class TestEndToEndScenario:
    """Name/color recipe resolved under nobody mode."""

    @pytest.mark.asyncio
    async def test_provided_and_default(self, widget_specs):
        result = await VariableResolver().resolve(widget_specs, {"name": "Widget"}, ResolveOptions(ask="nobody"))
        assert result == {"name": "Widget", "color": "blue"}

    @pytest.mark.asyncio
    async def test_missing_required(self, widget_specs):
        with pytest.raises(MissingRequiredVariablesError) as exc_info:
            await VariableResolver().resolve(widget_specs, {}, ResolveOptions(ask="nobody"))
        assert exc_info.value.missing == ["name"]

    @pytest.mark.asyncio
    async def test_no_defaults_makes_default_missing(self, widget_specs):
        with pytest.raises(MissingRequiredVariablesError) as exc_info:
            await VariableResolver().resolve(
                widget_specs, {"name": "Widget"}, ResolveOptions(ask="nobody", no_defaults=True)
            )
        assert exc_info.value.missing == ["color"]

    @pytest.mark.asyncio
    async def test_no_defaults_leaves_plain_optional_absent(self):
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="name", default="x"), VariableSpec(name="note")),
            {"name": "given"},
            ResolveOptions(ask="nobody", no_defaults=True),
        )
        assert result == {"name": "given"}


class TestPrecedence:
    """Provided values, defaults and suggestions."""

    @pytest.mark.asyncio
    async def test_default_applied_without_prompting(self):
        prompter = RecordingPrompter()
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="port", type="number", default=3000)),
            {},
            ResolveOptions(ask="me", prompter=prompter),
        )
        assert result == {"port": 3000}
        assert prompter.calls == []

    @pytest.mark.asyncio
    async def test_default_not_consulted_by_ai(self):
        transport = ai_transport()
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="port", type="number", default=3000)),
            {},
            ResolveOptions(ask="ai", transport=transport),
        )
        assert result == {"port": 3000}
        transport.resolve_batch.assert_not_called()

    @pytest.mark.asyncio
    async def test_provided_value_wins_in_every_mode(self):
        spec = specs(VariableSpec(name="color", default="blue", suggestion="green"))
        for ask in ("me", "ai", "nobody"):
            result = await VariableResolver().resolve(
                spec,
                {"color": "red"},
                ResolveOptions(ask=ask, no_defaults=True, prompter=RecordingPrompter(), transport=ai_transport()),
            )
            assert result["color"] == "red"

    @pytest.mark.asyncio
    async def test_suggestion_never_auto_applies(self):
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="framework", suggestion="next")),
            {},
            ResolveOptions(ask="nobody"),
        )
        assert "framework" not in result

    @pytest.mark.asyncio
    async def test_undeclared_values_pass_through(self):
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="name", default="x")),
            {"extra": {"nested": True}},
            ResolveOptions(),
        )
        assert result == {"name": "x", "extra": {"nested": True}}

    @pytest.mark.asyncio
    async def test_missing_lists_every_required_variable(self):
        declared = specs(
            VariableSpec(name="a", required=True),
            VariableSpec(name="b", required=True),
            VariableSpec(name="optional"),
            VariableSpec(name="c", required=True),
        )
        with pytest.raises(MissingRequiredVariablesError) as exc_info:
            await VariableResolver().resolve(declared, {}, ResolveOptions(ask="nobody"))
        assert exc_info.value.missing == ["a", "b", "c"]
        assert str(exc_info.value) == "Missing required variables: a, b, c"


class TestInteractiveMode:
    """ask=me batches unresolved variables into one prompt session."""

    @pytest.mark.asyncio
    async def test_batches_in_declaration_order(self):
        prompter = RecordingPrompter({"first": "one", "second": "two"})
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="first"), VariableSpec(name="second"), VariableSpec(name="third")),
            {},
            ResolveOptions(ask="me", prompter=prompter),
        )
        assert len(prompter.calls) == 1
        assert [r.spec.name for r in prompter.calls[0]] == ["first", "second", "third"]
        assert result == {"first": "one", "second": "two"}

    @pytest.mark.asyncio
    async def test_hint_prefers_suggestion(self):
        prompter = RecordingPrompter()
        await VariableResolver().resolve(
            specs(VariableSpec(name="db", suggestion="postgres")),
            {},
            ResolveOptions(ask="me", prompter=prompter),
        )
        assert prompter.calls[0][0].hint == "postgres"

    @pytest.mark.asyncio
    async def test_no_defaults_shows_default_as_hint(self):
        prompter = RecordingPrompter({"color": "green"})
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="color", default="blue")),
            {},
            ResolveOptions(ask="me", no_defaults=True, prompter=prompter),
        )
        assert prompter.calls[0][0].hint == "blue"
        assert result == {"color": "green"}

    @pytest.mark.asyncio
    async def test_no_hint_without_suggestion_or_suppressed_default(self):
        prompter = RecordingPrompter()
        await VariableResolver().resolve(
            specs(VariableSpec(name="title")), {}, ResolveOptions(ask="me", prompter=prompter)
        )
        assert prompter.calls[0][0].hint is None

    @pytest.mark.asyncio
    async def test_prompted_values_are_coerced(self):
        prompter = RecordingPrompter({"port": "8080", "ssr": "yes", "tags": "a, b"})
        result = await VariableResolver().resolve(
            specs(
                VariableSpec(name="port", type="number"),
                VariableSpec(name="ssr", type="boolean"),
                VariableSpec(name="tags", type="array"),
            ),
            {},
            ResolveOptions(ask="me", prompter=prompter),
        )
        assert result == {"port": 8080, "ssr": True, "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_unanswered_required_is_missing(self):
        with pytest.raises(MissingRequiredVariablesError):
            await VariableResolver().resolve(
                specs(VariableSpec(name="name", required=True)),
                {},
                ResolveOptions(ask="me", prompter=RecordingPrompter()),
            )


class TestAiMode:
    """ask=ai delegates to the transport in one batch."""

    @pytest.mark.asyncio
    async def test_single_batch_with_descriptions(self):
        transport = ai_transport({"name": "Widget", "size": 3})
        result = await VariableResolver().resolve(
            specs(
                VariableSpec(name="name", required=True, description="Component name", suggestion="Button"),
                VariableSpec(name="size", type="number"),
            ),
            {"known": 1},
            ResolveOptions(ask="ai", transport=transport, recipe_name="component"),
        )
        assert result == {"known": 1, "name": "Widget", "size": 3}
        transport.resolve_batch.assert_awaited_once()
        requests, resolved, recipe_name, _ = transport.resolve_batch.call_args.args
        assert [r.spec.description for r in requests] == ["Component name", None]
        assert requests[0].spec.suggestion == "Button"
        assert resolved == {"known": 1}
        assert recipe_name == "component"

    @pytest.mark.asyncio
    async def test_skipped_default_sent_to_ai(self):
        transport = ai_transport({"color": "teal"})
        await VariableResolver().resolve(
            specs(VariableSpec(name="color", default="blue")),
            {},
            ResolveOptions(ask="ai", no_defaults=True, transport=transport),
        )
        requests = transport.resolve_batch.call_args.args[0]
        assert requests[0].skipped_default == "blue"

    @pytest.mark.asyncio
    async def test_ai_declining_required_raises(self):
        transport = ai_transport({})
        with pytest.raises(MissingRequiredVariablesError) as exc_info:
            await VariableResolver().resolve(
                specs(VariableSpec(name="a", required=True), VariableSpec(name="b", required=True)),
                {},
                ResolveOptions(ask="ai", transport=transport),
            )
        assert exc_info.value.missing == ["a", "b"]

    @pytest.mark.asyncio
    async def test_transport_error_treated_as_declined(self):
        transport = ai_transport(side_effect=TransportError("boom"))
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="optional")),
            {},
            ResolveOptions(ask="ai", transport=transport),
        )
        assert result == {}

    @pytest.mark.asyncio
    async def test_stdout_transport_falls_back_to_prompting(self):
        transport = StdoutTransport()
        transport.send = AsyncMock()
        prompter = RecordingPrompter({"name": "Widget"})
        result = await VariableResolver().resolve(
            specs(VariableSpec(name="name", required=True, suggestion="Thing")),
            {},
            ResolveOptions(ask="ai", transport=transport, prompter=prompter),
        )
        assert result == {"name": "Widget"}
        assert len(prompter.calls) == 1
        assert prompter.calls[0][0].hint == "Thing"
        transport.send.assert_not_called()


class TestEnumValidation:
    """Enum membership is checked for every resolution source."""

    COLOR = VariableSpec(name="color", type="enum", values=["red", "green"], default="red")

    @pytest.mark.asyncio
    async def test_provided_value(self):
        with pytest.raises(EnumValidationError) as exc_info:
            await VariableResolver().resolve(specs(self.COLOR), {"color": "blue"})
        assert exc_info.value.name == "color"
        assert exc_info.value.value == "blue"
        assert exc_info.value.allowed == ["red", "green"]
        assert "red, green" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_default_value(self):
        bad_default = VariableSpec(name="color", type="enum", values=["red"], default="blue")
        with pytest.raises(EnumValidationError):
            await VariableResolver().resolve(specs(bad_default), {})

    @pytest.mark.asyncio
    async def test_prompted_value(self):
        with pytest.raises(EnumValidationError):
            await VariableResolver().resolve(
                specs(self.COLOR),
                {},
                ResolveOptions(ask="me", no_defaults=True, prompter=RecordingPrompter({"color": "purple"})),
            )

    @pytest.mark.asyncio
    async def test_ai_value(self):
        with pytest.raises(EnumValidationError):
            await VariableResolver().resolve(
                specs(self.COLOR),
                {},
                ResolveOptions(ask="ai", no_defaults=True, transport=ai_transport({"color": "purple"})),
            )

    @pytest.mark.asyncio
    async def test_valid_value_accepted(self):
        result = await VariableResolver().resolve(specs(self.COLOR), {"color": "green"})
        assert result == {"color": "green"}


class TestOptions:
    @pytest.mark.asyncio
    async def test_unknown_ask_mode(self):
        with pytest.raises(ValueError, match="ask must be one of"):
            await VariableResolver().resolve({}, {}, ResolveOptions(ask="everyone"))
