"""
AgentGate Workflow Registry Tests

Tests for definition validation, registration and the built-in templates.
"""

import pytest
from pydantic import ValidationError

from agentgate.core import (
    BUILTIN_WORKFLOWS,
    WorkflowAlreadyRegisteredError,
    WorkflowNotFoundError,
    WorkflowRegistry,
    WorkflowValidationError,
    register_builtin_workflows,
    validate_definition,
)
from agentgate.schemas import WorkflowDefinition

from conftest import definition, ref


def transform(step_id, next_step=None, expression="$"):
    step = {"id": step_id, "type": "transform", "config": {"expression": expression}}
    if next_step:
        step["next"] = next_step
    return step


def codes(result):
    return [issue.code for issue in result.errors]


class TestSchema:
    """Test step schema parsing."""

    def test_config_type_taken_from_step(self):
        wf = definition([transform("a")])
        assert wf.steps[0].config.type == "transform"

    def test_mismatched_config_rejected(self):
        with pytest.raises(ValidationError):
            definition([{"id": "a", "type": "loop", "config": {"type": "transform", "expression": "$"}}])

    def test_refs_parsed(self):
        wf = definition([{**transform("a"), "input_mapping": {"x": ref("input", "x"), "y": 5}}])

        mapping = wf.steps[0].input_mapping
        assert mapping["x"].step_id == "input"
        assert mapping["y"] == 5

    def test_definitions_are_frozen(self):
        wf = definition([transform("a")])
        with pytest.raises(ValidationError):
            wf.name = "changed"


class TestValidation:
    """Test structural validation."""

    def test_valid_linear(self):
        result = validate_definition(definition([transform("a", "b"), transform("b")]))

        assert result.valid
        assert result.warnings == []

    def test_missing_entry_point(self):
        result = validate_definition(definition([transform("a")], entry_point="zzz"))
        assert "E_MISSING_ENTRY" in codes(result)

    def test_duplicate_step_ids(self):
        result = validate_definition(definition([transform("a"), transform("a")]))
        assert "E_DUPLICATE_STEP" in codes(result)

    def test_nested_ids_share_namespace(self):
        loop = {
            "id": "loop",
            "type": "loop",
            "config": {"max_iterations": 2, "body": [transform("loop")]},
        }
        result = validate_definition(definition([loop]))
        assert "E_DUPLICATE_STEP" in codes(result)

    def test_missing_reference(self):
        result = validate_definition(definition([transform("a", "ghost")]))

        assert "E_MISSING_REF" in codes(result)
        assert result.errors[0].steps == ["a"]

    def test_condition_branch_targets_checked(self):
        step = {
            "id": "check",
            "type": "condition",
            "config": {"branches": [{"condition": "x == 1", "next_step": "ghost"}]},
        }
        result = validate_definition(definition([step]))
        assert "E_MISSING_REF" in codes(result)

    def test_bad_expression(self):
        step = {
            "id": "check",
            "type": "condition",
            "config": {"branches": [{"condition": "x ==", "next_step": "a"}]},
        }
        result = validate_definition(definition([step, transform("a")]))
        assert "E_BAD_EXPRESSION" in codes(result)

    def test_fallback_requires_target(self):
        step = {**transform("a"), "on_error": {"action": "fallback"}}
        result = validate_definition(definition([step]))
        assert "E_MISSING_FALLBACK" in codes(result)

    def test_approval_not_allowed_in_loop(self):
        loop = {
            "id": "loop",
            "type": "loop",
            "config": {
                "max_iterations": 2,
                "body": [{"id": "ask", "type": "human_approval", "config": {}}],
            },
        }
        result = validate_definition(definition([loop]))
        assert "E_NESTED_APPROVAL" in codes(result)

    def test_choice_approval_needs_choices(self):
        step = {"id": "ask", "type": "human_approval", "config": {"approval_type": "choice"}}
        result = validate_definition(definition([step]))
        assert "E_MISSING_CHOICES" in codes(result)

    def test_cycle_and_orphan_are_warnings(self):
        result = validate_definition(definition([
            transform("a", "b"),
            transform("b", "a"),
            transform("lonely"),
        ]))

        assert result.valid
        warning_codes = [w.code for w in result.warnings]
        assert "W_CYCLE" in warning_codes
        assert "W_ORPHAN" in warning_codes


class TestRegistry:
    """Test registering and looking up definitions."""

    @pytest.fixture
    def registry(self):
        return WorkflowRegistry()

    def test_register_and_get_copy(self, registry):
        registry.register(definition([transform("a")]))

        fetched = registry.get_definition("wf.test")
        assert fetched.id == "wf.test"
        assert fetched is not registry.get_definition("wf.test")

    def test_invalid_definition_lists_issues(self, registry):
        with pytest.raises(WorkflowValidationError) as exc_info:
            registry.register(definition([transform("a", "ghost")], entry_point="nope"))

        assert {i.code for i in exc_info.value.issues} == {"E_MISSING_ENTRY", "E_MISSING_REF"}
        assert not registry.has("wf.test")

    def test_duplicate_requires_replace(self, registry):
        registry.register(definition([transform("a")]))
        with pytest.raises(WorkflowAlreadyRegisteredError):
            registry.register(definition([transform("a")]))

        registry.register(definition([transform("a")], name="Replaced"), replace=True)
        assert registry.get_definition("wf.test").name == "Replaced"

    def test_not_found(self, registry):
        with pytest.raises(WorkflowNotFoundError) as exc_info:
            registry.get_definition("missing")
        assert str(exc_info.value) == 'Workflow "missing" not found'

    def test_unregister(self, registry):
        registry.register(definition([transform("a")]))

        assert registry.unregister("wf.test") is True
        assert registry.unregister("wf.test") is False
        assert len(registry) == 0


class TestBuiltinWorkflows:
    """Test the shipped templates."""

    def test_all_builtins_valid(self):
        for wf in BUILTIN_WORKFLOWS:
            result = validate_definition(wf)
            assert result.valid, f"{wf.id}: {result.errors}"

    def test_register_builtins_is_idempotent(self):
        registry = WorkflowRegistry()
        register_builtin_workflows(registry)
        register_builtin_workflows(registry)

        assert len(registry) == len(BUILTIN_WORKFLOWS)
        assert registry.has("workflow.content_moderation")
        assert isinstance(registry.get_definition("workflow.community_digest"), WorkflowDefinition)
