"""Tests for expression, switch and llm decision nodes."""

from __future__ import annotations

import pytest

from nodeflow.models import ExecutionContext, Node
from nodeflow.service.decision import DecisionNodeExecutor, matches_condition
from nodeflow.service.variables import MISSING


def _node(**config) -> Node:
    return Node(id="decide", type="decision", config=config)


@pytest.fixture
def executor():
    return DecisionNodeExecutor()


@pytest.fixture
def context():
    return ExecutionContext(initial_data={"q": "hello"}, run_id="r", workflow_id="w")


class TestExpressionDecision:
    """Expression decisions route to "true" or "false"."""

    @pytest.mark.asyncio
    async def test_empty_list_length_routes_false(self, executor, context):
        node = _node(type="expression", expression="$.data.results.length > 0")

        empty = await executor.execute(node, {"data": {"results": []}}, context)
        full = await executor.execute(node, {"data": {"results": [1]}}, context)

        assert empty.branch == "false"
        assert full.branch == "true"
        assert full.output["processedExpression"] == "1 > 0"
        assert full.output["value"] is True

    @pytest.mark.asyncio
    async def test_type_defaults_to_expression(self, executor, context):
        result = await executor.execute(_node(expression="$.n >= 3"), {"n": 3}, context)
        assert result.branch == "true"

    @pytest.mark.asyncio
    async def test_unsafe_expression_degrades_to_false(self, executor, context):
        for expression in ["process.exit()", "$.n > 1; true"]:
            result = await executor.execute(_node(expression=expression), {"n": 5}, context)

            assert result.success is True
            assert result.branch == "false"
            assert result.output["value"] is False
            assert result.output["error"]

    @pytest.mark.asyncio
    async def test_string_values_cannot_inject_code(self, executor, context):
        node = _node(expression='$.name == "x"')
        result = await executor.execute(node, {"name": '" || true || "'}, context)
        assert result.branch == "false"

    @pytest.mark.asyncio
    async def test_evaluation_error_degrades_to_false(self, executor, context):
        result = await executor.execute(_node(expression="$.s > 1"), {"s": "abc"}, context)

        assert result.branch == "false"
        assert "cannot compare" in result.output["error"]

    @pytest.mark.asyncio
    async def test_missing_expression_defaults_false(self, executor, context):
        result = await executor.execute(_node(type="expression"), {}, context)
        assert result.branch == "false"
        assert result.output == {"branch": "false", "value": False}

    @pytest.mark.asyncio
    async def test_expression_sees_run_input(self, executor, context):
        result = await executor.execute(_node(expression='$.input.q == "hello"'), {}, context)
        assert result.branch == "true"

    @pytest.mark.asyncio
    async def test_string_input_matches_number_with_loose_equality(self, executor):
        context = ExecutionContext(initial_data={"count": "5"}, run_id="r", workflow_id="w")

        loose = await executor.execute(_node(expression="$.input.count == 5"), {}, context)
        strict = await executor.execute(_node(expression="$.input.count === 5"), {}, context)

        assert loose.branch == "true"
        assert loose.output["processedExpression"] == '"5" == 5'
        assert strict.branch == "false"

    @pytest.mark.asyncio
    async def test_unresolved_paths_become_null(self, executor, context):
        result = await executor.execute(_node(expression="!exists($.nope.deeper)"), {}, context)
        assert result.branch == "true"


class TestSwitchDecision:
    """Switch decisions: ordered conditions, first match wins."""

    @pytest.mark.asyncio
    async def test_first_match_wins(self, executor, context):
        node = _node(
            type="switch",
            variable="$.value",
            conditions=[{"branch": "a", "equals": 1}, {"branch": "b", "greaterThan": 0}],
            defaultBranch="z",
        )
        result = await executor.execute(node, {"value": 1}, context)

        assert result.branch == "a"
        assert result.output == {"branch": "a", "value": 1, "matched": True, "condition": "a"}

    @pytest.mark.asyncio
    async def test_unresolved_variable_falls_back_to_default(self, executor, context):
        node = _node(
            type="switch",
            variable="$.missing",
            conditions=[{"branch": "a", "equals": 1}, {"branch": "b", "greaterThan": 0}],
            defaultBranch="fallback",
        )
        result = await executor.execute(node, {}, context)

        assert result.branch == "fallback"
        assert result.output["matched"] is False
        assert result.output["value"] is None

    @pytest.mark.asyncio
    async def test_default_branch_name(self, executor, context):
        node = _node(type="switch", variable="$.v", conditions=[])
        result = await executor.execute(node, {"v": 1}, context)
        assert result.branch == "default"

    @pytest.mark.asyncio
    async def test_missing_variable_config(self, executor, context):
        node = _node(type="switch", conditions=[{"branch": "a", "equals": None}])
        result = await executor.execute(node, {}, context)
        assert result.output == {"branch": "default", "value": None, "matched": False}

    @pytest.mark.asyncio
    async def test_string_operators(self, executor, context):
        node = _node(
            type="switch",
            variable="$.mime",
            conditions=[
                {"branch": "pdf", "equals": "application/pdf"},
                {"branch": "image", "contains": "image/"},
                {"branch": "text", "matches": "^text/"},
            ],
            defaultBranch="unknown",
        )
        assert (await executor.execute(node, {"mime": "image/png"}, context)).branch == "image"
        assert (await executor.execute(node, {"mime": "text/csv"}, context)).branch == "text"
        assert (await executor.execute(node, {"mime": "audio/ogg"}, context)).branch == "unknown"

    @pytest.mark.asyncio
    async def test_conditions_without_branch_are_skipped(self, executor, context):
        node = _node(
            type="switch",
            variable="$.v",
            conditions=[{"equals": 1}, "junk", {"branch": "ok", "equals": 1}],
        )
        result = await executor.execute(node, {"v": 1}, context)
        assert result.branch == "ok"

    @pytest.mark.asyncio
    async def test_conditions_must_be_a_list(self, executor, context):
        node = _node(type="switch", variable="$.v", conditions={"branch": "a"})
        result = await executor.execute(node, {"v": 1}, context)
        assert result.success is False
        assert result.error.details == {"nodeId": "decide", "decisionType": "switch"}


class TestMatchesCondition:
    def test_equality_is_strict(self):
        assert matches_condition(1, {"equals": 1})
        assert not matches_condition("1", {"equals": 1})
        assert not matches_condition(True, {"equals": 1})
        assert matches_condition(2, {"notEquals": 1})

    def test_ordering(self):
        assert matches_condition(5, {"greaterThan": 4})
        assert matches_condition(4, {"greaterThanOrEqual": 4})
        assert matches_condition(3, {"lessThan": 4})
        assert matches_condition(4, {"lessThanOrEqual": 4})
        assert matches_condition("b", {"greaterThan": "a"})

    def test_incomparable_ordering_is_no_match(self):
        assert not matches_condition("5", {"greaterThan": 4})
        assert not matches_condition(None, {"lessThan": 4})
        assert not matches_condition(MISSING, {"greaterThan": 0})

    def test_missing_compares_as_none(self):
        assert matches_condition(MISSING, {"equals": None})
        assert matches_condition(MISSING, {"in": [None]})

    def test_malformed_regex_is_no_match(self):
        assert not matches_condition("abc", {"matches": "(["})

    def test_string_operators_need_strings(self):
        assert not matches_condition(123, {"contains": "2"})
        assert not matches_condition(["a"], {"matches": "a"})

    def test_membership(self):
        assert matches_condition("b", {"in": ["a", "b"]})
        assert not matches_condition("c", {"in": ["a", "b"]})
        assert matches_condition("c", {"notIn": ["a", "b"]})
        assert not matches_condition("a", {"in": "abc"})

    def test_first_operator_key_decides(self):
        assert not matches_condition(5, {"equals": 4, "greaterThan": 1})

    def test_no_operator_is_no_match(self):
        assert not matches_condition(5, {"branch": "x"})


class TestOtherDecisionTypes:
    @pytest.mark.asyncio
    async def test_llm_stub_returns_default_branch(self, executor, context):
        result = await executor.execute(_node(type="llm", defaultBranch="human"), {}, context)

        assert result.success is True
        assert result.branch == "human"
        assert result.output["reason"]

    @pytest.mark.asyncio
    async def test_llm_stub_default(self, executor, context):
        result = await executor.execute(_node(type="llm"), {}, context)
        assert result.branch == "default"

    @pytest.mark.asyncio
    async def test_unknown_type_is_error(self, executor, context):
        result = await executor.execute(_node(type="coinflip"), {}, context)

        assert result.success is False
        assert result.branch is None
        assert "decide" in result.error.message
        assert result.error.details == {"nodeId": "decide", "decisionType": "coinflip"}

    @pytest.mark.asyncio
    async def test_repeated_evaluation_is_identical(self, executor, context):
        node = _node(expression="length($.items) == 2 && $.items[0] == 'a'")
        state = {"items": ["a", "b"]}
        first = await executor.execute(node, state, context)
        second = await executor.execute(node, state, context)
        assert first == second
        assert first.branch == "true"
