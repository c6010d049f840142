from __future__ import annotations

import pytest

from nodeflow.models import ExecutionContext, Node
from nodeflow.service.end_node import EndNodeExecutor

STATE = {"answer": 42, "sources": ["a", "b"], "_internal": "hidden", "meta": {"k": "v"}}


def _node(**config) -> Node:
    return Node(id="end", type="end", config=config)


@pytest.fixture
def executor():
    return EndNodeExecutor()


@pytest.fixture
def context():
    return ExecutionContext(run_id="r", workflow_id="w")


@pytest.mark.asyncio
async def test_default_output_hides_underscore_keys(executor, context):
    result = await executor.execute(_node(), STATE, context)

    assert result.success is True
    assert result.terminal is True
    assert result.output == {"answer": 42, "sources": ["a", "b"], "meta": {"k": "v"}}
    assert result.state_updates is None


@pytest.mark.asyncio
async def test_output_mapping(executor, context):
    node = _node(
        outputMapping={
            "result": "$.answer",
            "first": "$.sources[0]",
            "gone": "$.nope",
            "label": "Answer: ${$.answer}",
            "nested": {"k": "$.meta.k"},
        }
    )
    result = await executor.execute(node, STATE, context)

    assert result.output == {
        "result": 42,
        "first": "a",
        "label": "Answer: 42",
        "nested": {"k": "v"},
    }


@pytest.mark.asyncio
async def test_include_and_exclude_fields(executor, context):
    included = await executor.execute(_node(includeFields=["answer", "nope"]), STATE, context)
    excluded = await executor.execute(_node(excludeFields=["sources", "meta"]), STATE, context)

    assert included.output == {"answer": 42}
    assert excluded.output == {"answer": 42, "_internal": "hidden"}


@pytest.mark.asyncio
async def test_status_is_reported(executor, context):
    result = await executor.execute(_node(status="approved"), {"x": 1}, context)
    assert result.output == {"x": 1, "_status": "approved"}
    assert result.to_dict()["terminal"] is True


@pytest.mark.asyncio
async def test_status_code_is_a_status_fallback(executor, context):
    result = await executor.execute(_node(statusCode="rejected"), {"x": 1}, context)
    assert result.output == {"x": 1, "_status": "rejected"}


@pytest.mark.asyncio
async def test_output_variables(executor, context):
    result = await executor.execute(
        _node(outputVariables=["answer", "_internal", "missing"]), STATE, context
    )
    assert result.output == {"answer": 42, "_internal": "hidden"}


NODE_RESULTS = {
    "start": {"success": True, "output": {"mappedFields": ["q"]}},
    "decide": {"success": True, "output": {"branch": "true"}, "branch": "true"},
}


@pytest.mark.asyncio
async def test_node_results_stay_out_of_selected_fields(executor, context):
    state = {"answer": 42, "nodeResults": NODE_RESULTS}

    default = await executor.execute(_node(), state, context)
    excluded = await executor.execute(_node(excludeFields=["nope"]), state, context)
    mapped = await executor.execute(
        _node(outputMapping={"route": "$.nodeResults.decide.branch"}), state, context
    )

    assert default.output == {"answer": 42}
    assert excluded.output == {"answer": 42}
    assert mapped.output == {"route": "true"}


@pytest.mark.asyncio
async def test_node_outputs_and_metadata(executor, context):
    node = _node(includeFields=["answer"], includeNodeOutputs=True, includeMetadata=True)
    result = await executor.execute(node, {"answer": 42, "nodeResults": NODE_RESULTS}, context)

    assert result.output["answer"] == 42
    assert result.output["_nodeOutputs"] == {
        "start": {"mappedFields": ["q"]},
        "decide": {"branch": "true"},
    }
    metadata = result.output["_metadata"]
    assert metadata["workflowId"] == "w"
    assert metadata["executedNodes"] == ["start", "decide"]
    assert metadata["exitNode"] == "end"
    assert metadata["completedAt"]


@pytest.mark.asyncio
async def test_text_format(executor, context):
    message = await executor.execute(
        _node(outputFormat="text"), {"message": "All done", "x": 1}, context
    )
    dumped = await executor.execute(_node(outputFormat="text"), {"x": 1}, context)

    assert message.output == "All done"
    assert dumped.output == '{\n  "x": 1\n}'


@pytest.mark.asyncio
async def test_raw_format_unwraps_single_value(executor, context):
    single = await executor.execute(
        _node(outputFormat="raw", outputMapping={"v": "$.answer"}), STATE, context
    )
    several = await executor.execute(_node(outputFormat="raw"), {"a": 1, "b": 2}, context)
    as_json = await executor.execute(_node(outputFormat="json"), {"a": 1}, context)

    assert single.output == 42
    assert single.terminal is True
    assert several.output == {"a": 1, "b": 2}
    assert as_json.output == {"a": 1}


@pytest.mark.asyncio
async def test_status_only_attached_to_mapping_output(executor, context):
    formatted = await executor.execute(
        _node(outputFormat="text", status="done"), {"text": "hi"}, context
    )
    kept = await executor.execute(_node(outputFormat="json", status="done"), {"a": 1}, context)

    assert formatted.output == "hi"
    assert kept.output == {"a": 1, "_status": "done"}
