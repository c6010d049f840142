from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping

from nodeflow.models import ExecutionContext, ExecutionResult, Node
from nodeflow.service.executors import NodeExecutor
from nodeflow.service.variables import MISSING, NODE_RESULTS_KEY, is_variable_reference

OUTPUT_FORMATS = ("json", "text", "raw")


class EndNodeExecutor(NodeExecutor):
    """Collects the final output of a run and stops scheduling.

    Output selection, first match wins: ``outputMapping``, ``includeFields``,
    ``excludeFields``, ``outputVariables``, else the whole state bag minus
    keys starting with ``_``. Completed node results are only reachable
    through ``outputMapping``/``includeFields`` or ``includeNodeOutputs``.
    """

    async def execute(
        self, node: Node, state: Mapping[str, Any], context: ExecutionContext
    ) -> ExecutionResult:
        config = node.config or {}
        log = self.logger.bind(node_id=node.id)
        log.info("end_node_executing", state_keys=sorted(state.keys()))

        node_results = state.get(NODE_RESULTS_KEY) or {}
        data = {k: v for k, v in state.items() if k != NODE_RESULTS_KEY}

        if isinstance(config.get("outputMapping"), dict):
            output: Any = self.apply_output_mapping(config["outputMapping"], state)
        elif isinstance(config.get("includeFields"), list):
            output = self._only(state, config["includeFields"])
        elif isinstance(config.get("excludeFields"), list):
            output = self._without(data, config["excludeFields"])
        elif isinstance(config.get("outputVariables"), list):
            output = self._only(data, config["outputVariables"])
        else:
            output = {k: v for k, v in data.items() if not str(k).startswith("_")}

        if config.get("includeNodeOutputs"):
            output["_nodeOutputs"] = {
                node_id: result.get("output")
                for node_id, result in node_results.items()
                if isinstance(result, Mapping)
            }
        if config.get("includeMetadata"):
            output["_metadata"] = {
                "workflowId": context.workflow_id,
                "executedNodes": list(node_results),
                "completedAt": datetime.utcnow().isoformat(),
                "exitNode": node.id,
            }

        output_format = config.get("outputFormat")
        if output_format is not None:
            output = self.format_output(output, output_format)

        status = config.get("status") or config.get("statusCode")
        if status is not None:
            if isinstance(output, dict):
                output["_status"] = status
            else:
                log.info("end_node_status_not_attached", output_format=output_format)

        log.info(
            "end_node_completed",
            output_keys=sorted(output.keys()) if isinstance(output, dict) else ["formatted"],
            workflow_status=status,
        )
        return self.create_success_result(output, terminal=True)

    def apply_output_mapping(
        self, mapping: Mapping[str, Any], state: Mapping[str, Any]
    ) -> Dict[str, Any]:
        output: Dict[str, Any] = {}
        for key, source in mapping.items():
            if is_variable_reference(source):
                resolved = self.resolve_variable(source, state)
                if resolved is not MISSING:
                    output[key] = resolved
            else:
                output[key] = self.resolve_variables(source, state)
        return output

    def format_output(self, output: Dict[str, Any], output_format: Any) -> Any:
        """Shape the collected output.

        ``json`` keeps the mapping, ``text`` prefers a ``content``, ``text``
        or ``message`` value and otherwise pretty-prints the mapping, ``raw``
        unwraps a single-key mapping. Unknown formats keep the mapping.
        """
        if output_format == "text":
            for key in ("content", "text", "message"):
                if output.get(key):
                    return output[key]
            return json.dumps(output, indent=2, default=str)
        if output_format == "raw" and len(output) == 1:
            return next(iter(output.values()))
        if output_format not in OUTPUT_FORMATS:
            self.logger.warning("end_node_unknown_output_format", output_format=output_format)
        return output

    @staticmethod
    def _only(state: Mapping[str, Any], names: Iterable[Any]) -> Dict[str, Any]:
        return {k: state[k] for k in names if isinstance(k, str) and k in state}

    @staticmethod
    def _without(state: Mapping[str, Any], excluded: Iterable[Any]) -> Dict[str, Any]:
        excluded = {name for name in excluded if isinstance(name, str)}
        return {k: v for k, v in state.items() if k not in excluded}
