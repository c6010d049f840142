from __future__ import annotations

from typing import Any, Dict, List, Mapping

from nodeflow.models import ExecutionContext, ExecutionResult, Node
from nodeflow.service.executors import NodeExecutor
from nodeflow.service.variables import MISSING, is_variable_reference, with_input


class StartNodeExecutor(NodeExecutor):
    """Turns the run input into the first state delta.

    Config:
        requiredInputs: names that must be present and non-empty in the input
        defaults: values seeded into state before mapping
        inputMapping: ``{targetVar: "$.input.path" | literal}``; without it the
            whole input is copied into state
    """

    async def execute(
        self, node: Node, state: Mapping[str, Any], context: ExecutionContext
    ) -> ExecutionResult:
        config = node.config or {}
        initial_data: Dict[str, Any] = dict(context.initial_data or {})
        log = self.logger.bind(node_id=node.id)
        log.info("start_node_executing", has_initial_data=bool(initial_data))

        required = config.get("requiredInputs")
        if required is not None:
            if isinstance(required, list):
                missing = self.validate_required_inputs(required, initial_data)
                if missing:
                    return self.create_error_result(
                        f"Start node '{node.id}' is missing required inputs: "
                        f"{', '.join(missing)}",
                        {"missingInputs": missing, "nodeId": node.id},
                    )
            else:
                log.warning("start_node_required_inputs_ignored", reason="not a list")

        state_updates: Dict[str, Any] = {}

        defaults = config.get("defaults")
        if isinstance(defaults, dict):
            state_updates.update(defaults)
        elif defaults is not None:
            log.warning("start_node_defaults_ignored", reason="not an object")

        mapping = config.get("inputMapping")
        if isinstance(mapping, dict):
            state_updates.update(self.apply_input_mapping(mapping, initial_data, state))
        else:
            if mapping is not None:
                log.warning("start_node_input_mapping_ignored", reason="not an object")
            state_updates.update(initial_data)

        output = {
            "initialized": True,
            "timestamp": context.started_at.isoformat(),
            "inputFields": list(initial_data.keys()),
            "mappedFields": list(state_updates.keys()),
        }

        log.info("start_node_completed", mapped_field_count=len(state_updates))

        return self.create_success_result(
            output, state_updates=state_updates or None
        )

    @staticmethod
    def validate_required_inputs(
        required_inputs: List[Any], initial_data: Mapping[str, Any]
    ) -> List[str]:
        missing: List[str] = []
        for name in required_inputs:
            value = initial_data.get(name) if isinstance(name, str) else None
            if value is None or value == "":
                missing.append(str(name))
        return missing

    def apply_input_mapping(
        self,
        mapping: Mapping[str, Any],
        initial_data: Mapping[str, Any],
        state: Mapping[str, Any],
    ) -> Dict[str, Any]:
        view = with_input(state, initial_data)
        result: Dict[str, Any] = {}
        for target, source in mapping.items():
            if is_variable_reference(source):
                resolved = self.resolve_variable(source, view)
                if resolved is not MISSING:
                    result[target] = resolved
            else:
                result[target] = source
        return result
