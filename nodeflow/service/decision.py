from __future__ import annotations

import operator
import re
from typing import Any, Dict, Mapping, Optional

from nodeflow.models import ExecutionContext, ExecutionResult, Node
from nodeflow.service.errors import WorkflowError
from nodeflow.service.executors import NodeExecutor
from nodeflow.service.sandbox import safe_eval_expr, strict_equal, truthy
from nodeflow.service.variables import MISSING, substitute_variables, with_input

DEFAULT_BRANCH = "default"

_ORDERING = {
    "greaterThan": operator.gt,
    "lessThan": operator.lt,
    "greaterThanOrEqual": operator.ge,
    "lessThanOrEqual": operator.le,
}

# First key present in a condition decides it
_CONDITION_OPERATORS = (
    "equals",
    "notEquals",
    "greaterThan",
    "lessThan",
    "greaterThanOrEqual",
    "lessThanOrEqual",
    "contains",
    "matches",
    "in",
    "notIn",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def matches_condition(value: Any, condition: Mapping[str, Any]) -> bool:
    """Test a single switch condition against the resolved variable."""
    if value is MISSING:
        value = None
    for key in _CONDITION_OPERATORS:
        if key not in condition:
            continue
        operand = condition[key]
        if key == "equals":
            return strict_equal(value, operand)
        if key == "notEquals":
            return not strict_equal(value, operand)
        if key in _ORDERING:
            comparable = (_is_number(value) and _is_number(operand)) or (
                isinstance(value, str) and isinstance(operand, str)
            )
            return comparable and _ORDERING[key](value, operand)
        if key == "contains":
            return isinstance(value, str) and isinstance(operand, str) and operand in value
        if key == "matches":
            if not (isinstance(value, str) and isinstance(operand, str)):
                return False
            try:
                return re.search(operand, value) is not None
            except re.error:
                return False
        if key == "in":
            return isinstance(operand, list) and any(strict_equal(value, item) for item in operand)
        if key == "notIn":
            return isinstance(operand, list) and not any(
                strict_equal(value, item) for item in operand
            )
    return False


class DecisionNodeExecutor(NodeExecutor):
    """Picks exactly one branch for the scheduler to follow.

    ``config.type`` selects the algorithm:

    * ``expression``: substitute ``$.path`` references, evaluate in the
      sandbox, route to ``"true"`` or ``"false"``. Evaluation errors route
      to ``"false"`` and are reported in the output.
    * ``switch``: resolve ``variable`` once and return the branch of the
      first matching condition, else ``defaultBranch``.
    * ``llm``: placeholder that returns ``defaultBranch``.
    """

    async def execute(
        self, node: Node, state: Mapping[str, Any], context: ExecutionContext
    ) -> ExecutionResult:
        config = node.config or {}
        decision_type = config.get("type", "expression")
        log = self.logger.bind(node_id=node.id)
        log.info("decision_node_executing", decision_type=decision_type)

        view = with_input(state, context.initial_data)
        if decision_type == "expression":
            result = self.evaluate_expression(config.get("expression"), view, node.id)
        elif decision_type == "switch":
            if not isinstance(config.get("conditions", []), list):
                return self.create_error_result(
                    f"Decision node '{node.id}' has switch conditions that are not a list",
                    {"nodeId": node.id, "decisionType": decision_type},
                )
            result = self.evaluate_switch(config, view, node.id)
        elif decision_type == "llm":
            result = self.evaluate_llm(config, node.id)
        else:
            return self.create_error_result(
                f"Unknown decision type '{decision_type}' in node '{node.id}'",
                {"nodeId": node.id, "decisionType": decision_type},
            )

        log.info("decision_node_evaluated", branch=result["branch"], value=result.get("value"))
        return self.create_success_result(result, branch=result["branch"])

    def evaluate_expression(
        self, expression: Any, view: Mapping[str, Any], node_id: str
    ) -> Dict[str, Any]:
        if not isinstance(expression, str) or not expression.strip():
            self.logger.warning("decision_expression_missing", node_id=node_id)
            return {"branch": "false", "value": False}

        try:
            processed = substitute_variables(expression, view)
            value = truthy(safe_eval_expr(processed))
        except WorkflowError as exc:
            self.logger.error(
                "decision_expression_failed",
                node_id=node_id,
                expression=expression,
                error=str(exc),
                error_code=exc.error_code,
            )
            return {
                "branch": "false",
                "value": False,
                "expression": expression,
                "error": str(exc),
            }

        return {
            "branch": "true" if value else "false",
            "value": value,
            "expression": expression,
            "processedExpression": processed,
        }

    def evaluate_switch(
        self, config: Mapping[str, Any], view: Mapping[str, Any], node_id: str
    ) -> Dict[str, Any]:
        default_branch = config.get("defaultBranch") or DEFAULT_BRANCH
        variable = config.get("variable")
        if not variable:
            self.logger.warning("decision_switch_variable_missing", node_id=node_id)
            return {"branch": default_branch, "value": None, "matched": False}

        value = self.resolve_variable(variable, view)
        reported: Optional[Any] = None if value is MISSING else value

        for condition in config.get("conditions") or []:
            if not isinstance(condition, Mapping) or not isinstance(condition.get("branch"), str):
                self.logger.warning("decision_switch_condition_ignored", node_id=node_id)
                continue
            if matches_condition(value, condition):
                return {
                    "branch": condition["branch"],
                    "value": reported,
                    "matched": True,
                    "condition": condition["branch"],
                }

        return {"branch": default_branch, "value": reported, "matched": False}

    def evaluate_llm(self, config: Mapping[str, Any], node_id: str) -> Dict[str, Any]:
        self.logger.warning("decision_llm_not_implemented", node_id=node_id)
        return {
            "branch": config.get("defaultBranch") or DEFAULT_BRANCH,
            "value": None,
            "reason": "LLM routing not implemented",
        }
