from __future__ import annotations

import asyncio
import concurrent.futures
import copy
import functools
import inspect
import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Union,
)

from nodeflow.config import MAX_CONCURRENCY_HARD_CAP, Settings, get_settings
from nodeflow.logging import (
    get_logger,
    log_workflow_trace,
    run_id_var,
    sanitize_error_message,
    sanitize_workflow_trace,
)
from nodeflow.models import (
    ErrorPolicy,
    ExecutionContext,
    ExecutionError,
    ExecutionResult,
    Node,
    NodeRunEntry,
    NodeStatus,
    RunRecord,
    RunStatus,
    WorkflowDefinition,
)
from nodeflow.service.errors import RoutingError, WorkflowError
from nodeflow.service.executors import ExecutorRegistry, NodeExecutor, default_registry
from nodeflow.service.graph import START_NODE_TYPE, load_workflow, validate_workflow
from nodeflow.service.runs import RunRegistry
from nodeflow.service.variables import NODE_RESULTS_KEY

MAX_NODE_RETRIES = 5
MAX_EVENT_VALUE_CHARS = 1024
EVENT_PREVIEW_CHARS = 200

EventCallback = Callable[[Dict[str, Any]], Any]


@dataclass
class _RunState:
    """Mutable bookkeeping for one run; owned by the scheduling loop."""

    definition: WorkflowDefinition
    context: ExecutionContext
    record: RunRecord
    cancel_event: asyncio.Event
    max_concurrency: int
    callbacks: List[EventCallback]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    state: Dict[str, Any] = field(default_factory=dict)
    # edge index -> None (unsettled), True (active) or False (dead)
    edge_state: Dict[int, Optional[bool]] = field(default_factory=dict)
    node_phase: Dict[str, str] = field(default_factory=dict)
    # node id -> result of each completed node, in completion order
    node_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    terminal_node: Optional[str] = None
    failure: Optional[Dict[str, Any]] = None
    cancelled: bool = False
    bypassed: bool = False


class WorkflowEngine:
    """Executes workflow graphs: validation, readiness, routing, merging.

    Ready nodes wait in a FIFO queue; the scheduling loop starts them as
    asyncio tasks while fewer than ``maxConcurrency`` are in flight.
    Each node reads a deep copy of the state bag, with the results of
    completed nodes under ``nodeResults``; deltas are merged by the
    scheduling loop under the run lock, whole-delta and last-write-wins.
    """

    def __init__(
        self,
        registry: Optional[ExecutorRegistry] = None,
        *,
        settings: Optional[Settings] = None,
        on_event: Optional[EventCallback] = None,
        runs: Optional[RunRegistry] = None,
    ) -> None:
        self.registry = registry or default_registry()
        self.settings = settings or get_settings()
        self.on_event = on_event
        self.runs = runs or RunRegistry()
        self.logger = get_logger(__name__)
        self._sync_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.executor_workers
        )
        self._executor_shutdown = False

    def _error_event(
        self, code: str, message: str, details: dict | None = None
    ) -> dict:
        return {
            "event": "error",
            "data": {"code": code, "message": message, "details": details or {}},
        }

    def _append_trace(
        self,
        workflow_trace: List[Dict[str, Any]],
        entry: Dict[str, Any],
    ) -> None:
        workflow_trace.append(entry)
        max_entries = self.settings.max_trace_entries
        if len(workflow_trace) > max_entries:
            del workflow_trace[0 : len(workflow_trace) - max_entries]

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the thread pool used by synchronous executors.

        Args:
            wait: If True, wait for pending calls to complete. If False, cancel them.
        """
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        try:
            self._sync_executor.shutdown(wait=wait, cancel_futures=not wait)
            self.logger.info("workflow_executor_shutdown", wait=wait)
        except RuntimeError as exc:
            self.logger.warning("workflow_executor_shutdown_error", error=str(exc))

    # Run management

    def cancel(self, run_id: str, reason: Optional[str] = None) -> bool:
        return self.runs.cancel(run_id, reason)

    def get_run(self, run_id: str) -> RunRecord:
        return self.runs.get(run_id)

    def list_active_runs(self) -> List[RunRecord]:
        return self.runs.list_active()

    # Events

    @staticmethod
    def _sanitize_for_event(value: Any) -> Any:
        if value is None:
            return None
        try:
            encoded = json.dumps(value, default=str)
        except (TypeError, ValueError):
            return {"_error": "Could not serialize value"}
        if len(encoded) > MAX_EVENT_VALUE_CHARS:
            return {
                "_truncated": True,
                "_type": type(value).__name__,
                "_size": len(encoded),
                "_preview": encoded[:EVENT_PREVIEW_CHARS] + "...",
            }
        return value

    async def _emit(self, run: _RunState, name: str, data: Dict[str, Any]) -> None:
        event = {"event": name, "data": {"runId": run.record.run_id, **data}}
        for callback in run.callbacks:
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                self.logger.warning(
                    "workflow_event_callback_failed", event_name=name, error=str(exc)
                )

    # Policies

    def _error_policy(self, definition: WorkflowDefinition, node: Node) -> ErrorPolicy:
        for source in (node.execution, definition.execution):
            policy = ErrorPolicy.parse(source.get("errorHandler"))
            if policy is not None:
                return policy
        return ErrorPolicy.parse(self.settings.error_policy) or ErrorPolicy.ABORT

    @staticmethod
    def _number_option(value: Any, default: float) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        return value

    def _node_timeout_ms(self, node: Node) -> float:
        timeout_ms = self._number_option(
            node.execution.get("timeout"), self.settings.node_timeout_ms
        )
        if timeout_ms <= 0:
            timeout_ms = self.settings.node_timeout_ms
        return min(timeout_ms, self.settings.max_node_timeout_ms)

    def _max_concurrency(self, definition: WorkflowDefinition) -> int:
        requested = self._number_option(
            definition.execution.get("maxConcurrency"), self.settings.max_concurrency
        )
        return int(min(max(1, requested), MAX_CONCURRENCY_HARD_CAP))

    # Node execution

    async def _call_executor(
        self,
        executor: NodeExecutor,
        node: Node,
        state_view: Dict[str, Any],
        context: ExecutionContext,
    ) -> Any:
        if inspect.iscoroutinefunction(executor.execute):
            return await executor.execute(node, state_view, context)
        loop = asyncio.get_running_loop()
        outcome = await loop.run_in_executor(
            self._sync_executor,
            functools.partial(executor.execute, node, state_view, context),
        )
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def _internal_error(self, node: Node, exc_type: str, message: str) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            error=ExecutionError(
                message=f"Node '{node.id}' failed with an internal error: {message}",
                details={"nodeId": node.id, "internal": True, "exceptionType": exc_type},
            ),
        )

    async def _execute_node(
        self, node: Node, state_view: Dict[str, Any], context: ExecutionContext
    ) -> ExecutionResult:
        """Run one attempt; every outcome comes back as an ExecutionResult."""
        timeout_ms = self._node_timeout_ms(node)
        try:
            executor = self.registry.get(node.type)
            outcome = await asyncio.wait_for(
                self._call_executor(executor, node, state_view, context),
                timeout=timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            self.logger.warning(
                "workflow_node_timeout", node_id=node.id, timeout_ms=timeout_ms
            )
            return ExecutionResult(
                success=False,
                error=ExecutionError(
                    message=f"Node '{node.id}' timed out after {timeout_ms:g}ms",
                    details={"nodeId": node.id, "timeout": True, "timeoutMs": timeout_ms},
                ),
            )
        except Exception as exc:
            self.logger.error(
                "workflow_node_exception",
                node_id=node.id,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            return self._internal_error(
                node, type(exc).__name__, sanitize_error_message(str(exc))
            )

        if not isinstance(outcome, ExecutionResult):
            self.logger.error(
                "workflow_node_invalid_result",
                node_id=node.id,
                result_type=type(outcome).__name__,
            )
            return self._internal_error(
                node, "TypeError", f"executor returned {type(outcome).__name__}"
            )
        return outcome

    async def _execute_node_with_retry(
        self, run: _RunState, node: Node, snapshot: Dict[str, Any]
    ) -> tuple[ExecutionResult, int]:
        """Execute a node, retrying error results with quadrupling backoff.

        Retry settings come from ``node.execution`` with engine defaults:
        - retries: ``settings.node_max_retries`` (hard cap 5)
        - retryDelay: ``settings.retry_backoff_ms`` (x4 per further attempt)
        """
        max_retries = int(
            self._number_option(node.execution.get("retries"), self.settings.node_max_retries)
        )
        max_retries = min(max(0, max_retries), MAX_NODE_RETRIES)
        backoff_ms = self._number_option(
            node.execution.get("retryDelay"), self.settings.retry_backoff_ms
        )

        attempt = 0
        while True:
            attempt += 1
            state_view = snapshot if attempt == 1 else copy.deepcopy(snapshot)
            result = await self._execute_node(node, state_view, run.context)
            if result.success or attempt > max_retries:
                break
            if run.cancel_event.is_set():
                break

            sleep_ms = backoff_ms * (4 ** (attempt - 1))
            self.logger.info(
                "workflow_node_backoff",
                node_id=node.id,
                attempt=attempt,
                backoff_ms=sleep_ms,
            )
            try:
                await asyncio.wait_for(run.cancel_event.wait(), timeout=sleep_ms / 1000.0)
                break
            except asyncio.TimeoutError:
                pass

        if not result.success and attempt > 1:
            self.logger.error(
                "workflow_node_retries_exhausted",
                node_id=node.id,
                attempts=attempt,
                error=result.error.message if result.error else None,
            )
        return result, attempt

    async def _run_node(self, run: _RunState, node: Node) -> NodeRunEntry:
        async with run.lock:
            snapshot = copy.deepcopy(run.state)
            snapshot[NODE_RESULTS_KEY] = copy.deepcopy(run.node_results)
        await self._emit(
            run, "workflow.node.start", {"nodeId": node.id, "nodeType": node.type}
        )
        started_at = datetime.utcnow()
        start = time.monotonic()
        result, attempts = await self._execute_node_with_retry(run, node, snapshot)
        duration_ms = (time.monotonic() - start) * 1000
        return NodeRunEntry(
            node_id=node.id,
            node_type=node.type,
            status=NodeStatus.COMPLETED if result.success else NodeStatus.FAILED,
            result=result,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            duration_ms=round(duration_ms, 3),
            attempts=attempts,
        )

    # Graph bookkeeping

    def _route(self, run: _RunState, node: Node, result: ExecutionResult) -> None:
        """Settle a finished node's outgoing edges."""
        outgoing = [
            (i, e) for i, e in enumerate(run.definition.edges) if e.source == node.id
        ]
        labeled = [e for _, e in outgoing if e.branch is not None]
        branch = result.branch if result.success else None
        if branch is not None and labeled and not any(e.branch == branch for e in labeled):
            raise RoutingError(
                f"Decision node '{node.id}' emitted branch '{branch}' which matches "
                f"none of its edges",
                detail={
                    "nodeId": node.id,
                    "branch": branch,
                    "edgeBranches": sorted({e.branch for e in labeled}),
                },
            )
        for index, edge in outgoing:
            run.edge_state[index] = edge.branch is None or edge.branch == branch

    def _kill_outgoing(self, run: _RunState, node_id: str) -> None:
        for index, edge in enumerate(run.definition.edges):
            if edge.source == node_id:
                run.edge_state[index] = False

    async def _collect_ready(
        self, run: _RunState, settled_from: List[str]
    ) -> List[str]:
        """Return nodes that became ready; skip nodes whose inputs all died."""
        ready: List[str] = []
        node_map = run.definition.node_map
        worklist = list(settled_from)
        while worklist:
            source = worklist.pop(0)
            for edge in run.definition.outgoing(source):
                target = edge.target
                if run.node_phase.get(target) != "pending":
                    continue
                incoming = [
                    run.edge_state[i]
                    for i, e in enumerate(run.definition.edges)
                    if e.target == target
                ]
                if any(state is None for state in incoming):
                    continue
                if any(incoming):
                    run.node_phase[target] = "queued"
                    ready.append(target)
                    continue
                run.node_phase[target] = "done"
                node = node_map[target]
                run.record.skipped_nodes.append(target)
                run.record.node_results.append(
                    NodeRunEntry(node_id=target, node_type=node.type, status=NodeStatus.SKIPPED)
                )
                self._append_trace(run.trace, {"node_id": target, "status": "skipped"})
                self.logger.info("workflow_node_skipped", node_id=target)
                await self._emit(
                    run,
                    "workflow.node.skipped",
                    {"nodeId": target, "reason": "no active incoming edge"},
                )
                self._kill_outgoing(run, target)
                worklist.append(target)
        return ready

    def _fail_run(
        self, run: _RunState, code: str, message: str, node_id: Optional[str] = None
    ) -> None:
        if run.failure is not None:
            return
        run.failure = {"code": code, "message": message}
        if node_id is not None:
            run.failure["nodeId"] = node_id
        self.logger.error("workflow_run_aborted", code=code, node_id=node_id, error=message)

    async def _handle_node_result(self, run: _RunState, entry: NodeRunEntry) -> None:
        node = run.definition.node_map[entry.node_id]
        result = entry.result
        run.node_phase[node.id] = "done"
        run.record.node_results.append(entry)

        if result is not None and result.success:
            async with run.lock:
                if result.state_updates:
                    run.state.update(copy.deepcopy(result.state_updates))
                run.node_results[node.id] = copy.deepcopy(result.to_dict())
            self._append_trace(
                run.trace,
                {
                    "node_id": node.id,
                    "status": "completed",
                    "duration_ms": entry.duration_ms,
                    "output": result.output,
                },
            )
            await self._emit(
                run,
                "workflow.node.complete",
                {
                    "nodeId": node.id,
                    "nodeType": node.type,
                    "branch": result.branch,
                    "attempts": entry.attempts,
                    "durationMs": entry.duration_ms,
                    "output": self._sanitize_for_event(result.output),
                },
            )
            try:
                self._route(run, node, result)
            except RoutingError as exc:
                self.logger.error(
                    "workflow_routing_error", node_id=node.id, error=exc.message, **exc.detail
                )
                self._fail_run(run, exc.error_code, exc.message, node.id)
                return
            if result.terminal and run.terminal_node is None:
                run.terminal_node = node.id
            return

        error = result.error if result and result.error else ExecutionError(
            message=f"Node '{node.id}' failed"
        )
        policy = self._error_policy(run.definition, node)
        if node.type == START_NODE_TYPE:
            policy = ErrorPolicy.ABORT
        run.record.errors.append(
            {"nodeId": node.id, "message": error.message, "details": dict(error.details)}
        )
        self._append_trace(
            run.trace,
            {
                "node_id": node.id,
                "status": "failed",
                "duration_ms": entry.duration_ms,
                "error": error.message,
            },
        )
        self.logger.warning(
            "workflow_node_failed",
            node_id=node.id,
            policy=policy.value,
            attempts=entry.attempts,
            error=error.message,
        )
        await self._emit(
            run,
            "workflow.node.error",
            {
                "nodeId": node.id,
                "nodeType": node.type,
                "policy": policy.value,
                "error": {
                    "message": error.message,
                    "details": self._sanitize_for_event(dict(error.details)),
                },
            },
        )
        if policy == ErrorPolicy.ABORT:
            self._fail_run(
                run, "node_failed", f"Node '{node.id}' failed: {error.message}", node.id
            )
            return
        entry.status = NodeStatus.BYPASSED
        run.bypassed = True
        self._route(run, node, ExecutionResult(success=False))

    # Scheduling

    async def _schedule(self, run: _RunState, start_id: str) -> None:
        """Drive the run: start queued nodes while slots are free, settle results.

        Nodes are only ever started from this loop, after every finished
        result has been handled, so an abort, cancel, deadline or terminal
        result is seen before anything further begins.
        """
        definition = run.definition
        node_map = definition.node_map
        deadline_ms = self._number_option(definition.execution.get("timeout"), 0)
        started = time.monotonic()
        tasks: Dict[asyncio.Task, str] = {}
        queued: Deque[str] = deque([start_id])
        run.node_phase[start_id] = "queued"

        try:
            while True:
                if run.cancel_event.is_set() and not run.cancelled:
                    run.cancelled = True
                    self.logger.info("workflow_cancel_observed", in_flight=len(tasks))
                if deadline_ms > 0 and run.failure is None:
                    elapsed_ms = (time.monotonic() - started) * 1000
                    if elapsed_ms >= deadline_ms:
                        self._fail_run(
                            run,
                            "workflow_timeout",
                            f"Workflow '{definition.id}' exceeded {deadline_ms:g}ms",
                        )

                if self._halted(run):
                    if queued:
                        self.logger.info("workflow_queue_dropped", node_ids=list(queued))
                        queued.clear()
                else:
                    while queued and len(tasks) < run.max_concurrency:
                        node_id = queued.popleft()
                        run.node_phase[node_id] = "running"
                        task = asyncio.create_task(self._run_node(run, node_map[node_id]))
                        tasks[task] = node_id

                if not tasks:
                    break

                wait_timeout = None
                if deadline_ms > 0 and run.failure is None:
                    wait_timeout = max(0.0, deadline_ms / 1000.0 - (time.monotonic() - started))
                done, _ = await asyncio.wait(
                    set(tasks),
                    timeout=wait_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                settled: List[str] = []
                for task in done:
                    tasks.pop(task)
                    entry = task.result()
                    await self._handle_node_result(run, entry)
                    settled.append(entry.node_id)
                if settled and run.failure is None:
                    queued.extend(await self._collect_ready(run, settled))
        finally:
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    def _halted(run: _RunState) -> bool:
        return (
            run.cancelled
            or run.cancel_event.is_set()
            or run.failure is not None
            or run.terminal_node is not None
        )

    async def run(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        initial_data: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
        services: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_event: Optional[EventCallback] = None,
    ) -> RunRecord:
        """Validate and execute a workflow.

        Graph-shape problems raise ``GraphValidationError`` before anything
        runs; every node-level problem ends up in the returned record.
        """
        workflow = load_workflow(definition)
        report = validate_workflow(
            workflow,
            self.registry,
            reject_unreachable=self.settings.reject_unreachable_nodes,
        )

        record = RunRecord(
            run_id=run_id or str(uuid.uuid4()),
            workflow_id=workflow.id,
            unreachable_nodes=list(report.unreachable_nodes),
        )
        event = self.runs.register(record, cancel_event)
        token = run_id_var.set(record.run_id)
        log = self.logger.bind(workflow_id=workflow.id)

        context = ExecutionContext(
            initial_data=dict(initial_data or {}),
            run_id=record.run_id,
            workflow_id=workflow.id,
            started_at=record.started_at,
            logger=log,
            services=dict(services or {}),
        )
        run = _RunState(
            definition=workflow,
            context=context,
            record=record,
            cancel_event=event,
            max_concurrency=self._max_concurrency(workflow),
            callbacks=[cb for cb in (self.on_event, on_event) if cb is not None],
            edge_state={i: None for i in range(len(workflow.edges))},
            node_phase={n.id: "pending" for n in workflow.nodes},
        )
        unreachable: Set[str] = set(report.unreachable_nodes)
        for index, edge in enumerate(workflow.edges):
            if edge.source in unreachable:
                run.edge_state[index] = False

        try:
            self.runs.update_status(record.run_id, RunStatus.RUNNING)
            log.info(
                "workflow_run_started",
                start_node=report.start_node_id,
                node_count=len(workflow.nodes),
                edge_count=len(workflow.edges),
            )
            await self._emit(
                run,
                "workflow.start",
                {"workflowId": workflow.id, "startNode": report.start_node_id},
            )
            await self._schedule(run, report.start_node_id)
        except asyncio.CancelledError:
            run.cancelled = True
            raise
        except Exception as exc:
            self._fail_run(
                run, "internal_error", sanitize_error_message(str(exc)) or type(exc).__name__
            )
            raise
        finally:
            await self._finish(run, log)
            run_id_var.reset(token)
        return record

    async def _finish(self, run: _RunState, log: Any) -> None:
        record = run.record
        record.state = run.state
        if run.failure is not None:
            status = RunStatus.FAILED
            record.error = dict(run.failure)
        elif run.cancelled:
            status = RunStatus.CANCELLED
        elif run.bypassed:
            status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            status = RunStatus.COMPLETED
        self.runs.update_status(record.run_id, status)

        log_workflow_trace(sanitize_workflow_trace(run.trace), logger=log)
        log.info(
            "workflow_run_finished",
            status=status.value,
            executed=len(record.executed_nodes),
            skipped=len(record.skipped_nodes),
            errors=len(record.errors),
        )

        if status == RunStatus.FAILED:
            await self._emit(run, "workflow.failed", {"error": record.error})
        elif status == RunStatus.CANCELLED:
            reason = self.runs.cancel_reason(record.run_id) if record.run_id in self.runs else None
            await self._emit(run, "workflow.cancelled", {"reason": reason or "cancelled"})
        else:
            output = None
            if run.terminal_node is not None:
                terminal = record.result_for(run.terminal_node)
                output = terminal.result.output if terminal and terminal.result else None
            await self._emit(
                run,
                "workflow.complete",
                {
                    "status": status.value,
                    "exitNode": run.terminal_node,
                    "output": self._sanitize_for_event(output),
                    "trace": sanitize_workflow_trace(run.trace),
                },
            )

    async def run_streaming(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        initial_data: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
        services: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Execute a workflow and yield its events as they happen.

        Yields events:
        - {"event": "workflow.start" | "workflow.node.*" | ..., "data": {...}}
        - {"event": "error", "data": {"code": "...", "message": "..."}} when the
          definition is rejected before the run starts
        - {"event": "run_done", "data": {...run record...}} last
        """
        run_id = run_id or str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(
            self.run(
                definition,
                initial_data,
                run_id=run_id,
                services=services,
                cancel_event=cancel_event,
                on_event=queue.put_nowait,
            )
        )
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, task}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait()

            try:
                record = task.result()
            except WorkflowError as exc:
                yield self._error_event(exc.error_code, exc.message, exc.detail)
                return
            yield {"event": "run_done", "data": record.to_dict()}
        finally:
            if not task.done():
                if run_id in self.runs:
                    self.runs.cancel(run_id, "stream closed")
                await asyncio.gather(task, return_exceptions=True)

    def __del__(self) -> None:
        """Fallback cleanup if shutdown() was not called explicitly."""
        if hasattr(self, "_sync_executor"):
            self.shutdown(wait=False)
