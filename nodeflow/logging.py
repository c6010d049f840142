from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, List, Optional

import structlog

# Id of the workflow run executing in the current task
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_SECRET_KEY_MARKERS = ("password", "secret", "token", "api_key", "authorization")
MAX_ERROR_MESSAGE_CHARS = 500


def get_run_id() -> Optional[str]:
    return run_id_var.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Bind ``run_id`` (or a fresh uuid) to the current context and return it."""
    rid = run_id or str(uuid.uuid4())
    run_id_var.set(rid)
    return rid


def _bind_run_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = run_id_var.get()
    if rid is not None:
        event_dict.setdefault("run_id", rid)
    return event_dict


def _mask_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _SECRET_KEY_MARKERS):
            # keep two chars on each side so values stay distinguishable
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the engine.

    Args:
        level: DEBUG, INFO, WARNING or ERROR; unknown names fall back to INFO
        json_output: render one JSON object per line
        development_mode: colored console output, overrides ``json_output``
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_run_id,
        _mask_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_workflow_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Emit one ``workflow_trace`` entry summarising a finished run."""
    log = logger or get_logger("nodeflow.workflow")
    log.info("workflow_trace", nodes=len(trace), trace=trace)


_ERROR_DETAIL_PATTERNS = [
    re.compile(p)
    for p in (
        # absolute paths, posix and windows
        r"(?i)/(?:home|var|etc|usr|opt|tmp|root|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        # key=value credentials
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
        # traceback fragments
        r"(?i)traceback\s*\(most recent call last\)",
        r'(?i)file\s+"[^"]+",\s+line\s+\d+',
        r"(?i)__[a-z]+__",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip paths, credentials and traceback fragments from an exception message.

    Executors that raise unexpectedly have their message copied into the
    node's error result, which is visible to callers and event listeners.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    for pattern in _ERROR_DETAIL_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_ERROR_MESSAGE_CHARS:
        error = error[: MAX_ERROR_MESSAGE_CHARS - 3] + "..."
    return error


def sanitize_workflow_trace(trace: Iterable[Any]) -> list:
    """Reduce trace entries to ids, status, timing, errors and output keys."""
    sanitized = []
    for entry in trace:
        if not isinstance(entry, dict):
            continue
        safe_entry = {
            "node_id": entry.get("node_id"),
            "status": entry.get("status"),
            "duration_ms": entry.get("duration_ms"),
        }
        if entry.get("error"):
            safe_entry["error"] = sanitize_error_message(str(entry["error"]))
        output = entry.get("output")
        if isinstance(output, dict):
            safe_entry["output_keys"] = list(output)
        sanitized.append(safe_entry)
    return sanitized
