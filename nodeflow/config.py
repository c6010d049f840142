from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from nodeflow.logging import get_logger

logger = get_logger(__name__)

# Accepted spellings for the node failure policy; the second group mirrors
# the errorHandler vocabulary used by workflow editors.
_ERROR_POLICY_ALIASES = {
    "abort": "abort",
    "fail": "abort",
    "skip": "skip",
    "continue": "skip",
    "bypass": "skip",
}

MAX_CONCURRENCY_HARD_CAP = 64
MAX_EXECUTOR_WORKERS = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow engine."""

    node_timeout_ms: int = env_field(
        30000,
        "NODEFLOW_NODE_TIMEOUT_MS",
        description="Default per-node timeout when a node does not set execution.timeout",
    )
    max_node_timeout_ms: int = env_field(
        300000,
        "NODEFLOW_MAX_NODE_TIMEOUT_MS",
        description="Hard cap applied to any per-node timeout",
    )
    node_max_retries: int = env_field(
        0,
        "NODEFLOW_NODE_MAX_RETRIES",
        description="Default retry count for failed nodes (0 = no retries)",
    )
    retry_backoff_ms: int = env_field(
        1000,
        "NODEFLOW_RETRY_BACKOFF_MS",
        description="Initial retry backoff; quadruples on each further attempt",
    )
    error_policy: str = env_field(
        "abort",
        "NODEFLOW_ERROR_POLICY",
        description="Workflow-wide node failure policy: abort or skip",
    )
    max_concurrency: int = env_field(
        8,
        "NODEFLOW_MAX_CONCURRENCY",
        description="Maximum number of nodes executing at once within one run",
    )
    executor_workers: int = env_field(
        4,
        "NODEFLOW_EXECUTOR_WORKERS",
        description="Thread pool size for synchronous executors",
    )
    max_trace_entries: int = env_field(500, "NODEFLOW_MAX_TRACE_ENTRIES")
    reject_unreachable_nodes: bool = env_field(
        False,
        "NODEFLOW_REJECT_UNREACHABLE",
        description="Treat nodes unreachable from the start node as a graph error",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("error_policy")
    @classmethod
    def _validate_error_policy(cls, value: str) -> str:
        normalized = _ERROR_POLICY_ALIASES.get(str(value).strip().lower())
        if normalized is None:
            raise ValueError(f"unknown error policy: {value}")
        return normalized

    @field_validator("node_timeout_ms", "max_node_timeout_ms", "retry_backoff_ms")
    @classmethod
    def _validate_positive_ms(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive milliseconds")
        return value

    @field_validator("node_max_retries")
    @classmethod
    def _clamp_retries(cls, value: int) -> int:
        return min(max(0, value), 5)

    @field_validator("max_concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        if value > MAX_CONCURRENCY_HARD_CAP:
            logger.warning(
                "max_concurrency_clamped", requested=value, cap=MAX_CONCURRENCY_HARD_CAP
            )
        return min(max(1, value), MAX_CONCURRENCY_HARD_CAP)

    @field_validator("executor_workers")
    @classmethod
    def _clamp_workers(cls, value: int) -> int:
        return min(max(1, value), MAX_EXECUTOR_WORKERS)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
