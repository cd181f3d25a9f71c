"""Environment-driven configuration for the correlator."""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from correlation_store import DEFAULT_RETENTION_SECONDS, DEFAULT_ROLE_INDEX
from errors import ConfigurationError
from identifiers import DEFAULT_COMPANION_PREFIX, DEFAULT_PRIMARY_PREFIX
from job_runners import DEFAULT_CONTAINER_NAME
from matcher import DEFAULT_MAX_ATTEMPTS, DEFAULT_WINDOW_MINUTES

JOB_RUNNER_KINDS = ("lambda", "ecs", "http", "log")


@dataclass(frozen=True, slots=True)
class Settings:
    table_name: str | None = None
    role_index: str = DEFAULT_ROLE_INDEX
    retention_window_seconds: int = DEFAULT_RETENTION_SECONDS
    match_window_minutes: float = DEFAULT_WINDOW_MINUTES
    query_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    store_timeout_seconds: float = 5.0
    dispatch_timeout_seconds: float = 5.0
    primary_prefix: str = DEFAULT_PRIMARY_PREFIX
    companion_prefix: str = DEFAULT_COMPANION_PREFIX
    job_runner: str = "lambda"
    merge_job_name: str | None = None
    merge_job_url: str | None = None
    ecs_cluster: str | None = None
    ecs_task_definition: str | None = None
    ecs_container_name: str = DEFAULT_CONTAINER_NAME
    subnet_ids: list[str] = field(default_factory=list)
    security_group_ids: list[str] = field(default_factory=list)
    output_bucket: str | None = None
    region: str = "us-east-1"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables (os.environ by default).

        Legacy names from the first deployment (DYNAMODB_TABLE,
        TIME_WINDOW_MINUTES, VIDEO_MERGE_LAMBDA_NAME) are accepted as fallbacks.
        """
        env = os.environ if env is None else env

        settings = cls(
            table_name=_first(env, "CORRELATION_TABLE", "DYNAMODB_TABLE"),
            role_index=env.get("CORRELATION_ROLE_INDEX", DEFAULT_ROLE_INDEX),
            retention_window_seconds=_as_int(env, "RETENTION_WINDOW_SECONDS", DEFAULT_RETENTION_SECONDS),
            match_window_minutes=_as_float(
                env, "MATCH_WINDOW_MINUTES", DEFAULT_WINDOW_MINUTES, fallback="TIME_WINDOW_MINUTES"
            ),
            query_max_attempts=_as_int(env, "QUERY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            store_timeout_seconds=_as_float(env, "STORE_TIMEOUT_SECONDS", 5.0),
            dispatch_timeout_seconds=_as_float(env, "DISPATCH_TIMEOUT_SECONDS", 5.0),
            primary_prefix=env.get("PRIMARY_PREFIX", DEFAULT_PRIMARY_PREFIX),
            companion_prefix=env.get("COMPANION_PREFIX", DEFAULT_COMPANION_PREFIX),
            job_runner=env.get("MERGE_JOB_RUNNER", "lambda").strip().lower(),
            merge_job_name=_first(env, "MERGE_JOB_NAME", "VIDEO_MERGE_LAMBDA_NAME"),
            merge_job_url=env.get("MERGE_JOB_URL") or None,
            ecs_cluster=env.get("ECS_CLUSTER_NAME") or None,
            ecs_task_definition=env.get("ECS_TASK_DEFINITION_ARN") or None,
            ecs_container_name=env.get("ECS_CONTAINER_NAME", DEFAULT_CONTAINER_NAME),
            subnet_ids=_as_list(env.get("VPC_SUBNET_IDS")),
            security_group_ids=_as_list(env.get("VPC_SECURITY_GROUP_IDS")),
            output_bucket=env.get("S3_BUCKET") or None,
            region=env.get("AWS_REGION", "us-east-1"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.retention_window_seconds <= 0:
            raise ConfigurationError("RETENTION_WINDOW_SECONDS must be positive")
        if not (math.isfinite(self.match_window_minutes) and self.match_window_minutes > 0):
            raise ConfigurationError(
                f"MATCH_WINDOW_MINUTES must be a positive number, got {self.match_window_minutes!r}"
            )
        if self.query_max_attempts < 1:
            raise ConfigurationError("QUERY_MAX_ATTEMPTS must be at least 1")
        for name, timeout in (
            ("STORE_TIMEOUT_SECONDS", self.store_timeout_seconds),
            ("DISPATCH_TIMEOUT_SECONDS", self.dispatch_timeout_seconds),
        ):
            if not (math.isfinite(timeout) and timeout > 0):
                raise ConfigurationError(f"{name} must be a positive number, got {timeout!r}")
        if self.job_runner not in JOB_RUNNER_KINDS:
            raise ConfigurationError(
                f"MERGE_JOB_RUNNER must be one of {', '.join(JOB_RUNNER_KINDS)}, got {self.job_runner!r}"
            )
        if self.primary_prefix == self.companion_prefix:
            raise ConfigurationError("PRIMARY_PREFIX and COMPANION_PREFIX must differ")
        if self.log_level not in logging.getLevelNamesMapping():
            raise ConfigurationError(f"LOG_LEVEL must be a logging level name, got {self.log_level!r}")


def _first(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def _as_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _as_float(env: Mapping[str, str], name: str, default: float, fallback: str | None = None) -> float:
    raw = env.get(name)
    if (raw is None or raw.strip() == "") and fallback:
        name, raw = fallback, env.get(fallback)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if not math.isfinite(value):
        raise ConfigurationError(f"{name} must be a finite number, got {raw!r}")
    return value


def _as_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]
