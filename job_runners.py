"""Merge job runners: fire-and-forget launchers for the downstream merge job.

Every runner exposes ``invoke(payload) -> DispatchResult`` and never waits for
the job to finish.  Library errors are converted to a rejected result here so
callers only deal with DispatchResult.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Any, Protocol

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import ConfigurationError
from models import DispatchResult

DEFAULT_TIMEOUT_SECONDS = 5
DEFAULT_CONTAINER_NAME = "VideoMergeContainer"
MERGE_OUTPUT_PREFIX = "merge"

LOGGER = logging.getLogger(__name__)


class JobRunner(Protocol):
    def invoke(self, payload: dict[str, str]) -> DispatchResult: ...


def _client_config(timeout_seconds: float) -> Config:
    return Config(
        connect_timeout=timeout_seconds,
        read_timeout=timeout_seconds,
        retries={"max_attempts": 1, "mode": "standard"},
    )


class LambdaJobRunner:
    """Invokes the merge Lambda asynchronously (InvocationType=Event)."""

    def __init__(
        self,
        function_name: str,
        *,
        region_name: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: Any = None,
    ) -> None:
        if not function_name:
            raise ConfigurationError("MERGE_JOB_NAME environment variable is required for the lambda runner")
        self.function_name = function_name
        self._client = client or boto3.client(
            "lambda", region_name=region_name, config=_client_config(timeout_seconds)
        )

    def invoke(self, payload: dict[str, str]) -> DispatchResult:
        try:
            response = self._client.invoke(
                FunctionName=self.function_name,
                InvocationType="Event",
                Payload=json.dumps(payload).encode("utf-8"),
            )
        except (ClientError, BotoCoreError) as exc:
            return DispatchResult(accepted=False, reason=f"Lambda invoke failed: {exc}")

        status_code = response.get("StatusCode")
        if status_code != 202:
            return DispatchResult(
                accepted=False,
                reason=f"Lambda {self.function_name} returned status {status_code}",
            )
        return DispatchResult(accepted=True, details={"function": self.function_name, "statusCode": status_code})


class EcsJobRunner:
    """Starts one Fargate task per pair, passing artifact keys as container env."""

    def __init__(
        self,
        *,
        cluster: str,
        task_definition: str,
        subnet_ids: list[str],
        bucket: str,
        security_group_ids: list[str] | None = None,
        container_name: str = DEFAULT_CONTAINER_NAME,
        region_name: str = "us-east-1",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: Any = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if not cluster or not task_definition:
            raise ConfigurationError("ECS_CLUSTER_NAME and ECS_TASK_DEFINITION_ARN are required for the ecs runner")
        if not subnet_ids:
            raise ConfigurationError("VPC_SUBNET_IDS is required for the ecs runner")
        if not bucket:
            raise ConfigurationError("S3_BUCKET is required for the ecs runner")

        self.cluster = cluster
        self.task_definition = task_definition
        self.subnet_ids = subnet_ids
        self.security_group_ids = security_group_ids or []
        self.bucket = bucket
        self.container_name = container_name
        self.region_name = region_name
        self._clock = clock
        self._client = client or boto3.client(
            "ecs", region_name=region_name, config=_client_config(timeout_seconds)
        )

    def invoke(self, payload: dict[str, str]) -> DispatchResult:
        primary_key = payload["primaryArtifactId"]
        task_id = merge_task_id(self._clock())
        output_key = merge_output_key(primary_key)

        vpc_config: dict[str, Any] = {"subnets": self.subnet_ids, "assignPublicIp": "ENABLED"}
        if self.security_group_ids:
            vpc_config["securityGroups"] = self.security_group_ids

        environment = {
            "TASK_ID": task_id,
            "MAIN_VIDEO_KEY": primary_key,
            "TRANSLATOR_VIDEO_KEY": payload["companionArtifactId"],
            "FINAL_OUTPUT_KEY": output_key,
            "S3_BUCKET": self.bucket,
            "AWS_REGION": self.region_name,
        }

        try:
            response = self._client.run_task(
                cluster=self.cluster,
                taskDefinition=self.task_definition,
                launchType="FARGATE",
                networkConfiguration={"awsvpcConfiguration": vpc_config},
                overrides={
                    "containerOverrides": [
                        {
                            "name": self.container_name,
                            "environment": [{"name": k, "value": v} for k, v in environment.items()],
                        }
                    ]
                },
            )
        except (ClientError, BotoCoreError) as exc:
            return DispatchResult(accepted=False, reason=f"ECS run_task failed: {exc}")

        failures = response.get("failures") or []
        tasks = response.get("tasks") or []
        if failures or not tasks:
            reasons = ", ".join(str(f.get("reason", "unknown")) for f in failures) or "no task started"
            return DispatchResult(accepted=False, reason=f"ECS rejected merge task: {reasons}")

        task_arn = tasks[0].get("taskArn", "")
        LOGGER.info("ECS merge task started: %s", task_arn)
        return DispatchResult(
            accepted=True,
            details={
                "taskId": task_id,
                "taskArn": task_arn,
                "finalOutputKey": output_key,
                "outputLocation": f"s3://{self.bucket}/{output_key}",
            },
        )


class HttpJobRunner:
    """Posts the payload to a merge-service webhook."""

    def __init__(self, url: str, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        if not url:
            raise ConfigurationError("MERGE_JOB_URL environment variable is required for the http runner")
        self.url = url
        self.timeout_seconds = timeout_seconds

    def invoke(self, payload: dict[str, str]) -> DispatchResult:
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            return DispatchResult(accepted=False, reason=f"Merge webhook request failed: {exc}")
        return DispatchResult(accepted=True, details={"statusCode": response.status_code})


class LoggingJobRunner:
    """Accepts every request and only logs it (dry runs, local replay)."""

    def __init__(self) -> None:
        self.invocations: list[dict[str, str]] = []

    def invoke(self, payload: dict[str, str]) -> DispatchResult:
        self.invocations.append(dict(payload))
        LOGGER.info("[dry-run] Would start merge job with payload %s", json.dumps(payload, sort_keys=True))
        return DispatchResult(accepted=True, details={"dryRun": True})


def merge_output_key(primary_artifact_id: str) -> str:
    """Merged output keeps the primary recording's file name under merge/."""
    return f"{MERGE_OUTPUT_PREFIX}/{PurePosixPath(primary_artifact_id).name}"


def merge_task_id(started_at: datetime) -> str:
    """``video-merge-2025-08-10T06-45-00-123Z``: UTC, millisecond precision, no colons or dots."""
    stamp = started_at.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3]
    return f"video-merge-{stamp}Z"
