"""Submits one-shot bot worker tasks to the container orchestrator.

Requests follow the ECS ``RunTask`` JSON protocol but carry no SigV4
signature, so ``api_url`` must be a signing proxy in front of ECS.
Throttling, 5xx answers, timeouts and connection errors are retried with
exponential backoff; anything else fails immediately.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib import error, request

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

_RUN_TASK_TARGET = "AmazonEC2ContainerServiceV20141113.RunTask"
_RETRYABLE_FAILURE_REASONS = {"RESOURCE:CPU", "RESOURCE:MEMORY", "AGENT", "CAPACITY"}


class TaskLaunchError(Exception):
    pass


class TransientTaskLaunchError(TaskLaunchError):
    pass


@dataclass(frozen=True)
class TaskTemplate:
    task_definition: str
    container_name: str


class TaskLauncherClient:
    def __init__(
        self,
        *,
        api_url: str,
        cluster: str,
        subnets: list[str] | None = None,
        security_groups: list[str] | None = None,
        timeout_seconds: float = 15.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.cluster = cluster
        self.subnets = list(subnets or [])
        self.security_groups = list(security_groups or [])
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    def run_task(self, template: TaskTemplate, environment: dict[str, str]) -> str:
        """Start a task and return its ARN, retrying transient failures."""
        if not self.api_url:
            raise TaskLaunchError("Task launcher is not configured.")
        payload = self._build_run_task_payload(template, environment)
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
            retry=retry_if_exception_type(TransientTaskLaunchError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.warning(
                        "Retrying task launch task_definition=%s attempt=%s",
                        template.task_definition,
                        attempt_number,
                    )
                return self._submit(payload)
        raise TaskLaunchError("Task launch did not run.")

    def _build_run_task_payload(self, template: TaskTemplate, environment: dict[str, str]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "cluster": self.cluster,
            "taskDefinition": template.task_definition,
            "launchType": "FARGATE",
            "count": 1,
            "overrides": {
                "containerOverrides": [
                    {
                        "name": template.container_name,
                        "environment": [
                            {"name": name, "value": value} for name, value in environment.items()
                        ],
                    },
                ],
            },
        }
        if self.subnets:
            payload["networkConfiguration"] = {
                "awsvpcConfiguration": {
                    "subnets": self.subnets,
                    "securityGroups": self.security_groups,
                    "assignPublicIp": "ENABLED",
                },
            }
        return payload

    def _submit(self, payload: dict[str, Any]) -> str:
        req = request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/x-amz-json-1.1",
                "X-Amz-Target": _RUN_TASK_TARGET,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise TransientTaskLaunchError("Task launch request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            message = f"Task launch HTTP {exc.code}: {body or 'empty response body'}"
            if exc.code == 429 or exc.code >= 500 or "Throttling" in body:
                raise TransientTaskLaunchError(message) from exc
            raise TaskLaunchError(message) from exc
        except error.URLError as exc:
            raise TransientTaskLaunchError(f"Task launch connection error: {exc.reason}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise TaskLaunchError("Task launch returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise TaskLaunchError("Task launch response is not a JSON object.")

        tasks = parsed_body.get("tasks")
        if isinstance(tasks, list) and tasks and isinstance(tasks[0], dict):
            task_arn = tasks[0].get("taskArn")
            if isinstance(task_arn, str) and task_arn:
                return task_arn

        failures = parsed_body.get("failures")
        reason = ""
        if isinstance(failures, list) and failures and isinstance(failures[0], dict):
            reason = str(failures[0].get("reason") or "")
        if any(reason.startswith(prefix) for prefix in _RETRYABLE_FAILURE_REASONS):
            raise TransientTaskLaunchError(f"Task launch capacity failure: {reason}")
        raise TaskLaunchError(f"Task launch returned no task: {reason or 'unknown reason'}")
