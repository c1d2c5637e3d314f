"""Action execution for rentflow workflows."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping

import httpx

from .collaborators import Collaborators
from .config import RetryConfig
from .constants import DEFAULT_ACTION_TIMEOUT
from .contracts import ACTION_TYPES, ActionResult, ActionStatus, BaseAction, ErrorKind
from .errors import ActionError, PermanentActionError, TransientActionError
from .utils.clock import Clock, utc_now
from .utils.retry import Sleep, schedule_retry
from .utils.templating import TemplateError, render

logger = logging.getLogger(__name__)

_ACTION_OPTIONS = {"type", "critical", "parallel", "delay_seconds"}


def classify_failure(exc: BaseException) -> ErrorKind:
    """Classify a collaborator failure as transient (retry) or permanent."""
    if isinstance(exc, ActionError):
        return ErrorKind(exc.kind)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def describe_failure(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) and not str(exc):
        return "timeout"
    return str(exc) or type(exc).__name__


def _plain_output(value: Any) -> Any:
    """Keep collaborator return values that serialize cleanly; stringify the rest."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _plain_output(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain_output(v) for v in value]
    return str(value)


def raise_for_status_code(status_code: int) -> None:
    """Turn an HTTP status code into the matching action error."""
    if status_code >= 500:
        raise TransientActionError(f"HTTP {status_code}")
    if status_code >= 400:
        raise PermanentActionError(f"HTTP {status_code}")


class ActionExecutor:
    """Dispatches one action to its collaborator with timeout and retry.

    Transient failures are retried with capped exponential backoff up to
    ``retry.max_attempts`` attempts. Permanent failures are returned
    immediately.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        timeout: float = DEFAULT_ACTION_TIMEOUT,
        retry: RetryConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utc_now,
    ) -> None:
        self._collaborators = collaborators
        self._timeout = timeout
        self._retry = retry or RetryConfig()
        self._sleep = sleep
        self._clock = clock
        self._handlers: dict[str, Callable[[Mapping[str, Any], Mapping[str, Any]], Awaitable[Any]]] = {
            "sendEmail": self._send_email,
            "sendSMS": self._send_sms,
            "createTask": self._create_task,
            "updateRecord": self._update_record,
            "generateDocument": self._generate_document,
            "sendNotification": self._send_notification,
            "callWebhook": self._call_webhook,
            "updateStatus": self._update_status,
        }
        missing = set(ACTION_TYPES) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(missing)}")

    async def execute(
        self, action: BaseAction, context: Mapping[str, Any], index: int = 0
    ) -> ActionResult:
        """Run ``action`` against ``context`` and return its result."""
        action_type = action.type
        try:
            params = render(action.model_dump(exclude=_ACTION_OPTIONS), context)
        except TemplateError as exc:
            logger.warning(f"Action {index} ({action_type}) could not be rendered: {exc}")
            return ActionResult(
                index=index,
                action_type=action_type,
                status=ActionStatus.FAILED,
                attempts=0,
                error_kind=ErrorKind.PERMANENT,
                last_error=str(exc),
            )

        if action.delay_seconds:
            await self._sleep(action.delay_seconds)

        handler = self._handlers[action_type]
        attempt = 0
        while True:
            attempt += 1
            try:
                output = await asyncio.wait_for(
                    handler(params, context), timeout=self._timeout
                )
            except Exception as exc:
                kind = classify_failure(exc)
                error = describe_failure(exc)
                if kind is ErrorKind.PERMANENT or attempt >= self._retry.max_attempts:
                    logger.warning(
                        f"Action {index} ({action_type}) failed after {attempt} attempt(s): "
                        f"{kind.value} error: {error}"
                    )
                    return ActionResult(
                        index=index,
                        action_type=action_type,
                        status=ActionStatus.FAILED,
                        attempts=attempt,
                        error_kind=kind,
                        last_error=error,
                    )
                delay = await schedule_retry(
                    attempt,
                    base=self._retry.base_delay,
                    factor=self._retry.factor,
                    cap=self._retry.max_delay,
                    jitter=self._retry.jitter,
                    sleep=self._sleep,
                )
                logger.info(
                    f"Action {index} ({action_type}) attempt {attempt} failed ({error}); "
                    f"retried after {delay:.2f}s"
                )
                continue

            logger.info(f"Action {index} ({action_type}) succeeded on attempt {attempt}")
            return ActionResult(
                index=index,
                action_type=action_type,
                status=ActionStatus.SUCCEEDED,
                attempts=attempt,
                output=_plain_output(output),
            )

    # ------------------------------------------------------------------
    def _require(self, name: str, action_type: str) -> Any:
        collaborator = getattr(self._collaborators, name)
        if collaborator is None:
            raise PermanentActionError(f"No collaborator configured for {action_type}")
        return collaborator

    async def _send_email(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        return await self._require("email", "sendEmail").send(p["to"], p["template"], p["vars"])

    async def _send_sms(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        return await self._require("sms", "sendSMS").send(p["to"], p["message"])

    async def _create_task(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        due_date = (self._clock() + timedelta(days=p["due_in_days"])).date()
        task = {
            "assignee": p["assignee"],
            "title": p["title"],
            "description": p["description"],
            "dueDate": due_date.isoformat(),
        }
        task_id = await self._require("tasks", "createTask").create(task)
        return {"taskId": task_id}

    async def _update_record(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        return await self._require("records", "updateRecord").update(
            p["entity_type"], str(p["id"]), p["patch"]
        )

    async def _generate_document(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        url = await self._require("documents", "generateDocument").generate(
            p["template"], {**context, **p["vars"]}
        )
        return {"url": url}

    async def _send_notification(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        return await self._require("notifications", "sendNotification").send(
            str(p["recipient_id"]), p["payload"]
        )

    async def _call_webhook(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        status_code = await self._require("webhooks", "callWebhook").call(
            p["url"], p["payload"], method=p["method"], headers=p["headers"] or None
        )
        raise_for_status_code(status_code)
        return {"statusCode": status_code}

    async def _update_status(self, p: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        return await self._require("statuses", "updateStatus").set_status(
            p["entity_type"], str(p["id"]), p["status"]
        )
