"""Interfaces of the external collaborators actions are dispatched to.

Delivery mechanics live elsewhere; the engine only depends on these
protocols. ``HttpWebhookCaller`` is the one adapter shipped here because the
engine has to classify HTTP status codes itself.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, to: str, template: str, vars: Mapping[str, Any]) -> Any: ...


class SMSSender(Protocol):
    async def send(self, to: str, message: str) -> Any: ...


class TaskCreator(Protocol):
    async def create(self, task: Mapping[str, Any]) -> str:
        """Create a task and return its id. Invalid assignees fail permanently."""
        ...


class RecordUpdater(Protocol):
    async def update(self, entity_type: str, id: str, patch: Mapping[str, Any]) -> Any:
        """Patch a record. A missing record fails permanently."""
        ...


class DocumentGenerator(Protocol):
    async def generate(self, template: str, vars: Mapping[str, Any]) -> str:
        """Render a document and return its URL."""
        ...


class NotificationSender(Protocol):
    async def send(self, recipient_id: str, payload: Mapping[str, Any]) -> Any: ...


class WebhookCaller(Protocol):
    async def call(
        self,
        url: str,
        payload: Mapping[str, Any],
        method: str = "POST",
        headers: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Invoke ``url`` and return the HTTP status code."""
        ...


class StatusUpdater(Protocol):
    async def set_status(self, entity_type: str, id: str, status: str) -> Any: ...


@dataclass
class Collaborators:
    """Collaborators injected into the action executor.

    A missing collaborator makes its action type fail permanently.
    """

    email: Optional[EmailSender] = None
    sms: Optional[SMSSender] = None
    tasks: Optional[TaskCreator] = None
    records: Optional[RecordUpdater] = None
    documents: Optional[DocumentGenerator] = None
    notifications: Optional[NotificationSender] = None
    webhooks: Optional[WebhookCaller] = None
    statuses: Optional[StatusUpdater] = None


class HttpWebhookCaller:
    """Webhook caller backed by ``httpx`` with separate connect/read timeouts."""

    def __init__(
        self,
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._client = client

    async def call(
        self,
        url: str,
        payload: Mapping[str, Any],
        method: str = "POST",
        headers: Optional[Mapping[str, str]] = None,
    ) -> int:
        if self._client is not None:
            return await self._send(self._client, url, payload, method, headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._send(client, url, payload, method, headers)

    async def _send(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: Mapping[str, Any],
        method: str,
        headers: Optional[Mapping[str, str]],
    ) -> int:
        if method == "GET":
            response = await client.request(
                method, url, params=dict(payload), headers=headers, timeout=self._timeout
            )
        else:
            response = await client.request(
                method, url, json=dict(payload), headers=headers, timeout=self._timeout
            )
        logger.info(f"Webhook {method} {url} -> {response.status_code}")
        return response.status_code


# ----------------------------------------------------------------------
# Dry-run collaborators: log the side effect instead of performing it.


class DryRunEmailSender:
    async def send(self, to: str, template: str, vars: Mapping[str, Any]) -> None:
        logger.info(f"[dry-run] email to={to} template={template} vars={dict(vars)}")


class DryRunSMSSender:
    async def send(self, to: str, message: str) -> None:
        logger.info(f"[dry-run] sms to={to} message={message!r}")


class DryRunTaskCreator:
    async def create(self, task: Mapping[str, Any]) -> str:
        task_id = str(uuid.uuid4())
        logger.info(f"[dry-run] task {task_id}: {dict(task)}")
        return task_id


class DryRunRecordUpdater:
    async def update(self, entity_type: str, id: str, patch: Mapping[str, Any]) -> None:
        logger.info(f"[dry-run] update {entity_type}/{id}: {dict(patch)}")


class DryRunDocumentGenerator:
    async def generate(self, template: str, vars: Mapping[str, Any]) -> str:
        logger.info(f"[dry-run] document template={template}")
        return f"dry-run://documents/{template}/{uuid.uuid4()}"


class DryRunNotificationSender:
    async def send(self, recipient_id: str, payload: Mapping[str, Any]) -> None:
        logger.info(f"[dry-run] notify {recipient_id}: {dict(payload)}")


class DryRunStatusUpdater:
    async def set_status(self, entity_type: str, id: str, status: str) -> None:
        logger.info(f"[dry-run] status {entity_type}/{id} -> {status}")


def dry_run_collaborators(webhooks: WebhookCaller | None = None) -> Collaborators:
    """Collaborators that only log, optionally with a real webhook caller."""
    return Collaborators(
        email=DryRunEmailSender(),
        sms=DryRunSMSSender(),
        tasks=DryRunTaskCreator(),
        records=DryRunRecordUpdater(),
        documents=DryRunDocumentGenerator(),
        notifications=DryRunNotificationSender(),
        webhooks=webhooks,
        statuses=DryRunStatusUpdater(),
    )
