"""Shared fixtures: in-memory repository, scripted collaborators and a fake clock."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from rentflow.collaborators import Collaborators
from rentflow.config import EngineConfig, RetryConfig
from rentflow.engine import WorkflowEngine
from rentflow.execute import ActionExecutor
from rentflow.persistence import InMemoryWorkflowRepository
from rentflow.recorder import ExecutionRecorder
from rentflow.store import WorkflowStore


class FakeCollaborator:
    """Records every call; raises queued failures before returning ``result``."""

    def __init__(self, *failures, result=None, delay=0.0):
        self.calls = []
        self.failures = list(failures)
        self.result = result
        self.delay = delay

    async def _invoke(self, *args):
        self.calls.append(args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class FakeEmailSender(FakeCollaborator):
    async def send(self, to, template, vars):
        return await self._invoke(to, template, dict(vars))


class FakeSMSSender(FakeCollaborator):
    async def send(self, to, message):
        return await self._invoke(to, message)


class FakeTaskCreator(FakeCollaborator):
    async def create(self, task):
        return await self._invoke(dict(task))


class FakeRecordUpdater(FakeCollaborator):
    async def update(self, entity_type, id, patch):
        return await self._invoke(entity_type, id, dict(patch))


class FakeDocumentGenerator(FakeCollaborator):
    async def generate(self, template, vars):
        return await self._invoke(template, dict(vars))


class FakeNotificationSender(FakeCollaborator):
    async def send(self, recipient_id, payload):
        return await self._invoke(recipient_id, dict(payload))


class FakeWebhookCaller(FakeCollaborator):
    async def call(self, url, payload, method="POST", headers=None):
        return await self._invoke(url, dict(payload), method)


class FakeStatusUpdater(FakeCollaborator):
    async def set_status(self, entity_type, id, status):
        return await self._invoke(entity_type, id, status)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def collaborators():
    return Collaborators(
        email=FakeEmailSender(),
        sms=FakeSMSSender(),
        tasks=FakeTaskCreator(result="task-1"),
        records=FakeRecordUpdater(),
        documents=FakeDocumentGenerator(result="https://docs.example.com/lease.pdf"),
        notifications=FakeNotificationSender(),
        webhooks=FakeWebhookCaller(result=200),
        statuses=FakeStatusUpdater(),
    )


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(repo, clock):
    return WorkflowStore(repo, clock)


@pytest.fixture
def executor(collaborators, sleep):
    return ActionExecutor(collaborators, timeout=1.0, retry=RetryConfig(), sleep=sleep)


@pytest.fixture
def engine(repo, executor):
    return WorkflowEngine(repo, executor, ExecutionRecorder(repo), EngineConfig())
