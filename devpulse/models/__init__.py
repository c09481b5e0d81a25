"""
Database models - import all models here so Alembic can discover them.
"""
from devpulse.models.repository import Repository, Developer
from devpulse.models.pull_request import PullRequest, PullRequestReview
from devpulse.models.file_change import FileChange
from devpulse.models.test_run import TestRun, TestResult
from devpulse.models.alert import AlertRule, Alert
from devpulse.models.webhook_event import WebhookEvent
from devpulse.models.task_queue import TaskQueue
from devpulse.models.dead_letter import DeadLetter

__all__ = [
    "Repository",
    "Developer",
    "PullRequest",
    "PullRequestReview",
    "FileChange",
    "TestRun",
    "TestResult",
    "AlertRule",
    "Alert",
    "WebhookEvent",
    "TaskQueue",
    "DeadLetter",
]
