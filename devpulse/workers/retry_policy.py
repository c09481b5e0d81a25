"""
Retry policies for queued tasks.

A policy is plain data handed to the worker pool: how many attempts a task
gets, how long to wait before each retry, and how long one attempt may run.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    delays: tuple[float, ...]
    timeout_seconds: float

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (1-based)."""
        if not self.delays:
            return 0.0
        index = min(max(attempt, 1) - 1, len(self.delays) - 1)
        return float(self.delays[index])


# 1s, 4s, 16s between attempts; 3 minutes per attempt
WEBHOOK_POLICY = RetryPolicy(max_attempts=3, delays=(1, 4, 16), timeout_seconds=180)

# Re-derivable from stored history, so fewer and slower retries
FLAKINESS_POLICY = RetryPolicy(max_attempts=2, delays=(30, 60), timeout_seconds=600)

# Talks to the GitHub API; same backoff as webhooks with a longer budget
FILE_ANALYSIS_POLICY = RetryPolicy(max_attempts=3, delays=(1, 4, 16), timeout_seconds=300)


def policies_from_settings(settings=None) -> dict[str, RetryPolicy]:
    """Build the task_type -> policy map, honouring configured overrides."""
    from devpulse.services.task_dispatch import TaskType

    if settings is None:
        from devpulse.config import get_settings
        settings = get_settings()

    return {
        TaskType.PROCESS_WEBHOOK: RetryPolicy(
            max_attempts=settings.webhook_task_max_attempts,
            delays=WEBHOOK_POLICY.delays,
            timeout_seconds=settings.webhook_task_timeout_seconds,
        ),
        TaskType.DETECT_FLAKY_TESTS: RetryPolicy(
            max_attempts=settings.flaky_task_max_attempts,
            delays=FLAKINESS_POLICY.delays,
            timeout_seconds=settings.flaky_task_timeout_seconds,
        ),
        TaskType.ANALYZE_PR_FILES: RetryPolicy(
            max_attempts=settings.file_analysis_task_max_attempts,
            delays=FILE_ANALYSIS_POLICY.delays,
            timeout_seconds=settings.file_analysis_task_timeout_seconds,
        ),
    }


def policy_for(task_type: str, policies: Optional[dict[str, RetryPolicy]] = None) -> RetryPolicy:
    if policies and task_type in policies:
        return policies[task_type]
    from devpulse.services.task_dispatch import TaskType
    if task_type == TaskType.DETECT_FLAKY_TESTS:
        return FLAKINESS_POLICY
    if task_type == TaskType.ANALYZE_PR_FILES:
        return FILE_ANALYSIS_POLICY
    return WEBHOOK_POLICY
