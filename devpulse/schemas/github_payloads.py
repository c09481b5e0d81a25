"""
GitHub webhook payload schemas.

Only the sections the pipeline reads are modelled; unknown keys are ignored.
Required fields raise ValidationError when absent; optional fields default.
model_fields_set tells the processors which fields the payload actually
carried, so updates never clobber data the payload did not mention.
"""
from datetime import datetime
from typing import Annotated, Optional, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator


def _as_str(value):
    if value is None or isinstance(value, str):
        return value
    return str(value)


# GitHub sends numeric ids; they are stored as strings
ExternalId = Annotated[str, BeforeValidator(_as_str)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GitHubUser(_Payload):
    id: ExternalId
    login: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class GitHubRepository(_Payload):
    id: ExternalId
    full_name: str
    name: Optional[str] = None
    owner: Optional[GitHubUser] = None
    default_branch: Optional[str] = None
    html_url: Optional[str] = None
    private: bool = False


class GitRef(_Payload):
    ref: Optional[str] = None
    sha: Optional[str] = None


class GitHubLabel(_Payload):
    name: str


class GitHubPullRequest(_Payload):
    number: int
    state: str
    id: Optional[ExternalId] = None
    title: Optional[str] = None
    body: Optional[str] = None
    html_url: Optional[str] = None
    user: Optional[GitHubUser] = None
    head: Optional[GitRef] = None
    base: Optional[GitRef] = None
    draft: Optional[bool] = None
    merged: Optional[bool] = None
    merged_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None
    commits: Optional[int] = None
    comments: Optional[int] = None
    review_comments: Optional[int] = None
    labels: Optional[list[GitHubLabel]] = None


class PullRequestEvent(_Payload):
    action: Optional[str] = None
    pull_request: GitHubPullRequest
    repository: GitHubRepository


class GitHubPullRequestFile(_Payload):
    """One entry of GET /repos/{owner}/{repo}/pulls/{number}/files."""
    filename: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    changes: int = 0
    previous_filename: Optional[str] = None


class GitHubReview(_Payload):
    id: ExternalId
    state: str
    user: Optional[GitHubUser] = None
    body: Optional[str] = None
    submitted_at: Optional[datetime] = None

    @field_validator("state", mode="before")
    @classmethod
    def _lowercase_state(cls, value):
        return value.lower() if isinstance(value, str) else value


class PullRequestReviewEvent(_Payload):
    action: Optional[str] = None
    review: GitHubReview
    pull_request: GitHubPullRequest
    repository: GitHubRepository


# ---------------------------------------------------------------------------
# CI payloads
# ---------------------------------------------------------------------------

class GitHubApp(_Payload):
    name: Optional[str] = None
    slug: Optional[str] = None


class TestCaseResult(_Payload):
    __test__ = False

    name: str
    status: str
    test_class: Optional[str] = Field(default=None, alias="classname")
    file: Optional[str] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    @field_validator("duration_ms", mode="before")
    @classmethod
    def _whole_milliseconds(cls, value):
        # Reporters commonly send fractional milliseconds
        if isinstance(value, float):
            return round(value)
        return value


class CoverageReport(_Payload):
    line: Optional[float] = None
    branch: Optional[float] = None
    method: Optional[float] = None


class TestResultsReport(_Payload):
    """Per-test results attached to a run by the CI reporter."""
    __test__ = False

    tests: list[TestCaseResult] = Field(default_factory=list)
    total: Optional[int] = None
    passed: Optional[int] = None
    failed: Optional[int] = None
    skipped: Optional[int] = None
    coverage: Optional[CoverageReport] = None


class CheckSuiteRef(_Payload):
    head_branch: Optional[str] = None


class CheckRun(_Payload):
    id: ExternalId
    head_sha: str
    name: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    html_url: Optional[str] = None
    details_url: Optional[str] = None
    app: Optional[GitHubApp] = None
    check_suite: Optional[CheckSuiteRef] = None
    test_results: Optional[TestResultsReport] = None


class CheckRunEvent(_Payload):
    action: Optional[str] = None
    check_run: CheckRun
    repository: GitHubRepository


class WorkflowRun(_Payload):
    id: ExternalId
    head_sha: str
    name: Optional[str] = None
    head_branch: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    run_started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    html_url: Optional[str] = None
    test_results: Optional[TestResultsReport] = None

    @model_validator(mode="before")
    @classmethod
    def _head_sha_from_head_commit(cls, data):
        if isinstance(data, dict) and not data.get("head_sha"):
            head_commit = data.get("head_commit") or {}
            if head_commit.get("id"):
                data = {**data, "head_sha": head_commit["id"]}
        return data


class WorkflowRunEvent(_Payload):
    action: Optional[str] = None
    workflow_run: WorkflowRun
    repository: GitHubRepository


class CheckSuite(_Payload):
    id: ExternalId
    head_sha: str
    head_branch: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    app: Optional[GitHubApp] = None


class CheckSuiteEvent(_Payload):
    action: Optional[str] = None
    check_suite: CheckSuite
    repository: GitHubRepository


class StatusEvent(_Payload):
    sha: str
    state: str
    context: Optional[str] = None
    target_url: Optional[str] = None
    description: Optional[str] = None
    repository: GitHubRepository


class PushCommit(_Payload):
    id: Optional[str] = None
    message: Optional[str] = None


class PushEvent(_Payload):
    ref: str
    repository: GitHubRepository
    before: Optional[str] = None
    after: Optional[str] = None
    commits: list[PushCommit] = Field(default_factory=list)
    head_commit: Optional[PushCommit] = None
    forced: bool = False
    pusher: Optional[dict[str, Union[str, None]]] = None
