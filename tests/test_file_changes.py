"""
Tests for pull request file analysis: classification, risk score, the
synchronize trigger and the GitHub files fetch.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import select, func

from devpulse.models.file_change import FileChange
from devpulse.models.pull_request import PullRequest
from devpulse.schemas.github_payloads import GitHubPullRequestFile
from devpulse.services.file_changes import (
    FileAnalysisError,
    analyze_pull_request_files,
    classify_file_type,
    file_extension,
    file_metrics,
    is_config_file,
    is_core_file,
    is_test_file,
    risk_score,
)
from devpulse.services.pull_requests import is_hot

from payloads import file_payload, pull_request_payload, run_event

NOW = datetime(2024, 1, 2, tzinfo=timezone.utc)
FILES_URL = "https://api.github.com/repos/acme/widgets/pulls/7/files"


def _files(*entries) -> list[GitHubPullRequestFile]:
    return [GitHubPullRequestFile.model_validate(e) for e in entries]


def _response(body, status_code: int = 200):
    response = MagicMock(status_code=status_code)
    response.json.return_value = body
    return response


def _github_client(*responses):
    client = AsyncMock()
    client.get = AsyncMock(side_effect=list(responses))
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


async def _pull_request(db, number: int = 7) -> PullRequest:
    result = await db.execute(
        select(PullRequest)
        .where(PullRequest.number == number)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _file_changes(db) -> dict[str, FileChange]:
    result = await db.execute(select(FileChange).execution_options(populate_existing=True))
    return {fc.file_path: fc for fc in result.scalars().all()}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class TestClassification:
    def test_file_extension(self):
        assert file_extension("src/app/main.py") == "py"
        assert file_extension("docs/README.MD") == "md"
        assert file_extension("dist/archive.tar.gz") == "gz"
        assert file_extension("Makefile") is None
        assert file_extension("v1.2/Dockerfile") is None

    @pytest.mark.parametrize("path,expected", [
        ("src/main.py", "code"),
        ("cmd/server.go", "code"),
        ("web/site.scss", "frontend"),
        ("db/schema.sql", "config"),
        ("deploy/values.yaml", "config"),
        ("README.md", "documentation"),
        ("assets/logo.svg", "image"),
        ("Makefile", "other"),
        ("tools/run.sh", "other"),
    ])
    def test_classify_file_type(self, path, expected):
        assert classify_file_type(path) == expected

    def test_is_test_file(self):
        assert is_test_file("tests/test_widgets.py") is True
        assert is_test_file("spec/widget_spec.rb") is True
        assert is_test_file("src/WidgetTest.java") is True
        assert is_test_file("src/widgets.py") is False

    def test_is_config_file(self):
        assert is_config_file("config/settings.py") is True
        assert is_config_file(".env.example") is True
        assert is_config_file("deploy/app.ini") is True
        assert is_config_file("package.json") is True
        assert is_config_file("src/main.py") is False

    def test_is_core_file(self):
        assert is_core_file("src/main.py") is True
        assert is_core_file("app/models.py") is True
        assert is_core_file("lib/util.rb") is True
        assert is_core_file("pkg/core/engine.go") is True
        assert is_core_file("docs/guide.md") is False
        assert is_core_file("mylib/util.rb") is False


class TestRiskScore:
    def test_weights_core_and_config_changes(self):
        files = _files(
            file_payload("src/main.py", additions=300, deletions=100),  # core: 400 * 2
            file_payload("deploy/app.yml", additions=100, deletions=0),  # config: 100 * 1.5
            file_payload("docs/guide.md", additions=50, deletions=0),
        )
        assert risk_score(files) == 1.0

    def test_capped_at_ten(self):
        assert risk_score(_files(file_payload("src/big.py", additions=10000, deletions=0))) == 10.0

    def test_no_files(self):
        assert risk_score([]) == 0.0

    def test_file_metrics(self):
        files = _files(
            file_payload("tests/test_widgets.py", additions=10, deletions=2),
            file_payload("config/settings.json", additions=5, deletions=1),
        )
        metrics = file_metrics(files)

        assert metrics["total_additions"] == 15
        assert metrics["total_deletions"] == 3
        assert metrics["total_changes"] == 18
        assert metrics["file_types"] == {"code": 1, "config": 1}
        assert metrics["test_files_count"] == 1
        assert metrics["config_files_count"] == 1
        assert metrics["risk_score"] == 0.02


# ---------------------------------------------------------------------------
# Hot pull requests
# ---------------------------------------------------------------------------

class TestIsHot:
    def test_many_comments(self):
        assert is_hot(10, 0, 0) is True

    def test_large_diff(self):
        assert is_hot(0, 600, 400) is True

    def test_below_both_thresholds(self):
        assert is_hot(9, 500, 499) is False

    def test_missing_counts(self):
        assert is_hot(None, None, None) is False

    @pytest.mark.asyncio
    async def test_flag_follows_pull_request_snapshot(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        assert (await _pull_request(db)).is_hot is False

        await run_event(
            db, "pull_request",
            pull_request_payload(action="edited", comments=12, updated_at="2024-01-01T12:00:00Z"),
            now=NOW,
        )
        assert (await _pull_request(db)).is_hot is True


# ---------------------------------------------------------------------------
# Synchronize trigger
# ---------------------------------------------------------------------------

class TestSynchronizeTrigger:
    @pytest.mark.asyncio
    async def test_synchronize_queues_file_analysis(self, db):
        result, ctx = await run_event(
            db, "pull_request", pull_request_payload(action="synchronize"), now=NOW, analyze_files=True,
        )

        assert len(ctx.enqueued) == 1
        task = ctx.enqueued[0]
        assert task.task_type == "analyze_pull_request_files"
        assert task.lane == "low"
        assert task.payload == {"pull_request_id": result["pull_request_id"]}
        assert result["file_analysis_task_id"] == str(task.id)

    @pytest.mark.asyncio
    async def test_disabled_without_github_api(self, db):
        result, ctx = await run_event(db, "pull_request", pull_request_payload(action="synchronize"), now=NOW)
        assert ctx.enqueued == []
        assert result["file_analysis_task_id"] is None

    @pytest.mark.asyncio
    async def test_other_actions_do_not_analyze(self, db):
        _, ctx = await run_event(
            db, "pull_request", pull_request_payload(action="opened"), now=NOW, analyze_files=True,
        )
        assert ctx.enqueued == []


# ---------------------------------------------------------------------------
# Fetch and analysis
# ---------------------------------------------------------------------------

class TestAnalyzePullRequestFiles:
    @pytest.mark.asyncio
    async def test_stores_file_changes_and_metrics(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        pull_request = await _pull_request(db)
        client = _github_client(_response([
            file_payload("src/widgets.py", additions=300, deletions=100),
            file_payload("tests/test_widgets.py", additions=40, deletions=10, status="added"),
            file_payload("docs/old.md", additions=0, deletions=20, status="removed"),
        ]))

        with patch("devpulse.services.file_changes.httpx.AsyncClient", return_value=client) as client_cls:
            result = await analyze_pull_request_files(db, pull_request.id, token="ghp_test", now=NOW)

        assert client_cls.call_args.kwargs["headers"]["Authorization"] == "Bearer ghp_test"
        client.get.assert_awaited_once_with(FILES_URL, params={"per_page": 100, "page": 1})
        assert result["files"] == 3
        assert result["risk_score"] == 0.87

        changes = await _file_changes(db)
        assert set(changes) == {"src/widgets.py", "tests/test_widgets.py", "docs/old.md"}
        widgets = changes["src/widgets.py"]
        assert widgets.directory == "src"
        assert widgets.file_extension == "py"
        assert widgets.file_type == "code"
        assert widgets.change_type == "modified"
        assert widgets.is_test_file is False
        assert changes["tests/test_widgets.py"].is_test_file is True
        assert changes["docs/old.md"].change_type == "removed"

        pull_request = await _pull_request(db)
        assert pull_request.changed_files == 3
        assert pull_request.additions == 340
        assert pull_request.deletions == 130
        assert pull_request.risk_score == 0.87
        assert pull_request.file_metrics["file_types"] == {"code": 2, "documentation": 1}
        assert pull_request.file_metrics["test_files_count"] == 1
        assert pull_request.is_hot is False

    @pytest.mark.asyncio
    async def test_rerun_converges_on_current_files(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        pull_request = await _pull_request(db)

        first = _github_client(_response([
            file_payload("src/widgets.py"),
            file_payload("src/gadgets.py"),
        ]))
        with patch("devpulse.services.file_changes.httpx.AsyncClient", return_value=first):
            await analyze_pull_request_files(db, pull_request.id, token="ghp_test", now=NOW)

        # The gadgets change was reverted and widgets grew
        second = _github_client(_response([file_payload("src/widgets.py", additions=700, deletions=400)]))
        with patch("devpulse.services.file_changes.httpx.AsyncClient", return_value=second):
            await analyze_pull_request_files(db, pull_request.id, token="ghp_test", now=NOW)

        changes = await _file_changes(db)
        assert set(changes) == {"src/widgets.py"}
        assert changes["src/widgets.py"].additions == 700
        assert (await db.execute(select(func.count()).select_from(FileChange))).scalar_one() == 1

        pull_request = await _pull_request(db)
        assert pull_request.changed_files == 1
        assert pull_request.is_hot is True

    @pytest.mark.asyncio
    async def test_follows_pagination(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        pull_request = await _pull_request(db)
        full_page = [file_payload(f"src/module_{i}.py", additions=1, deletions=0) for i in range(100)]
        client = _github_client(_response(full_page), _response([file_payload("README.md")]))

        with patch("devpulse.services.file_changes.httpx.AsyncClient", return_value=client):
            result = await analyze_pull_request_files(db, pull_request.id, token="ghp_test", now=NOW)

        assert result["files"] == 101
        assert client.get.await_count == 2
        assert client.get.call_args.kwargs["params"] == {"per_page": 100, "page": 2}

    @pytest.mark.asyncio
    async def test_http_error_writes_nothing(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        pull_request = await _pull_request(db)
        client = _github_client(_response({"message": "Not Found"}, status_code=404))

        with patch("devpulse.services.file_changes.httpx.AsyncClient", return_value=client):
            with pytest.raises(FileAnalysisError, match="HTTP 404"):
                await analyze_pull_request_files(db, pull_request.id, token="ghp_test", now=NOW)

        assert await _file_changes(db) == {}
        assert (await _pull_request(db)).file_metrics is None

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        pull_request = await _pull_request(db)
        client = _github_client(httpx.ConnectError("connection refused"))

        with patch("devpulse.services.file_changes.httpx.AsyncClient", return_value=client):
            with pytest.raises(FileAnalysisError, match="connection refused"):
                await analyze_pull_request_files(db, pull_request.id, token="ghp_test", now=NOW)

    @pytest.mark.asyncio
    async def test_missing_token_fails_before_any_request(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        pull_request = await _pull_request(db)

        with patch("devpulse.services.file_changes.httpx.AsyncClient") as client_cls:
            with pytest.raises(FileAnalysisError, match="token"):
                await analyze_pull_request_files(db, pull_request.id, token="", now=NOW)
        client_cls.assert_not_called()
