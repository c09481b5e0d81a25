"""
Pull request file analysis.

On synchronize the worker fetches the changed files from the GitHub REST API,
classifies each one, upserts FileChange rows by (pull request, path) and
stores the aggregate file metrics and risk score on the pull request.
Files no longer part of the diff are removed so a re-run converges.
"""
import logging
import posixpath
import uuid
from collections import Counter
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.file_change import FileChange
from devpulse.models.pull_request import PullRequest
from devpulse.models.repository import Repository
from devpulse.schemas.github_payloads import GitHubPullRequestFile
from devpulse.services.pull_requests import DEFAULT_STALE_AFTER_DAYS, apply_file_metrics
from devpulse.utils.upsert import upsert

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
FILES_PER_PAGE = 100
# GitHub lists at most 3000 files for a pull request
MAX_FILE_PAGES = 30

FILE_TYPES = {
    "code": {"php", "py", "js", "ts", "java", "c", "cpp", "cs", "rb", "go", "rs"},
    "frontend": {"html", "css", "scss", "less"},
    "config": {"sql", "yml", "yaml", "json", "xml"},
    "documentation": {"md", "txt", "rst"},
    "image": {"jpg", "png", "gif", "svg"},
}

CONFIG_EXTENSIONS = {"yml", "yaml", "json", "xml", "ini", "conf"}

# Changed lines are weighted by where they land
CORE_FILE_WEIGHT = 2.0
CONFIG_FILE_WEIGHT = 1.5
RISK_SCORE_DIVISOR = 1000
MAX_RISK_SCORE = 10.0


class FileAnalysisError(Exception):
    """The pull request files could not be fetched."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def file_extension(path: str) -> Optional[str]:
    """Lowercased text after the last dot of the file name, None without one."""
    name = posixpath.basename(path)
    if "." not in name:
        return None
    return name.rsplit(".", 1)[1].lower()[:20] or None


def classify_file_type(path: str) -> str:
    extension = file_extension(path)
    for file_type, extensions in FILE_TYPES.items():
        if extension in extensions:
            return file_type
    return "other"


def is_test_file(path: str) -> bool:
    lowered = path.lower()
    return "test" in lowered or "spec" in lowered


def is_config_file(path: str) -> bool:
    lowered = path.lower()
    if "config" in lowered or ".env" in lowered:
        return True
    return file_extension(path) in CONFIG_EXTENSIONS


def is_core_file(path: str) -> bool:
    lowered = path.lower()
    return (
        "core" in lowered
        or "app/" in lowered
        or "src/" in lowered
        or lowered.startswith("lib/")
    )


def risk_score(files: list[GitHubPullRequestFile]) -> float:
    """
    Weighted changed lines scaled to 0..10.

    Core files count double and config files one and a half times; every
    thousand weighted lines add one point.
    """
    score = 0.0
    for f in files:
        if is_core_file(f.filename):
            weight = CORE_FILE_WEIGHT
        elif is_config_file(f.filename):
            weight = CONFIG_FILE_WEIGHT
        else:
            weight = 1.0
        score += (f.additions + f.deletions) * weight
    return round(min(score / RISK_SCORE_DIVISOR, MAX_RISK_SCORE), 2)


def file_metrics(files: list[GitHubPullRequestFile]) -> dict:
    return {
        "total_additions": sum(f.additions for f in files),
        "total_deletions": sum(f.deletions for f in files),
        "total_changes": sum(f.changes for f in files),
        "file_types": dict(Counter(classify_file_type(f.filename) for f in files)),
        "test_files_count": sum(1 for f in files if is_test_file(f.filename)),
        "config_files_count": sum(1 for f in files if is_config_file(f.filename)),
        "risk_score": risk_score(files),
    }


def _file_change_values(repository_id: uuid.UUID, pull_request_id: uuid.UUID, f: GitHubPullRequestFile) -> dict:
    directory = posixpath.dirname(f.filename)
    return {
        "repository_id": repository_id,
        "pull_request_id": pull_request_id,
        "file_path": f.filename,
        "previous_file_path": f.previous_filename,
        "directory": directory or None,
        "file_extension": file_extension(f.filename),
        "change_type": f.status,
        "additions": f.additions,
        "deletions": f.deletions,
        "changes": f.changes,
        "file_type": classify_file_type(f.filename),
        "is_test_file": is_test_file(f.filename),
        "is_config_file": is_config_file(f.filename),
    }


# ---------------------------------------------------------------------------
# GitHub API
# ---------------------------------------------------------------------------

async def fetch_pull_request_files(
    full_name: str,
    number: int,
    token: str,
    api_url: str = GITHUB_API_URL,
    timeout: float = 30.0,
) -> list[GitHubPullRequestFile]:
    """List every file of a pull request, following pagination."""
    if not token:
        raise FileAnalysisError("GitHub API token is not configured")

    headers = {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github.v3+json",
        "User-Agent": "devpulse",
    }
    url = f"{api_url.rstrip('/')}/repos/{full_name}/pulls/{number}/files"

    files: list[GitHubPullRequestFile] = []
    try:
        async with httpx.AsyncClient(timeout=timeout, headers=headers) as client:
            for page in range(1, MAX_FILE_PAGES + 1):
                response = await client.get(url, params={"per_page": FILES_PER_PAGE, "page": page})
                if response.status_code >= 300:
                    raise FileAnalysisError(
                        f"GitHub returned HTTP {response.status_code} for {full_name}#{number} files"
                    )
                batch = response.json()
                files.extend(GitHubPullRequestFile.model_validate(item) for item in batch)
                if len(batch) < FILES_PER_PAGE:
                    break
    except httpx.HTTPError as e:
        raise FileAnalysisError(f"Fetching files for {full_name}#{number} failed: {e}") from e

    return files


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

async def analyze_pull_request_files(
    db: AsyncSession,
    pull_request_id: uuid.UUID,
    token: str,
    api_url: str = GITHUB_API_URL,
    timeout: float = 30.0,
    now: Optional[datetime] = None,
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
) -> dict:
    pull_request = await db.get(PullRequest, pull_request_id)
    if pull_request is None:
        raise LookupError(f"Pull request {pull_request_id} not found")
    repository = await db.get(Repository, pull_request.repository_id)

    files = await fetch_pull_request_files(
        repository.full_name, pull_request.number, token, api_url=api_url, timeout=timeout,
    )

    for f in files:
        await upsert(
            db, FileChange,
            _file_change_values(repository.id, pull_request.id, f),
            conflict_columns=["pull_request_id", "file_path"],
        )

    paths = [f.filename for f in files]
    await db.execute(
        delete(FileChange)
        .where(and_(
            FileChange.pull_request_id == pull_request.id,
            FileChange.file_path.not_in(paths),
        ))
        .execution_options(synchronize_session=False)
    )

    metrics = file_metrics(files)
    pull_request = await apply_file_metrics(
        db, pull_request.id, metrics, changed_files=len(files),
        now=now, stale_after_days=stale_after_days,
    )

    logger.info(
        "Analyzed %d files of %s#%d: risk=%.2f hot=%s",
        len(files), repository.full_name, pull_request.number, metrics["risk_score"], pull_request.is_hot,
        extra={"repository": repository.full_name},
    )
    return {
        "status": "analyzed",
        "pull_request_id": str(pull_request.id),
        "files": len(files),
        "risk_score": metrics["risk_score"],
        "is_hot": pull_request.is_hot,
    }
