"""
Repository and developer resolution.
Both are get-or-create by provider identity, refreshing mutable profile
fields every time they are seen.
"""
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.repository import Repository, Developer
from devpulse.schemas.github_payloads import GitHubRepository, GitHubUser
from devpulse.utils.upsert import upsert

logger = logging.getLogger(__name__)

PROVIDER = "github"


async def upsert_repository(db: AsyncSession, repo: GitHubRepository) -> uuid.UUID:
    name = repo.name or repo.full_name.split("/")[-1]
    owner = repo.owner.login if repo.owner else repo.full_name.split("/")[0]
    values = {
        "provider": PROVIDER,
        "external_id": repo.id,
        "full_name": repo.full_name,
        "name": name,
        "owner": owner,
        "is_private": repo.private,
    }
    # Only overwrite optional fields when the payload carried them
    if "default_branch" in repo.model_fields_set:
        values["default_branch"] = repo.default_branch
    if "html_url" in repo.model_fields_set:
        values["html_url"] = repo.html_url

    return await upsert(db, Repository, values, conflict_columns=["provider", "external_id"])


async def upsert_developer(db: AsyncSession, user: GitHubUser) -> uuid.UUID:
    values = {
        "provider": PROVIDER,
        "external_id": user.id,
        "username": user.login,
    }
    for field in ("name", "email", "avatar_url"):
        if field in user.model_fields_set:
            values[field] = getattr(user, field)

    return await upsert(db, Developer, values, conflict_columns=["provider", "external_id"])
