"""
Insert-or-update by natural key.

Every domain write in the pipeline goes through here so that re-running a
handler converges on the same rows. The natural key must be backed by a
unique constraint or unique index in the schema.
"""
import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import select, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

_IMMUTABLE_COLUMNS = {"id", "created_at"}


def dialect_insert(db: AsyncSession):
    """Dialect-specific insert() that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert is not supported on dialect {dialect!r}")


async def upsert(
    db: AsyncSession,
    model,
    values: dict,
    conflict_columns: list[str],
    update_columns: Optional[Iterable[str]] = None,
) -> uuid.UUID:
    """
    INSERT .. ON CONFLICT (conflict_columns) DO UPDATE and return the row id.

    update_columns defaults to every supplied column outside the key, so callers
    control which fields are overwritten simply by what they put in values.
    """
    table = model.__table__
    insert = dialect_insert(db)
    stmt = insert(table).values(**values)

    if update_columns is None:
        update_columns = [
            k for k in values
            if k not in conflict_columns and k not in _IMMUTABLE_COLUMNS
        ]

    set_ = {col: stmt.excluded[col] for col in update_columns}
    if "updated_at" in table.c:
        set_["updated_at"] = utcnow()

    stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=set_)
    stmt = stmt.returning(table.c.id)
    result = await db.execute(stmt)
    row_id = result.scalar_one_or_none()
    if row_id is not None:
        return row_id

    # Some backends return nothing for a no-op update; fall back to the key lookup
    lookup = await db.execute(
        select(table.c.id).where(
            and_(*[table.c[col] == values[col] for col in conflict_columns])
        )
    )
    return lookup.scalar_one()


async def load_fresh(db: AsyncSession, model, row_id: uuid.UUID):
    """Load a row bypassing any stale copy in the identity map."""
    result = await db.execute(
        select(model)
        .where(model.id == row_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()
