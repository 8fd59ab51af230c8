"""Per-principal query history and saved queries.

Every run appends one row; saving appends a bookmarked row without running
anything.  All reads and deletes are scoped to the requesting principal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threatquery.config import settings
from threatquery.db import async_session_factory
from threatquery.db.models import QueryHistory

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    principal_id: str
    raw_text: str
    declared_language: str | None
    row_count: int | None
    elapsed_ms: int | None
    created_at: datetime
    is_saved: bool = False
    saved_name: str | None = None
    error: str | None = None
    translated_query: str | None = None

    @classmethod
    def from_model(cls, row: QueryHistory) -> "HistoryEntry":
        return cls(
            id=row.id,
            principal_id=row.user_id,
            raw_text=row.query,
            declared_language=row.query_type,
            row_count=row.result_count,
            elapsed_ms=row.execution_time_ms,
            created_at=row.created_at,
            is_saved=bool(row.is_saved),
            saved_name=row.saved_name,
            error=row.error,
            translated_query=row.translated_query,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "query": self.raw_text,
            "query_type": self.declared_language,
            "result_count": self.row_count,
            "execution_time_ms": self.elapsed_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "is_saved": self.is_saved,
            "saved_name": self.saved_name,
            "error": self.error,
        }


class QueryHistoryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or async_session_factory

    async def record(
        self,
        principal_id: str,
        raw_text: str,
        declared_language: str | None,
        row_count: int | None,
        elapsed_ms: int | None,
        error: str | None = None,
        translated_query: str | None = None,
    ) -> HistoryEntry:
        row = QueryHistory(
            user_id=principal_id,
            query=raw_text or "",
            query_type=declared_language,
            translated_query=translated_query,
            result_count=row_count,
            execution_time_ms=elapsed_ms,
            error=error,
            is_saved=False,
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
        logger.debug(f"Recorded query attempt {row.id} for principal {principal_id}")
        return HistoryEntry.from_model(row)

    async def list_history(self, principal_id: str, limit: int | None = None) -> list[HistoryEntry]:
        """Most recent execution attempts first; saved bookmarks are listed separately."""
        limit = min(max(limit or settings.QUERY_HISTORY_LIMIT, 1), MAX_HISTORY_LIMIT)
        stmt = (
            select(QueryHistory)
            .where(QueryHistory.user_id == principal_id, QueryHistory.is_saved.is_(False))
            .order_by(QueryHistory.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [HistoryEntry.from_model(r) for r in result.scalars().all()]

    async def save(
        self,
        principal_id: str,
        name: str,
        raw_text: str,
        declared_language: str | None,
    ) -> HistoryEntry:
        row = QueryHistory(
            user_id=principal_id,
            query=raw_text,
            query_type=declared_language,
            is_saved=True,
            saved_name=name,
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
        logger.info(f"Saved query {name!r} ({row.id}) for principal {principal_id}")
        return HistoryEntry.from_model(row)

    async def list_saved(self, principal_id: str) -> list[HistoryEntry]:
        stmt = (
            select(QueryHistory)
            .where(QueryHistory.user_id == principal_id, QueryHistory.is_saved.is_(True))
            .order_by(QueryHistory.created_at.desc())
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [HistoryEntry.from_model(r) for r in result.scalars().all()]

    async def get_saved(self, principal_id: str, saved_id: str) -> HistoryEntry | None:
        stmt = select(QueryHistory).where(
            QueryHistory.id == saved_id,
            QueryHistory.user_id == principal_id,
            QueryHistory.is_saved.is_(True),
        )
        async with self._session_factory() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return HistoryEntry.from_model(row) if row else None

    async def delete(self, principal_id: str, entry_id: str) -> bool:
        stmt = select(QueryHistory).where(
            QueryHistory.id == entry_id,
            QueryHistory.user_id == principal_id,
        )
        async with self._session_factory() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
        logger.info(f"Deleted query history entry {entry_id} for principal {principal_id}")
        return True
