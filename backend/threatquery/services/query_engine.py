"""Advanced query engine - translate, isolate, execute, record.

    raw text ─► QueryTranslator ─► IsolationEnforcer ─► QueryExecutor
                     │                                     │
                     └──── failure ──► QueryDiagnostics ◄──┘
                                  every attempt ─► QueryHistoryStore

Each request is independent; nothing is cached between runs, so a saved
query is re-translated and re-isolated for whoever runs it now.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache

from threatquery.db.engine import reader_engine
from threatquery.services.query_diagnostics import QueryDiagnostics
from threatquery.services.query_executor import (
    ExecutionError,
    QueryExecutor,
    QueryLimits,
    SqlAlchemyBackend,
)
from threatquery.services.query_history import HistoryEntry, QueryHistoryStore
from threatquery.services.query_isolation import IsolationEnforcer, IsolationError
from threatquery.services.query_translator import (
    QueryLanguage,
    QueryTranslator,
    TranslatedQuery,
    TranslationError,
)
from threatquery.services.schema_catalog import SchemaCatalog, get_catalog

logger = logging.getLogger(__name__)


class SavedQueryNotFound(ValueError):
    pass


@dataclass
class QueryOutcome:
    rows: list[dict] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    row_count: int | None = None
    elapsed_ms: int | None = None
    translated_query: str | None = None
    error: str | None = None
    kind: str | None = None
    hint: str | None = None
    history_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        if not self.ok:
            return {"error": self.error, "kind": self.kind, "hint": self.hint}
        return {
            "results": self.rows,
            "columns": self.columns,
            "result_count": self.row_count,
            "execution_time": self.elapsed_ms,
            "translated_query": self.translated_query,
            "history_id": self.history_id,
        }


class QueryEngine:
    def __init__(
        self,
        catalog: SchemaCatalog,
        executor: QueryExecutor,
        history: QueryHistoryStore,
        enforcer: IsolationEnforcer | None = None,
    ):
        self.catalog = catalog
        self.translator = QueryTranslator(catalog, executor.limits.max_rows)
        self.enforcer = enforcer or IsolationEnforcer(catalog)
        self.executor = executor
        self.diagnostics = QueryDiagnostics(catalog)
        self.history = history

    async def run_query(
        self,
        principal_id: str,
        raw_text: str,
        declared_language: str | None = None,
    ) -> QueryOutcome:
        if not principal_id:
            raise ValueError("A principal id is required to run a query")

        outcome = QueryOutcome()
        translated: TranslatedQuery | None = None
        start = time.monotonic()
        try:
            translated = self.translator.translate(raw_text, QueryLanguage.coerce(declared_language))
            isolated = self.enforcer.enforce(translated, principal_id)
            outcome.translated_query = isolated.relational_text

            result = await self.executor.execute(isolated)
            outcome.rows = result.rows
            outcome.columns = result.columns
            outcome.row_count = result.row_count
            outcome.elapsed_ms = result.elapsed_ms
        except TranslationError as e:
            logger.info(f"Query translation failed for principal {principal_id}: {e.reason}")
            outcome.error = str(e)
            outcome.kind = e.reason
            outcome.hint = self.diagnostics.translation_hint(e.reason)
        except IsolationError as e:
            outcome.error = e.message
            outcome.kind = e.kind.value
            outcome.hint = self.diagnostics.hint(e.message)
        except ExecutionError as e:
            outcome.error = e.message
            outcome.kind = e.kind.value
            outcome.hint = self.diagnostics.hint(e.message)
            outcome.elapsed_ms = int((time.monotonic() - start) * 1000)
        finally:
            # every attempt is recorded before the request completes
            entry = await self.history.record(
                principal_id=principal_id,
                raw_text=raw_text,
                declared_language=declared_language,
                row_count=outcome.row_count,
                elapsed_ms=outcome.elapsed_ms if translated is not None else None,
                error=outcome.error,
                translated_query=outcome.translated_query,
            )
            outcome.history_id = entry.id
        return outcome

    async def save_query(
        self,
        principal_id: str,
        name: str,
        raw_text: str,
        declared_language: str | None = None,
    ) -> str:
        """Persist query text verbatim; nothing is translated or run."""
        if not principal_id:
            raise ValueError("A principal id is required to save a query")
        if not name or not name.strip():
            raise ValueError("A saved query needs a name")
        if not raw_text or not raw_text.strip():
            raise ValueError("Cannot save an empty query")
        entry = await self.history.save(principal_id, name.strip(), raw_text, declared_language)
        return entry.id

    async def rerun_saved(self, principal_id: str, saved_id: str) -> QueryOutcome:
        saved = await self.history.get_saved(principal_id, saved_id)
        if saved is None:
            raise SavedQueryNotFound(f"Saved query {saved_id} not found")
        return await self.run_query(principal_id, saved.raw_text, saved.declared_language)

    async def list_history(self, principal_id: str, limit: int | None = None) -> list[HistoryEntry]:
        return await self.history.list_history(principal_id, limit)

    async def list_saved(self, principal_id: str) -> list[HistoryEntry]:
        return await self.history.list_saved(principal_id)

    async def delete_entry(self, principal_id: str, entry_id: str) -> bool:
        return await self.history.delete(principal_id, entry_id)


@lru_cache(maxsize=1)
def get_query_engine() -> QueryEngine:
    """FastAPI dependency - process-wide engine wired to the app database."""
    return QueryEngine(
        catalog=get_catalog(),
        executor=QueryExecutor(SqlAlchemyBackend(reader_engine), QueryLimits.from_settings()),
        history=QueryHistoryStore(),
    )
