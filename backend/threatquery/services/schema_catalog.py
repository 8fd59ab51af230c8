"""Schema catalog - static description of the entities analysts can query.

The catalog is documentation: it feeds the schema endpoint and the
diagnostics hints, and lets the translator recognise entity names.  It is
never used to type-check a query.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from threatquery.config import settings

logger = logging.getLogger(__name__)


class ColumnSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    description: str = ""


class EntitySchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    columns: tuple[ColumnSchema, ...] = Field(default_factory=tuple)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> ColumnSchema | None:
        lowered = name.lower()
        for col in self.columns:
            if col.name.lower() == lowered:
                return col
        return None


class SchemaCatalog:
    """Read-only lookup over entity schemas, keyed case-insensitively."""

    def __init__(self, entities: list[EntitySchema], default_entity: str | None = None):
        if not entities:
            raise ValueError("Schema catalog needs at least one entity")
        self._entities = {e.name.lower(): e for e in entities}
        self._order = [e.name for e in entities]
        default = (default_entity or entities[0].name).lower()
        if default not in self._entities:
            raise ValueError(f"Default entity {default_entity!r} is not in the catalog")
        self._default = self._entities[default]

    @property
    def default_entity(self) -> EntitySchema:
        return self._default

    @property
    def entity_names(self) -> list[str]:
        return list(self._order)

    def get(self, name: str) -> EntitySchema | None:
        return self._entities.get(name.lower())

    def resolve(self, name: str | None) -> EntitySchema:
        """Entity for *name*, falling back to the default entity."""
        if name:
            found = self.get(name)
            if found is not None:
                return found
        return self._default

    def describe(self) -> list[dict]:
        return [self._entities[n.lower()].model_dump() for n in self._order]


# ── Built-in catalog ──────────────────────────────────────────────────

INCIDENTS = EntitySchema(
    name="incidents",
    description="Security incidents submitted for AI classification",
    columns=(
        ColumnSchema(name="id", type="string", description="Incident identifier"),
        ColumnSchema(name="title", type="string", description="Short incident title"),
        ColumnSchema(
            name="severity", type="string",
            description="critical, high, medium, low or informational",
        ),
        ColumnSchema(name="status", type="string", description="open, in-progress or closed"),
        ColumnSchema(
            name="classification", type="string",
            description="AI verdict: true-positive or false-positive",
        ),
        ColumnSchema(name="confidence", type="integer", description="Classifier confidence, 0-100"),
        ColumnSchema(name="system_context", type="text", description="Analyst-supplied environment notes"),
        ColumnSchema(name="log_data", type="text", description="Submitted raw log data"),
        ColumnSchema(name="mitre_attack", type="string[]", description="Mapped MITRE ATT&CK technique IDs"),
        ColumnSchema(name="iocs", type="ioc[]", description="Extracted indicators of compromise"),
        ColumnSchema(name="ai_analysis", type="text", description="Full AI analysis narrative"),
        ColumnSchema(name="created_at", type="timestamp", description="Submission time"),
        ColumnSchema(name="updated_at", type="timestamp", description="Last modification time"),
    ),
)

DEFAULT_ENTITIES = [INCIDENTS]


def load_catalog(path: str | None = None, default_entity: str | None = None) -> SchemaCatalog:
    """Build a catalog from a JSON file, or the built-in one when *path* is empty.

    The file holds a list of ``{"name", "description", "columns": [...]}`` objects.
    """
    if not path:
        return SchemaCatalog(DEFAULT_ENTITIES, default_entity)

    entities = TypeAdapter(list[EntitySchema]).validate_json(Path(path).read_bytes())
    logger.info(f"Loaded schema catalog from {path}: {len(entities)} entities")
    return SchemaCatalog(entities, default_entity)


@lru_cache(maxsize=1)
def get_catalog() -> SchemaCatalog:
    """Process-wide catalog, loaded once from settings."""
    return load_catalog(settings.SCHEMA_CATALOG_PATH, settings.QUERY_DEFAULT_ENTITY)
