"""Diagnostics advisor - turns backend failure messages into remediation hints."""

from __future__ import annotations

from enum import Enum

from threatquery.services.schema_catalog import SchemaCatalog


class ErrorKind(str, Enum):
    SYNTAX = "syntax"
    MISSING_COLUMN = "missing_column"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Checked in order, first match wins.  Syntax leads because it is the most
# actionable category when a message matches several.
CATEGORY_KEYWORDS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.SYNTAX, ("syntax",)),
    (ErrorKind.MISSING_COLUMN, ("column", "field")),
    (ErrorKind.PERMISSION_DENIED, ("permission", "denied")),
    (ErrorKind.TIMEOUT, ("timeout",)),
)

TRANSLATION_HINTS = {
    "empty-input": "Enter a query to run, for example: incidents | where severity == \"critical\" | take 10",
    "invalid-structured-query": (
        "Custom queries are JSON objects, for example: "
        "{\"severity\": [\"critical\", \"high\"], \"orderBy\": \"createdAt\", \"limit\": 50}"
    ),
}


def classify(error_message: str) -> ErrorKind:
    lowered = (error_message or "").lower()
    for kind, words in CATEGORY_KEYWORDS:
        if any(w in lowered for w in words):
            return kind
    return ErrorKind.UNKNOWN


class QueryDiagnostics:
    def __init__(self, catalog: SchemaCatalog):
        self.catalog = catalog

    def hint(self, error_message: str) -> str:
        return self.hint_for(classify(error_message))

    def hint_for(self, kind: ErrorKind) -> str:
        if kind is ErrorKind.SYNTAX:
            return (
                "Check your query syntax. For KQL, use operators like: where, project, "
                "take, sort by. For SQL, ensure proper SELECT, FROM, WHERE structure."
            )
        if kind is ErrorKind.MISSING_COLUMN:
            fields = ", ".join(self.catalog.default_entity.column_names)
            return f"Available fields: {fields}. Use exact field names."
        if kind is ErrorKind.PERMISSION_DENIED:
            return (
                "You can only query your own incidents. Results are filtered by your "
                "user ID automatically, and only read-only single SELECT statements are allowed."
            )
        if kind is ErrorKind.TIMEOUT:
            return "Query took too long to execute. Try simplifying your query or adding limits."
        return "Ensure your query syntax is correct. For help, check the query examples in the interface."

    def translation_hint(self, reason: str) -> str:
        return TRANSLATION_HINTS.get(reason) or self.hint_for(ErrorKind.UNKNOWN)
