"""Tests for failure classification and remediation hints."""

import pytest

from threatquery.services.query_diagnostics import ErrorKind, QueryDiagnostics, classify


@pytest.mark.parametrize(
    "message,expected",
    [
        ('near "=": syntax error', ErrorKind.SYNTAX),
        ("no such column: attacker_ip", ErrorKind.MISSING_COLUMN),
        ('column "foo" does not exist', ErrorKind.MISSING_COLUMN),
        ("Unknown field 'Timestamp'", ErrorKind.MISSING_COLUMN),
        ("permission denied for table incidents", ErrorKind.PERMISSION_DENIED),
        ("Access denied", ErrorKind.PERMISSION_DENIED),
        ("Query execution timeout after 30s", ErrorKind.TIMEOUT),
        ("disk I/O error", ErrorKind.UNKNOWN),
        ("", ErrorKind.UNKNOWN),
    ],
)
def test_classify(message, expected):
    assert classify(message) is expected


def test_syntax_wins_over_column():
    assert classify("syntax error at or near column list") is ErrorKind.SYNTAX


def test_classification_is_case_insensitive():
    assert classify("SYNTAX ERROR") is ErrorKind.SYNTAX


class TestHints:
    def test_syntax_hint(self, catalog):
        hint = QueryDiagnostics(catalog).hint('near "WHERE": syntax error')
        assert hint.startswith("Check your query syntax.")

    def test_missing_column_hint_lists_catalog_fields(self, catalog):
        hint = QueryDiagnostics(catalog).hint("no such column: Timestamp")
        assert hint.startswith("Available fields: id, title, severity")
        assert hint.endswith("Use exact field names.")

    def test_permission_hint(self, catalog):
        hint = QueryDiagnostics(catalog).hint("Permission denied: dangerous operation 'DROP'")
        assert "only query your own incidents" in hint

    def test_timeout_hint(self, catalog):
        hint = QueryDiagnostics(catalog).hint("Query execution timeout after 30s")
        assert "too long" in hint

    def test_unknown_hint(self, catalog):
        hint = QueryDiagnostics(catalog).hint("something odd happened")
        assert hint.startswith("Ensure your query syntax is correct.")

    def test_translation_hints(self, catalog):
        diagnostics = QueryDiagnostics(catalog)
        assert "incidents | where" in diagnostics.translation_hint("empty-input")
        assert "JSON" in diagnostics.translation_hint("invalid-structured-query")
        assert diagnostics.translation_hint("other") == diagnostics.hint_for(ErrorKind.UNKNOWN)


def test_column_wins_over_permission():
    assert classify("permission denied for column owner") is ErrorKind.MISSING_COLUMN
