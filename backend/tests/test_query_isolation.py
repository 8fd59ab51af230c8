"""Tests for tenant isolation - ownership predicate injection and IsolatedQuery construction."""

import pytest

from threatquery.services.query_diagnostics import ErrorKind
from threatquery.services.query_isolation import IsolatedQuery, IsolationEnforcer, IsolationError
from threatquery.services.query_translator import QueryLanguage, TranslatedQuery
from threatquery.services.schema_catalog import ColumnSchema, EntitySchema, SchemaCatalog


def translated(sql: str) -> TranslatedQuery:
    return TranslatedQuery(sql, QueryLanguage.SQL, "incidents")


@pytest.fixture
def enforcer():
    return IsolationEnforcer(owner_column="owner")


class TestPredicateInjection:
    def test_existing_filter_gets_predicate_first(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT * FROM incidents WHERE severity = 'critical' LIMIT 10"), "U1"
        )
        assert q.relational_text == (
            "SELECT * FROM incidents WHERE owner = 'U1' AND severity = 'critical' LIMIT 10"
        )
        assert q.principal_id == "U1"
        assert q.isolation_applied is True

    def test_disjunction_is_parenthesised(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT * FROM incidents WHERE severity = 'high' OR 1 = 1"), "U1"
        )
        assert q.relational_text == (
            "SELECT * FROM incidents WHERE owner = 'U1' AND (severity = 'high' OR 1 = 1)"
        )

    def test_already_grouped_disjunction_is_not_double_wrapped(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT * FROM incidents WHERE (a = 1 OR b = 2)"), "U1"
        )
        assert q.relational_text == "SELECT * FROM incidents WHERE owner = 'U1' AND (a = 1 OR b = 2)"

    def test_disjunction_after_owner_conjunct_is_grouped(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT * FROM incidents WHERE owner = 'U1' AND a = 1 OR b = 2"), "U1"
        )
        assert q.relational_text == (
            "SELECT * FROM incidents WHERE owner = 'U1' AND (a = 1 OR b = 2)"
        )

    def test_owner_conjunct_inside_disjunction_is_kept(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT * FROM incidents WHERE a = 1 OR owner = 'U1' AND b = 2"), "U1"
        )
        assert q.relational_text == (
            "SELECT * FROM incidents WHERE owner = 'U1' AND (a = 1 OR owner = 'U1' AND b = 2)"
        )

    def test_no_filter_inserts_where(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents"), "U1")
        assert q.relational_text == "SELECT * FROM incidents WHERE owner = 'U1'"

    def test_no_filter_before_grouping(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT severity, COUNT(*) FROM incidents GROUP BY severity"), "U1"
        )
        assert q.relational_text == (
            "SELECT severity, COUNT(*) FROM incidents WHERE owner = 'U1' GROUP BY severity"
        )

    def test_no_filter_before_ordering_and_limit(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT * FROM incidents ORDER BY created_at DESC LIMIT 5"), "U1"
        )
        assert q.relational_text == (
            "SELECT * FROM incidents WHERE owner = 'U1' ORDER BY created_at DESC LIMIT 5"
        )

    def test_trailing_semicolon_stays_last(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents;"), "U1")
        assert q.relational_text == "SELECT * FROM incidents WHERE owner = 'U1';"

    def test_empty_filter_becomes_predicate(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents WHERE"), "U1")
        assert q.relational_text == "SELECT * FROM incidents WHERE owner = 'U1'"

    def test_principal_is_escaped(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents"), "O'Brien")
        assert q.relational_text == "SELECT * FROM incidents WHERE owner = 'O''Brien'"

    def test_injection_attempt_in_principal_stays_a_literal(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents"), "x' OR '1'='1")
        assert q.relational_text == "SELECT * FROM incidents WHERE owner = 'x'' OR ''1''=''1'"

    def test_foreign_owner_filter_is_conjoined(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents WHERE owner = 'U2'"), "U1")
        assert q.relational_text == "SELECT * FROM incidents WHERE owner = 'U1' AND owner = 'U2'"

    def test_custom_owner_column(self):
        q = IsolationEnforcer(owner_column="tenant_id").enforce(
            translated("SELECT * FROM incidents"), "T9"
        )
        assert q.relational_text == "SELECT * FROM incidents WHERE tenant_id = 'T9'"


class TestSingleSource:
    def test_alias_qualifies_predicate(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT i.title FROM incidents i WHERE severity = 'low'"), "U1"
        )
        assert q.relational_text == (
            "SELECT i.title FROM incidents i WHERE i.owner = 'U1' AND severity = 'low'"
        )

    def test_as_alias_without_filter(self, enforcer):
        q = enforcer.enforce(translated("SELECT x.id FROM incidents AS x LIMIT 5"), "U1")
        assert q.relational_text == "SELECT x.id FROM incidents AS x WHERE x.owner = 'U1' LIMIT 5"

    def test_entity_name_is_case_insensitive(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM Incidents"), "U1")
        assert q.relational_text == "SELECT * FROM Incidents WHERE owner = 'U1'"

    @pytest.mark.parametrize("sql", [
        "SELECT * FROM incidents JOIN query_history ON 1 = 1",
        "SELECT * FROM incidents i LEFT JOIN users u ON u.id = i.owner WHERE severity = 'low'",
        "SELECT * FROM incidents, users",
        "SELECT * FROM incidents CROSS JOIN users",
        "SELECT * FROM (incidents)",
        "SELECT * FROM incidents AS [x'] WHERE 1 = 1 --']",
        "SELECT * FROM incidents `x` WHERE 1 = 1",
        "SELECT * FROM incidents join",
        "SELECT * FROM",
    ])
    def test_other_sources_are_refused(self, enforcer, sql):
        with pytest.raises(IsolationError) as exc:
            enforcer.enforce(translated(sql), "U1")
        assert exc.value.kind is ErrorKind.PERMISSION_DENIED
        assert exc.value.message == "Permission denied: queries must read from a single catalog entity"

    @pytest.mark.parametrize("table", ["query_history", "users", "main.incidents", "[incidents]"])
    def test_unknown_source_is_refused(self, enforcer, table):
        with pytest.raises(IsolationError) as exc:
            enforcer.enforce(translated(f"SELECT * FROM {table}"), "U1")
        assert exc.value.message == f"Permission denied: unknown source '{table}'"

    def test_catalog_entities_are_accepted(self, catalog):
        alerts = EntitySchema(name="alerts", columns=(ColumnSchema(name="rule", type="string"),))
        enforcer = IsolationEnforcer(SchemaCatalog([catalog.default_entity, alerts]))
        q = enforcer.enforce(translated("SELECT rule FROM alerts"), "U1")
        assert q.relational_text == "SELECT rule FROM alerts WHERE owner = 'U1'"
        with pytest.raises(IsolationError):
            IsolationEnforcer(catalog).enforce(translated("SELECT rule FROM alerts"), "U1")


class TestIdempotence:
    def test_same_principal_returns_same_query(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents"), "U1")
        assert enforcer.enforce(q, "U1") is q

    def test_predicate_is_not_duplicated(self, enforcer):
        first = enforcer.enforce(
            translated("SELECT * FROM incidents WHERE severity = 'low'"), "U1"
        )
        again = enforcer.enforce(translated(first.relational_text), "U1")
        assert again.relational_text == first.relational_text
        assert again.relational_text.count("owner = 'U1'") == 1

    def test_parenthesised_predicate_is_not_duplicated(self, enforcer):
        q = enforcer.enforce(
            translated("SELECT * FROM incidents WHERE (owner = 'U1') AND severity = 'low'"), "U1"
        )
        assert q.relational_text == (
            "SELECT * FROM incidents WHERE owner = 'U1' AND severity = 'low'"
        )
        assert q.relational_text.count("owner = 'U1'") == 1

    def test_aliased_predicate_is_not_duplicated(self, enforcer):
        first = enforcer.enforce(translated("SELECT i.title FROM incidents i WHERE a = 1"), "U1")
        again = enforcer.enforce(translated(first.relational_text), "U1")
        assert again.relational_text == first.relational_text
        assert again.relational_text.count("owner = 'U1'") == 1

    def test_other_principal_rederives_from_source(self, enforcer):
        q = enforcer.enforce(translated("SELECT * FROM incidents WHERE severity = 'low'"), "U1")
        other = enforcer.enforce(q, "U2")
        assert other.relational_text == (
            "SELECT * FROM incidents WHERE owner = 'U2' AND severity = 'low'"
        )
        assert "U1" not in other.relational_text


class TestConstruction:
    def test_direct_construction_is_refused(self):
        with pytest.raises(TypeError):
            IsolatedQuery("SELECT * FROM incidents", "U1", translated("SELECT * FROM incidents"))

    @pytest.mark.parametrize("principal", ["", "   ", None])
    def test_blank_principal_is_rejected(self, enforcer, principal):
        with pytest.raises(ValueError):
            enforcer.enforce(translated("SELECT * FROM incidents"), principal)

    def test_translated_query_reports_no_isolation(self):
        assert translated("SELECT 1").isolation_applied is False
