"""Tests for the schema catalog."""

import json

import pytest
from pydantic import ValidationError

from threatquery.services.schema_catalog import SchemaCatalog, load_catalog


def test_builtin_catalog():
    catalog = load_catalog()
    assert catalog.entity_names == ["incidents"]
    assert catalog.default_entity.name == "incidents"
    assert "log_data" in catalog.default_entity.column_names
    assert "owner" not in catalog.default_entity.column_names


def test_lookup_is_case_insensitive(catalog):
    assert catalog.get("Incidents").name == "incidents"
    assert catalog.default_entity.column("SEVERITY").name == "severity"
    assert catalog.default_entity.column("attacker_ip") is None


def test_resolve_falls_back_to_default(catalog):
    assert catalog.resolve("alerts").name == "incidents"
    assert catalog.resolve(None).name == "incidents"


def test_describe(catalog):
    [entity] = catalog.describe()
    assert entity["name"] == "incidents"
    assert entity["columns"][0] == {
        "name": "id", "type": "string", "description": "Incident identifier",
    }


def test_load_from_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps([
        {"name": "incidents", "columns": [{"name": "id", "type": "string"}]},
        {
            "name": "alerts",
            "description": "Detection alerts",
            "columns": [
                {"name": "rule", "type": "string"},
                {"name": "host", "type": "string", "description": "Affected host"},
            ],
        },
    ]))

    catalog = load_catalog(str(path), default_entity="alerts")
    assert catalog.entity_names == ["incidents", "alerts"]
    assert catalog.default_entity.name == "alerts"
    assert catalog.get("alerts").column_names == ["rule", "host"]
    assert catalog.resolve("unknown").name == "alerts"


def test_invalid_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps([{"description": "no name"}]))
    with pytest.raises(ValidationError):
        load_catalog(str(path))


def test_malformed_json_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text('[{"name": "incidents", "columns": [')
    with pytest.raises(ValidationError):
        load_catalog(str(path))


def test_unknown_default_entity(catalog):
    with pytest.raises(ValueError):
        SchemaCatalog([catalog.default_entity], default_entity="alerts")


def test_empty_catalog():
    with pytest.raises(ValueError):
        SchemaCatalog([])
