#!/usr/bin/env python3
"""Tests for tool catalog loading and OpenAPI-subset parsing."""

import json
import logging

import pytest
import yaml

from src.gateway.errors import ConfigError
from src.tool_catalog import ToolCatalog, parse_tool_entry


def test_default_catalog_loads_bundled_tools():
    catalog = ToolCatalog.load()

    assert sorted(catalog) == ["arxiv_search", "duckduckgo_search"]

    arxiv = catalog["arxiv_search"]
    assert arxiv.invocation.http_method == "GET"
    assert arxiv.invocation.base_url == "https://export.arxiv.org"
    assert arxiv.invocation.path == "/api/query"
    assert arxiv.required == ["search_query"]
    assert arxiv.invocation.defaults["max_results"] == 5
    assert arxiv.properties["search_query"]["description"].startswith("arXiv query")

    ddg = catalog["duckduckgo_search"]
    assert ddg.invocation.http_method == "POST"
    assert ddg.invocation.parameter_locations["q"] == "query"
    assert ddg.invocation.body_encoding == "none"


def test_openapi_prefers_get_and_reads_request_body():
    doc = {
        "info": {"title": "notes"},
        "servers": [{"url": "https://notes.example.com"}],
        "paths": {
            "/notes": {
                "post": {
                    "operationId": "create_note",
                    "requestBody": {
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {"title": {"type": "string"}, "pinned": {"type": "boolean", "default": False}},
                                    "required": ["title"],
                                }
                            }
                        }
                    },
                },
                "get": {"operationId": "list_notes", "parameters": [{"name": "limit", "in": "query"}]},
            }
        },
    }
    tool = parse_tool_entry(doc)
    assert tool.name == "list_notes"
    assert tool.invocation.http_method == "GET"

    del doc["paths"]["/notes"]["get"]
    tool = parse_tool_entry(doc)
    assert tool.name == "create_note"
    assert tool.invocation.body_encoding == "json"
    assert tool.invocation.parameter_locations == {"title": "json", "pinned": "json"}
    assert tool.invocation.required == ("title",)
    assert tool.invocation.defaults == {"pinned": False}


def test_openapi_form_parameters():
    doc = {
        "info": {"title": "contact_form"},
        "servers": [{"url": "https://forms.example.com"}],
        "paths": {"/send": {"post": {"parameters": [{"name": "message", "in": "body", "required": True}]}}},
    }
    tool = parse_tool_entry(doc)

    assert tool.name == "contact_form"
    assert tool.invocation.body_encoding == "form"
    assert tool.invocation.parameter_locations == {"message": "body"}


def test_openapi_without_server_is_config_error():
    with pytest.raises(ConfigError):
        parse_tool_entry({"info": {"title": "x"}, "paths": {"/x": {"get": {}}}})


def test_compact_yaml_catalog(tmp_path):
    path = tmp_path / "tools.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "tools": [
                    {
                        "name": "echo",
                        "description": "Echo input",
                        "parameters": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
                        "invocation": {"base_url": "https://echo.example.com", "http_method": "post", "body_encoding": "json"},
                    }
                ]
            }
        )
    )
    catalog = ToolCatalog.load(str(path))

    echo = catalog["echo"]
    assert echo.invocation.http_method == "POST"
    assert echo.invocation.required == ("text",)
    assert catalog.describe() == [
        {
            "name": "echo",
            "description": "Echo input",
            "parameters": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        }
    ]


def test_duplicate_names_keep_first(caplog):
    entry = {"name": "dup", "invocation": {"base_url": "https://one.example.com"}}
    second = {"name": "dup", "invocation": {"base_url": "https://two.example.com"}}

    with caplog.at_level(logging.WARNING):
        catalog = ToolCatalog([parse_tool_entry(entry), parse_tool_entry(second)])

    assert len(catalog) == 1
    assert catalog["dup"].invocation.base_url == "https://one.example.com"
    assert "Tool name conflict" in caplog.text


def test_catalog_is_read_only():
    catalog = ToolCatalog.load()
    with pytest.raises(TypeError):
        catalog["new"] = catalog["arxiv_search"]  # type: ignore[index]


def test_select_skips_unknown_names():
    catalog = ToolCatalog.load()
    assert [t.name for t in catalog.select(["arxiv_search", "weather"])] == ["arxiv_search"]
    assert catalog.select(None) == []


def test_unreadable_catalogs_are_config_errors(tmp_path):
    with pytest.raises(ConfigError):
        ToolCatalog.load(str(tmp_path / "missing.json"))

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError):
        ToolCatalog.load(str(bad))

    wrong_shape = tmp_path / "shape.json"
    wrong_shape.write_text(json.dumps({"tools": {"name": "x"}}))
    with pytest.raises(ConfigError):
        ToolCatalog.load(str(wrong_shape))
