#!/usr/bin/env python3
"""Tests for Bedrock endpoint resolution."""

from urllib.parse import urlsplit

import pytest

from src.clients.endpoints import EndpointResolver, resolve
from src.clients.signer import canonical_uri
from src.gateway.errors import ConfigError

CLAUDE_HAIKU = "anthropic.claude-3-haiku-20240307-v1:0"


def test_invoke_url_encodes_model_segment():
    assert resolve(CLAUDE_HAIKU, False) == (
        "https://bedrock-runtime.us-west-2.amazonaws.com/model/anthropic.claude-3-haiku-20240307-v1%3A0/invoke"
    )


def test_streaming_url_uses_stream_action():
    url = resolve(CLAUDE_HAIKU, True, region="eu-west-1")
    assert url == (
        "https://bedrock-runtime.eu-west-1.amazonaws.com"
        "/model/anthropic.claude-3-haiku-20240307-v1%3A0/invoke-with-response-stream"
    )


def test_slash_inside_model_id_is_escaped():
    url = resolve("arn:aws:bedrock:us-west-2:123456789012:inference-profile/us.meta.llama3", False)
    path = urlsplit(url).path
    assert path.count("/") == 3
    assert "inference-profile%2Fus.meta.llama3" in path


def test_canonical_form_of_resolved_path_keeps_colon():
    path = urlsplit(resolve(CLAUDE_HAIKU, True)).path
    assert canonical_uri(path) == "/model/anthropic.claude-3-haiku-20240307-v1:0/invoke-with-response-stream"


def test_endpoint_override_replaces_host():
    url = resolve("amazon.nova-lite-v1:0", False, endpoint_url="http://localhost:4566/")
    assert url == "http://localhost:4566/model/amazon.nova-lite-v1%3A0/invoke"


def test_empty_model_or_region_is_config_error():
    with pytest.raises(ConfigError):
        resolve("", False)
    with pytest.raises(ConfigError):
        resolve("   ", True)
    with pytest.raises(ConfigError):
        resolve(CLAUDE_HAIKU, False, region="")
    with pytest.raises(ConfigError):
        EndpointResolver("")


def test_resolver_binds_region():
    resolver = EndpointResolver("ap-northeast-1")
    assert resolver.resolve("mistral.mistral-large-2402-v1:0", False).startswith(
        "https://bedrock-runtime.ap-northeast-1.amazonaws.com/model/mistral.mistral-large-2402-v1%3A0/"
    )
