"""Bedrock runtime endpoint resolution. No network access."""

from __future__ import annotations

from urllib.parse import quote

from src.clients.signer import STREAM_ACTION
from src.gateway.errors import ConfigError

INVOKE_ACTION = "invoke"


def resolve(
    model_id: str,
    streaming: bool,
    region: str = "us-west-2",
    endpoint_url: str | None = None,
) -> str:
    """
    Build the invoke URL for a model.

    The model id is encoded as a single path segment, so `:` becomes `%3A`
    and any `/` in an ARN-style id becomes `%2F`. `endpoint_url` replaces the
    regional host (VPC endpoints, local fakes).
    """
    if not model_id or not model_id.strip():
        raise ConfigError("Model id is required")
    if not endpoint_url and not region:
        raise ConfigError("Region is required to resolve the Bedrock endpoint")

    base = (endpoint_url or f"https://bedrock-runtime.{region}.amazonaws.com").rstrip("/")
    action = STREAM_ACTION if streaming else INVOKE_ACTION
    return f"{base}/model/{quote(model_id.strip(), safe='')}/{action}"


class EndpointResolver:
    """Region-bound resolver shared by one gateway instance."""

    def __init__(self, region: str, endpoint_url: str | None = None) -> None:
        if not region:
            raise ConfigError("Region is required to resolve the Bedrock endpoint")
        self.region = region
        self.endpoint_url = endpoint_url

    def resolve(self, model_id: str, streaming: bool) -> str:
        return resolve(model_id, streaming, self.region, self.endpoint_url)
