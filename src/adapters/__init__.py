"""
Schema Adapters

One adapter per model family. The family is detected once per request from
the model id by ordered pattern rules; the first matching rule wins.
"""

from __future__ import annotations

import re
from typing import Any

from src.adapters.base import ChunkState, SchemaAdapter
from src.adapters.claude import ClaudeAdapter
from src.adapters.image import extract_images, shape_image_request
from src.adapters.llama import LlamaAdapter
from src.adapters.mistral import MistralAdapter
from src.adapters.nova import NovaAdapter
from src.adapters.titan import TitanAdapter
from src.gateway.errors import UnsupportedModelError
from src.gateway.models import Conversation, InvokeOptions, ModelFamily

# Optional cross-region inference prefix such as "us." or "eu."
_REGION_PREFIX = r"^(?:[a-z]{2,4}\.)?"

FAMILY_RULES: tuple[tuple[re.Pattern[str], ModelFamily], ...] = (
    (re.compile(r"anthropic\.claude"), ModelFamily.CLAUDE),
    (re.compile(r"amazon\.nova"), ModelFamily.NOVA),
    (re.compile(_REGION_PREFIX + r"amazon\.titan"), ModelFamily.TITAN),
    (re.compile(r"meta\.llama"), ModelFamily.LLAMA),
    (re.compile(r"mistral\."), ModelFamily.MISTRAL),
)

_ADAPTERS: dict[ModelFamily, SchemaAdapter] = {
    ModelFamily.CLAUDE: ClaudeAdapter(),
    ModelFamily.NOVA: NovaAdapter(),
    ModelFamily.TITAN: TitanAdapter(),
    ModelFamily.LLAMA: LlamaAdapter(),
    ModelFamily.MISTRAL: MistralAdapter(),
}


def detect_family(model_id: str) -> ModelFamily:
    """Map a model id to its schema family."""
    for pattern, family in FAMILY_RULES:
        if pattern.search(model_id or ""):
            return family
    raise UnsupportedModelError(model_id)


def get_adapter(family: ModelFamily) -> SchemaAdapter:
    return _ADAPTERS[family]


def encode(conversation: Conversation, family: ModelFamily, options: InvokeOptions) -> dict[str, Any]:
    return get_adapter(family).encode(conversation, options)


def decode(family: ModelFamily, raw: Any, state: ChunkState | None = None) -> list[Any]:
    """Decode a full response (no state) or one streaming chunk (with state)."""
    adapter = get_adapter(family)
    if state is None:
        return adapter.decode_response(raw)
    return adapter.decode_chunk(raw, state)


__all__ = [
    "FAMILY_RULES",
    "ChunkState",
    "SchemaAdapter",
    "decode",
    "detect_family",
    "encode",
    "extract_images",
    "get_adapter",
    "shape_image_request",
]
