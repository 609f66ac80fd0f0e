"""
Image Request Shaping

Builds request bodies for the image-generation models the gateway can sign
and send. Only the request shape is handled here; the images come back as
base64 strings in the response's `images` list.
"""

from __future__ import annotations

import logging
import random
from typing import Any

from src.gateway.errors import UnsupportedModelError

logger = logging.getLogger(__name__)

DEFAULT_NEGATIVE_PROMPT = (
    "blurry, distorted, low resolution, pixelated, overexposed, underexposed, dark, grainy, noisy, watermark"
)

MAX_SEED = 2147483646


def _seed(settings: dict[str, Any]) -> int:
    seed = settings.get("seed")
    if isinstance(seed, int) and seed >= 0:
        return seed
    return random.randint(0, MAX_SEED)


def _cfg_scale(settings: dict[str, Any]) -> float:
    """Titan/Nova only accept cfgScale in [1.1, 10]."""
    value = float(settings.get("cfg_scale", 7.5))
    return min(max(value, 1.1), 10.0)


def _stability_body(prompt: str, settings: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {
        "prompt": prompt,
        "negative_prompt": settings.get("negative_prompt", DEFAULT_NEGATIVE_PROMPT),
        "mode": "text-to-image",
        "seed": _seed(settings),
        "aspect_ratio": settings.get("aspect_ratio", "1:1"),
        "output_format": "png",
    }
    if settings.get("style_preset"):
        body["style_preset"] = settings["style_preset"]
    for key in ("cfg_scale", "steps", "width", "height"):
        if key in settings:
            body[key] = settings[key]
    return body


def _amazon_body(prompt: str, settings: dict[str, Any], width: int, height: int) -> dict[str, Any]:
    return {
        "taskType": "TEXT_IMAGE",
        "textToImageParams": {
            "text": prompt,
            "negativeText": settings.get("negative_prompt", DEFAULT_NEGATIVE_PROMPT),
        },
        "imageGenerationConfig": {
            "numberOfImages": int(settings.get("number_of_images", 1)),
            "quality": settings.get("quality", "standard"),
            "height": int(settings.get("height", height)),
            "width": int(settings.get("width", width)),
            "cfgScale": _cfg_scale(settings),
            "seed": _seed(settings),
        },
    }


def shape_image_request(model_id: str, prompt: str, settings: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Build the request body for an image model.

    Args:
        model_id: Bedrock image model id
        prompt: Text prompt
        settings: Optional overrides (negative_prompt, seed, cfg_scale, steps,
            width, height, aspect_ratio, style_preset, quality, number_of_images)

    Raises:
        UnsupportedModelError: model is not a known image family
    """
    settings = settings or {}
    if not prompt or not prompt.strip():
        raise ValueError("Image prompt must not be empty")

    if "stability." in model_id:
        return _stability_body(prompt, settings)
    if "amazon.titan-image" in model_id:
        return _amazon_body(prompt, settings, width=1280, height=768)
    if "amazon.nova-canvas" in model_id:
        return _amazon_body(prompt, settings, width=1024, height=1024)

    raise UnsupportedModelError(model_id, f"Unsupported image model: {model_id}")


def extract_images(body: dict[str, Any]) -> list[str]:
    """Base64 images from an image model response."""
    images = body.get("images")
    if isinstance(images, list):
        return [img for img in images if isinstance(img, str)]
    artifacts = body.get("artifacts")
    if isinstance(artifacts, list):
        return [a["base64"] for a in artifacts if isinstance(a, dict) and a.get("base64")]
    logger.warning("Image response carried no images; keys: %s", list(body))
    return []
