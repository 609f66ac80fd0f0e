"""
SigV4 Request Signer

From-scratch AWS Signature Version 4 for the Bedrock runtime. Pure functions:
given the same inputs and timestamp the output is byte-for-byte identical.
A fresh signing context is computed for every HTTP attempt.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote, unquote, urlsplit

from src.gateway.errors import ConfigError, EncodingError
from src.gateway.logging_utils import should_log_feature
from src.gateway.models import Credentials, RequestSigningContext

logger = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "bedrock"
STREAM_ACTION = "invoke-with-response-stream"

# Headers that take part in the signature when present
SIGNED_HEADER_NAMES = frozenset(
    {
        "host",
        "x-amz-date",
        "x-amz-content-sha256",
        "content-type",
        "accept",
        "x-amzn-bedrock-accept",
    }
)

_WHITESPACE_RE = re.compile(r"\s+")


def serialize_body(body: Any) -> bytes:
    """Turn a request body into the exact bytes that get hashed and sent."""
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    try:
        return json.dumps(body, ensure_ascii=False, separators=(",", ":"), allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Request body could not be serialized: {e}") from e


def canonical_uri(path: str) -> str:
    """
    Canonical form of a URL path.

    Each segment is percent-decoded and re-encoded with `.` and `:` kept
    literal. The streaming action token is passed through untouched, and a
    `/` embedded in a model id (sent as %2F) stays escaped.
    """
    if not path:
        return "/"

    segments: list[str] = []
    for segment in path.split("/"):
        if segment == STREAM_ACTION:
            segments.append(segment)
            continue
        segments.append(quote(unquote(segment), safe=".:"))
    return "/".join(segments)


def canonical_query(query: str) -> str:
    """Sorted, RFC 3986 encoded query string."""
    if not query:
        return ""

    pairs: list[tuple[str, str]] = []
    for part in query.split("&"):
        if not part:
            continue
        key, _, value = part.partition("=")
        pairs.append(
            (quote(unquote(key), safe="-_.~"), quote(unquote(value), safe="-_.~"))
        )
    pairs.sort()
    return "&".join(f"{k}={v}" for k, v in pairs)


def _normalize_header_value(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(value).strip())


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str = SERVICE) -> bytes:
    k_date = _hmac(f"AWS4{secret_key}".encode(), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def build_signing_context(
    method: str,
    url: str,
    headers: dict[str, str],
    body: Any,
    credentials: Credentials,
    now_utc: datetime | None = None,
) -> RequestSigningContext:
    """
    Compute every intermediate SigV4 value for one request attempt.

    Args:
        method: HTTP method
        url: Fully resolved request URL
        headers: Request headers; `host`, `x-amz-date` and
            `x-amz-content-sha256` are derived here and override any given value
        body: Request body (bytes, str or JSON-serializable object)
        credentials: Access key pair and region
        now_utc: Fixed timestamp for deterministic signing

    Raises:
        EncodingError: body could not be serialized
        ConfigError: credentials or URL incomplete
    """
    payload = serialize_body(body)

    if not credentials.access_key or not credentials.secret_key.get_secret_value():
        raise ConfigError("Credentials are missing an access key or secret key")
    if not credentials.region:
        raise ConfigError("Credentials are missing a region")

    parts = urlsplit(url)
    if not parts.netloc:
        raise ConfigError(f"Cannot sign a URL without a host: {url}")

    now = now_utc or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = now.strftime("%Y%m%d")

    payload_hash = hashlib.sha256(payload).hexdigest()

    header_map = {k.lower(): _normalize_header_value(v) for k, v in headers.items()}
    header_map["host"] = parts.netloc
    header_map["x-amz-date"] = amz_date
    header_map["x-amz-content-sha256"] = payload_hash

    signed = sorted(name for name in header_map if name in SIGNED_HEADER_NAMES)
    canonical_headers = "".join(f"{name}:{header_map[name]}\n" for name in signed)
    signed_headers = ";".join(signed)

    canonical_request = "\n".join(
        [
            method.upper(),
            canonical_uri(parts.path),
            canonical_query(parts.query),
            canonical_headers,
            signed_headers,
            payload_hash,
        ]
    )

    scope = f"{date_stamp}/{credentials.region}/{SERVICE}/aws4_request"
    canonical_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    string_to_sign = "\n".join([ALGORITHM, amz_date, scope, canonical_hash])

    signing_key = derive_signing_key(
        credentials.secret_key.get_secret_value(), date_stamp, credentials.region
    )
    signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    if should_log_feature("clients", "signing"):
        logger.debug("Signed request: scope=%s canonical_hash=%s", scope, canonical_hash)

    return RequestSigningContext(
        amz_date=amz_date,
        date_stamp=date_stamp,
        scope=scope,
        payload_hash=payload_hash,
        canonical_request=canonical_request,
        string_to_sign=string_to_sign,
        signed_headers=signed_headers,
        signature=signature,
    )


def sign(
    method: str,
    url: str,
    headers: dict[str, str],
    body: Any,
    credentials: Credentials,
    now_utc: datetime | None = None,
) -> dict[str, str]:
    """Return `headers` plus the SigV4 date, payload hash, host and Authorization."""
    ctx = build_signing_context(method, url, headers, body, credentials, now_utc)

    signed = dict(headers)
    signed["host"] = urlsplit(url).netloc
    signed["x-amz-date"] = ctx.amz_date
    signed["x-amz-content-sha256"] = ctx.payload_hash
    signed["Authorization"] = (
        f"{ALGORITHM} Credential={credentials.access_key}/{ctx.scope},"
        f"SignedHeaders={ctx.signed_headers},Signature={ctx.signature}"
    )
    return signed
