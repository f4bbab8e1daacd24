from __future__ import annotations

import json
import logging
import sys
from typing import Any
from urllib.parse import parse_qsl, urlencode

SECRET_KEYS = {"password", "secret", "authorization"}
SECRET_QUERY_KEYS = {"secret", "password", "token"}
REDACTED = "***"
BODY_LOG_LIMIT = 4096


def setup_logging(level: str = "info") -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )


def mask_url_secrets(url: str) -> str:
    if "?" not in url:
        return url
    base, query = url.split("?", 1)
    pairs = [
        (k, REDACTED if k.lower() in SECRET_QUERY_KEYS else v)
        for k, v in parse_qsl(query, keep_blank_values=True)
    ]
    return base + "?" + urlencode(pairs, safe="*")


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: (REDACTED if str(k).lower() in SECRET_KEYS else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def redact_body(body: bytes | None, limit: int = BODY_LOG_LIMIT) -> str:
    """Render a request/response body for logs: secrets blanked, size capped."""
    if not body:
        return ""
    try:
        text = json.dumps(redact(json.loads(body)), ensure_ascii=False, separators=(",", ":"))
    except ValueError:
        text = body.decode("utf-8", errors="replace")
    if len(text) > limit:
        text = text[:limit] + "...(truncated)"
    return text
