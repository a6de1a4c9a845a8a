"""
Idempotency Keys
================
Deterministic identities for records and batches.
"""

import hashlib
from typing import Iterable, Optional


def record_key(date: str, app_id: str, provider: str, model: str) -> str:
    """Per-record key: {date}_{app_id}_{provider}_{model}."""
    return f"{date}_{app_id}_{provider}_{model}"


def batch_key(record_keys: Iterable[str]) -> str:
    """
    SHA-256 over the sorted, comma-joined record keys.

    Sorting makes the key independent of record order. An empty batch has
    an empty key.
    """
    keys = sorted(record_keys)
    if not keys:
        return ""
    return hashlib.sha256(",".join(keys).encode("utf-8")).hexdigest()


def source_event_id(
    usage_date: str,
    provider: str,
    model: str,
    app_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    """
    Partner-side dedup key: dify-{usage_date}-{provider}-{model}-{hash12}.

    hash12 is the first 12 hex characters of SHA-256 over
    usage_date|provider|model|app_id|user_id.
    """
    payload = "|".join([usage_date, provider, model, app_id or "", user_id or ""])
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:12]
    return f"dify-{usage_date}-{provider}-{model}-{digest}"
