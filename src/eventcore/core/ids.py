"""Canonical ID and timestamp factories for the engine.

All modules import from here instead of defining local _uuid()/_now() copies.

ID Categories
-------------
1. Entity IDs: UUID v4 strings (event id, command id, snapshot id, ...)
2. Derived IDs: ``<prefix>:<source id>`` strings that make re-delivery
   idempotent (e.g. saga ids started from trigger events)
3. Content hashes: SHA256[:N] of a JSON payload (query cache keys)

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any


def new_id() -> str:
    """Generate a new UUID v4 string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def derived_id(prefix: str, source_id: str) -> str:
    """Build a deterministic id from a *prefix* and a source id."""
    return f"{prefix}:{source_id}"


def payload_hash(payload: Any, *, length: int = 16) -> str:
    """Generate a deterministic hash from a JSON-serializable value.

    Parameters
    ----------
    payload:
        Value to hash.  Serialized with sorted keys and ``default=str``.
    length:
        Number of hex characters to return (default 16).
    """
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()[:length]
