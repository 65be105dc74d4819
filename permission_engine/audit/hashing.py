"""
Hash chain primitives.

`hash = H(canonical_json(entry fields) + previous_hash)`; the first entry of a
user's chain links to `GENESIS_HASH`. The hash function is injectable so
deployments can swap the digest without touching the recorder.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable, Mapping

from permission_engine.types import AuditEntry

GENESIS_HASH = "GENESIS"

HashFunction = Callable[[bytes], str]


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_serialize(payload: Mapping[str, Any]) -> str:
    """Stable JSON: sorted keys, no insignificant whitespace."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def json_safe(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Round-trip through canonical JSON so what we hash is exactly what the JSON column stores."""

    return json.loads(canonical_serialize(payload))


def compute_entry_hash(entry: AuditEntry, previous_hash: str, hash_fn: HashFunction = sha256_hex) -> str:
    material = canonical_serialize(entry.hash_payload()) + previous_hash
    return hash_fn(material.encode("utf-8"))
