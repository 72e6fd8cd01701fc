# coordination_gateway/context/checksum.py
"""Canonical serialization and hashing of context values."""

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    # Key order and whitespace must not influence the digest
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_checksum(value: Any) -> str:
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
