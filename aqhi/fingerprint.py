"""
Output fingerprint.

SHA-256 over the canonical JSON of a batch's outputs, so a reprocessing run
over the same input can be checked for bit-identical results.
"""

import dataclasses
import hashlib
import json
from typing import Any, Dict, Iterable


def _serialize(data: Any) -> str:
    """Canonical JSON serialization (sorted keys, no extra spaces)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def to_plain(record: Any) -> Any:
    """Dataclass (possibly nested) → plain dict/list structure for serialization."""
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return dataclasses.asdict(record)
    return record


def compute_digest(sections: Dict[str, Iterable[Any]]) -> str:
    """
    Compute SHA256(canonical_JSON(sections)).

    Args:
        sections: name → records (dataclasses or plain values). Each
            section is expected to be in a deterministic order already.
    """
    payload = {name: [to_plain(r) for r in records] for name, records in sections.items()}
    return hashlib.sha256(_serialize(payload).encode("utf-8")).hexdigest()
