"""
Content fingerprints for change detection.

MD5 over canonical JSON. Not a security boundary: the digest only
answers "did this module's data change?".

Files written by the browser app carry MD5 over ``JSON.stringify(data,
null, 2)``, which keeps insertion order instead of sorting keys.
``matches`` accepts either form so those files verify cleanly.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Serialize ``value`` with sorted keys and a fixed layout.

    Args:
        value: Any JSON-serializable value.

    Returns:
        Deterministic JSON text for structurally equal values.
    """
    return json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False)


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def fingerprint(value: Any) -> str:
    """Return the 128-bit hex fingerprint of a JSON value."""
    return _md5(canonical_json(value))


def browser_fingerprint(value: Any) -> str:
    """Fingerprint as the browser app computes it (key insertion order)."""
    return _md5(json.dumps(value, indent=2, ensure_ascii=False))


def matches(value: Any, digest: str) -> bool:
    """Does ``digest`` fingerprint ``value`` in either accepted form?"""
    return digest in (fingerprint(value), browser_fingerprint(value))
