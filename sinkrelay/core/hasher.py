"""Canonical JSON helpers for payload validation and destination keys.

The same canonical serialization is used to check that a payload is
structurally serializable at enqueue time and to derive stable digests
for destination identities.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - NaN / Infinity rejected
    - UTF-8 encoding
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def serialization_problem(obj: Any) -> str | None:
    """Return a description of why *obj* is not JSON-serializable, or None.

    Catches callables and other non-JSON values (``TypeError``), cyclic
    references and non-finite floats (``ValueError``).
    """
    try:
        json.dumps(obj, allow_nan=False, check_circular=True)
    except TypeError as exc:
        return str(exc)
    except ValueError as exc:
        return str(exc)
    except RecursionError:
        return "payload nesting is too deep"
    return None


def identity_digest(destination_type: str, identity: dict[str, Any]) -> str:
    """Digest of a destination identity, prefixed with its type.

    Returns ``"<type>:<first 16 hex chars of sha256>"``.
    """
    payload = {"type": destination_type, "identity": identity}
    return f"{destination_type}:{sha256_hex(canonical_json_bytes(payload))[:16]}"


def json_snapshot(obj: Any) -> Any:
    """Return a detached copy of *obj* as plain JSON types.

    Tuples become lists; later mutation of the caller's object does not
    affect the snapshot.
    """
    return json.loads(json.dumps(obj, allow_nan=False))
