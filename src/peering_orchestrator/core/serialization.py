from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, is_dataclass
from typing import Any

from peering_orchestrator.core.types import Ref


def _normalize(obj: Any) -> Any:
    if isinstance(obj, Ref):
        return str(obj)
    if hasattr(obj, "value"):
        return obj.value
    if is_dataclass(obj) and not isinstance(obj, type):
        return _normalize(asdict(obj))
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    return obj


def to_json_safe(obj: Any) -> Any:
    """
    Convert model values into JSON safe structures.

    Refs become their kind.name string form and enums their value.
    """
    return _normalize(obj)


def attribute_hash(attributes: dict[str, Any]) -> str:
    """
    Stable hash of desired attributes.

    Keys are sorted so declaration order never changes the hash.
    """
    canonical = json.dumps(to_json_safe(attributes), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
