"""
Persisted state snapshot.

The snapshot records what the last apply observed for every node it
touched, keyed by (kind, logical name):
remote_id, attribute hash, last observed status, the attributes that were
hashed, and the snapshot keys the entity depended on.

Attributes are kept so the reconciler can tell which field changed and
pick update or recreate. Dependency keys are kept so entities that were
removed from the model can still be destroyed in a safe order.

The file is rewritten atomically after each apply pass: we write a
temporary file in the same directory and replace the original.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from peering_orchestrator.core.types import EntityKind

SnapshotKey = Tuple[EntityKind, str]

SNAPSHOT_VERSION = 1


@dataclass
class SnapshotEntry:
    remote_id: str
    attribute_hash: str
    status: str
    context: str = ""
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)


def encode_key(key: SnapshotKey) -> str:
    kind, name = key
    return f"{kind.value}/{name}"


def decode_key(raw: str) -> SnapshotKey:
    kind, _, name = raw.partition("/")
    return (EntityKind(kind), name)


@dataclass
class StateSnapshot:
    """In memory view of the persisted snapshot."""

    entries: Dict[SnapshotKey, SnapshotEntry] = field(default_factory=dict)

    def get(self, key: SnapshotKey) -> Optional[SnapshotEntry]:
        return self.entries.get(key)

    def put(self, key: SnapshotKey, entry: SnapshotEntry) -> None:
        self.entries[key] = entry

    def remove(self, key: SnapshotKey) -> None:
        self.entries.pop(key, None)

    def keys(self) -> List[SnapshotKey]:
        return sorted(self.entries, key=lambda k: (k[0].value, k[1]))

    def peering_states(self) -> Dict[str, str]:
        """Last observed status of every peering connection by name."""
        return {
            name: entry.status
            for (kind, name), entry in self.entries.items()
            if kind == EntityKind.peering_connection
        }

    def copy(self) -> "StateSnapshot":
        return StateSnapshot(
            entries={
                k: SnapshotEntry(
                    remote_id=v.remote_id,
                    attribute_hash=v.attribute_hash,
                    status=v.status,
                    context=v.context,
                    attributes=dict(v.attributes),
                    depends_on=list(v.depends_on),
                )
                for k, v in self.entries.items()
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "entries": {encode_key(k): asdict(self.entries[k]) for k in self.keys()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        version = data.get("version", SNAPSHOT_VERSION)
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"unsupported snapshot version {version}")
        entries: Dict[SnapshotKey, SnapshotEntry] = {}
        for raw_key, raw in (data.get("entries") or {}).items():
            entries[decode_key(raw_key)] = SnapshotEntry(
                remote_id=str(raw.get("remote_id", "")),
                attribute_hash=str(raw.get("attribute_hash", "")),
                status=str(raw.get("status", "")),
                context=str(raw.get("context", "")),
                attributes=dict(raw.get("attributes") or {}),
                depends_on=list(raw.get("depends_on") or []),
            )
        return cls(entries=entries)

    def __iter__(self) -> Iterator[SnapshotKey]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class SnapshotStore:
    """
    JSON file backed snapshot store.

    A missing file loads as an empty snapshot, which makes the first apply
    create everything.
    """

    path: Path

    def load(self) -> StateSnapshot:
        if not self.path.exists():
            return StateSnapshot()
        data = json.loads(self.path.read_text(encoding="utf-8"))
        return StateSnapshot.from_dict(data)

    def save(self, snapshot: StateSnapshot) -> None:
        payload = json.dumps(snapshot.to_dict(), indent=2, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
