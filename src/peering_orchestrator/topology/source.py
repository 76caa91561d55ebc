"""
Topology sources.

Goal
Provide pluggable topology ingestion. The engine only sees a populated
TopologyStore, never declaration syntax.

Static JSON schema example
{
  "accounts": [
    {"name": "a", "account_id": "111111111111", "region": "us-east-1"}
  ],
  "segments": [{"name": "vpc-a", "context": "a", "cidr": "10.0.0.0/16"}],
  "subnets": [
    {"name": "a-1", "segment": "vpc-a", "cidr": "10.0.1.0/24", "availability_zone": "us-east-1a"}
  ],
  "peerings": [{"name": "a-b", "requester": "vpc-a", "accepter": "vpc-b"}],
  "route_tables": [
    {
      "name": "rt-a",
      "segment": "vpc-a",
      "routes": [{"destination": "10.1.0.0/16", "target": "peering_connection.a-b"}],
      "subnets": ["a-1"]
    }
  ]
}

References
A reference is written kind.name, for example segment.vpc-a, or as a bare
name meaning the kind the field expects. Route targets have no expected
kind and must always name one. Writing the kind explicitly is what lets
the graph builder reject a reference to the wrong kind of entity.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from peering_orchestrator.core.types import (
    AccountContext,
    ComputeInstance,
    DnsZone,
    EntityKind,
    InternetGateway,
    KeyPairRef,
    NetworkSegment,
    PeeringConnection,
    Ref,
    RouteEntry,
    RouteTable,
    SecurityRule,
    Subnet,
)
from peering_orchestrator.topology.store import TopologyStore

_KINDS = {k.value: k for k in EntityKind}


class TopologySource(Protocol):
    """
    Topology source interface.

    load returns a fully populated TopologyStore.
    """

    def load(self) -> TopologyStore:
        """Load the desired topology."""


def parse_ref(raw: Any, default: Optional[EntityKind]) -> Ref:
    """Parse kind.name or a bare name into a Ref."""
    if isinstance(raw, dict):
        return Ref(EntityKind(raw["kind"]), str(raw["name"]))
    text = str(raw)
    prefix, sep, rest = text.partition(".")
    if sep and prefix in _KINDS:
        return Ref(_KINDS[prefix], rest)
    if default is None:
        raise ValueError(f"reference {text!r} must name its kind, for example peering_connection.{text}")
    return Ref(default, text)


def _refs(raw: Any, default: EntityKind) -> List[Ref]:
    return [parse_ref(x, default) for x in (raw or [])]


def _opt_ref(raw: Any, default: EntityKind) -> Optional[Ref]:
    return None if raw in (None, "") else parse_ref(raw, default)


def _tags(obj: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (obj.get("tags") or {}).items()}


def store_from_dict(data: Dict[str, Any]) -> TopologyStore:
    """Convert a topology document into a TopologyStore."""

    store = TopologyStore()

    for obj in data.get("accounts", []):
        store.add_context(
            AccountContext(
                name=str(obj["name"]),
                account_id=str(obj["account_id"]),
                region=str(obj["region"]),
                credential_handle=str(obj.get("credential_handle", "")),
            )
        )

    for obj in data.get("segments", []):
        store.add(
            NetworkSegment(
                name=str(obj["name"]),
                context=str(obj["context"]),
                cidr=str(obj["cidr"]),
                secondary_cidrs=[str(c) for c in obj.get("secondary_cidrs", [])],
                enable_dns_hostnames=bool(obj.get("enable_dns_hostnames", True)),
                tags=_tags(obj),
            )
        )

    for obj in data.get("subnets", []):
        store.add(
            Subnet(
                name=str(obj["name"]),
                segment=parse_ref(obj["segment"], EntityKind.segment),
                cidr=str(obj["cidr"]),
                availability_zone=str(obj["availability_zone"]),
                map_public_ip=bool(obj.get("map_public_ip", False)),
                tags=_tags(obj),
            )
        )

    for obj in data.get("internet_gateways", []):
        store.add(
            InternetGateway(
                name=str(obj["name"]),
                segment=parse_ref(obj["segment"], EntityKind.segment),
                tags=_tags(obj),
            )
        )

    for obj in data.get("route_tables", []):
        store.add(
            RouteTable(
                name=str(obj["name"]),
                segment=parse_ref(obj["segment"], EntityKind.segment),
                routes=[
                    RouteEntry(destination=str(r.get("destination", "")), target=parse_ref(r["target"], None))
                    for r in obj.get("routes", [])
                ],
                subnets=_refs(obj.get("subnets"), EntityKind.subnet),
                tags=_tags(obj),
            )
        )

    for obj in data.get("peerings", []):
        store.add(
            PeeringConnection(
                name=str(obj["name"]),
                requester=parse_ref(obj["requester"], EntityKind.segment),
                accepter=parse_ref(obj["accepter"], EntityKind.segment),
                accept=bool(obj.get("accept", True)),
                tags=_tags(obj),
            )
        )

    for obj in data.get("security_rules", []):
        store.add(
            SecurityRule(
                name=str(obj["name"]),
                segment=parse_ref(obj["segment"], EntityKind.segment),
                direction=str(obj.get("direction", "ingress")),
                protocol=str(obj.get("protocol", "tcp")),
                from_port=int(obj.get("from_port", 0)),
                to_port=int(obj.get("to_port", obj.get("from_port", 0))),
                cidr=obj.get("cidr"),
                source_rule=_opt_ref(obj.get("source_rule"), EntityKind.security_rule),
                description=str(obj.get("description", "")),
            )
        )

    for obj in data.get("key_pairs", []):
        store.add(
            KeyPairRef(
                name=str(obj["name"]),
                region=str(obj["region"]),
                key_name=str(obj.get("key_name", "")),
            )
        )

    for obj in data.get("instances", []):
        store.add(
            ComputeInstance(
                name=str(obj["name"]),
                subnet=parse_ref(obj["subnet"], EntityKind.subnet),
                key_pair=parse_ref(obj["key_pair"], EntityKind.key_pair),
                image_id=str(obj["image_id"]),
                instance_type=str(obj.get("instance_type", "t3.micro")),
                security_rules=_refs(obj.get("security_rules"), EntityKind.security_rule),
                private_ip=obj.get("private_ip"),
                tags=_tags(obj),
            )
        )

    for obj in data.get("dns_zones", []):
        store.add(
            DnsZone(
                name=str(obj["name"]),
                context=str(obj["context"]),
                domain=str(obj["domain"]),
                segments=_refs(obj.get("segments"), EntityKind.segment),
                comment=str(obj.get("comment", "")),
            )
        )

    return store


@dataclass(frozen=True)
class StaticTopologySource(TopologySource):
    """Load a topology from a local json file."""

    path: Path

    def load(self) -> TopologyStore:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a json object")
        return store_from_dict(data)
