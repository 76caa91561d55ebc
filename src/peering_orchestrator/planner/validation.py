"""
Route and CIDR validation.

This validator is a pure function over the topology model. It runs after
the graph is built and before anything is executed, so routing conflicts
become a deterministic pre flight failure instead of a remote API error
discovered halfway through an apply.

Validations
1. Every subnet CIDR is inside its segment's CIDR blocks, and sibling
   subnets do not overlap.
2. Subnet availability zones belong to the segment's region.
3. Route destinations are well formed and non empty.
4. A destination equal to or inside one of the table segment's local
   routes is only allowed when the target is a peering connection or an
   instance interface. Local traffic always takes the implicit route.
5. A destination appears at most once per route table.
6. A peering route lives in a table of one of the two peered segments.
7. Peered segments do not have overlapping blocks.
8. A key pair used by an instance lives in the instance context's region.
9. Security rule port ranges and CIDRs are well formed.

Warnings are non blocking. A peering route whose destination is not
inside the remote segment's blocks is a warning, since it will blackhole
traffic but is not unrealizable.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from peering_orchestrator.core.errors import ValidationError
from peering_orchestrator.core.types import (
    LOCAL_OVERRIDE_TARGETS,
    EntityKind,
    KeyPairRef,
    NetworkSegment,
    PeeringConnection,
    SecurityRule,
)
from peering_orchestrator.topology.store import TopologyStore

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

_PROTOCOLS = {"tcp", "udp", "icmp", "-1", "all"}


@dataclass
class ValidationResult:
    """
    Result of topology validation.

    ok means no blocking errors.
    errors are blocking.
    warnings are non blocking but important signals.
    evidence is a structured dictionary that can be inserted into reports.
    """

    ok: bool
    errors: List[str]
    warnings: List[str]
    evidence: Dict[str, object]


def parse_cidr(value: str) -> Optional[IPNetwork]:
    """Parse a CIDR block strictly. Host bits set or empty input return None."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return ipaddress.ip_network(value.strip(), strict=True)
    except ValueError:
        return None


def _subset(inner: IPNetwork, outer: IPNetwork) -> bool:
    return inner.version == outer.version and inner.subnet_of(outer)  # type: ignore[arg-type]


def _segment_blocks(seg: NetworkSegment) -> List[IPNetwork]:
    blocks = []
    for local in seg.local_routes():
        net = parse_cidr(local.destination)
        if net is not None:
            blocks.append(net)
    return blocks


def validate_topology(store: TopologyStore) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []
    evidence: Dict[str, object] = {}

    segments = {seg.name: seg for seg in store.segments()}
    blocks: Dict[str, List[IPNetwork]] = {}

    # Validation 0: segment blocks themselves.
    for seg in segments.values():
        for local in seg.local_routes():
            if parse_cidr(local.destination) is None:
                errors.append(f"segment {seg.name} has malformed CIDR block {local.destination!r}")
        blocks[seg.name] = _segment_blocks(seg)

    evidence["segment_blocks"] = {name: [str(b) for b in nets] for name, nets in blocks.items()}

    _validate_subnets(store, segments, blocks, errors)
    route_counts = _validate_routes(store, segments, blocks, errors, warnings)
    evidence["route_counts"] = route_counts
    _validate_peerings(store, blocks, errors)
    _validate_key_pairs(store, errors)
    _validate_security_rules(store, errors)

    return ValidationResult(ok=not errors, errors=errors, warnings=warnings, evidence=evidence)


def ensure_valid(store: TopologyStore) -> ValidationResult:
    """Validate and raise ValidationError listing every blocking finding."""
    result = validate_topology(store)
    if not result.ok:
        raise ValidationError(result.errors)
    return result


def _validate_subnets(
    store: TopologyStore,
    segments: Dict[str, NetworkSegment],
    blocks: Dict[str, List[IPNetwork]],
    errors: List[str],
) -> None:
    siblings: Dict[str, List[Tuple[str, IPNetwork]]] = {}

    for subnet in store.subnets():
        seg = segments.get(subnet.segment.name)
        if seg is None:
            continue

        net = parse_cidr(subnet.cidr)
        if net is None:
            errors.append(f"subnet {subnet.name} has malformed CIDR block {subnet.cidr!r}")
            continue

        if not any(_subset(net, b) for b in blocks.get(seg.name, [])):
            errors.append(f"subnet {subnet.name} CIDR {net} is not inside segment {seg.name} blocks")

        region = store.contexts[seg.context].region if seg.context in store.contexts else ""
        if region and not subnet.availability_zone.startswith(region):
            errors.append(
                f"subnet {subnet.name} availability zone {subnet.availability_zone} "
                f"is not in region {region}"
            )

        siblings.setdefault(seg.name, []).append((subnet.name, net))

    for seg_name, items in siblings.items():
        for i, (name_a, net_a) in enumerate(items):
            for name_b, net_b in items[i + 1:]:
                if net_a.version == net_b.version and net_a.overlaps(net_b):  # type: ignore[arg-type]
                    errors.append(
                        f"subnets {name_a} ({net_a}) and {name_b} ({net_b}) overlap in segment {seg_name}"
                    )


def _validate_routes(
    store: TopologyStore,
    segments: Dict[str, NetworkSegment],
    blocks: Dict[str, List[IPNetwork]],
    errors: List[str],
    warnings: List[str],
) -> Dict[str, int]:
    counts: Dict[str, int] = {}

    for table in store.route_tables():
        seg = segments.get(table.segment.name)
        local_blocks = blocks.get(table.segment.name, [])
        seen: Dict[IPNetwork, int] = {}
        counts[table.name] = len(table.routes)

        for idx, entry in enumerate(table.routes):
            label = f"route table {table.name} entry {idx} ({entry.destination!r} -> {entry.target})"

            net = parse_cidr(entry.destination)
            if net is None:
                errors.append(f"{label} has malformed or empty destination CIDR")
                continue

            if net in seen:
                errors.append(
                    f"{label} duplicates the destination of entry {seen[net]}, last writer would be ambiguous"
                )
            else:
                seen[net] = idx

            inside_local = [b for b in local_blocks if _subset(net, b)]
            if inside_local and entry.target.kind not in LOCAL_OVERRIDE_TARGETS:
                errors.append(
                    f"{label} destination is equal to or more specific than local block "
                    f"{inside_local[0]} of segment {table.segment.name}"
                )

            if entry.target.kind == EntityKind.peering_connection and seg is not None:
                peering = store.get(entry.target)
                if isinstance(peering, PeeringConnection):
                    sides = {peering.requester.name, peering.accepter.name}
                    if seg.name not in sides:
                        errors.append(
                            f"{label} targets peering {peering.name} which does not connect segment {seg.name}"
                        )
                        continue
                    remote = (sides - {seg.name}) or {seg.name}
                    remote_blocks = blocks.get(next(iter(remote)), [])
                    if remote_blocks and not any(_subset(net, b) for b in remote_blocks):
                        warnings.append(
                            f"{label} destination is outside the peer segment blocks and will not be reachable"
                        )

    return counts


def _validate_peerings(
    store: TopologyStore,
    blocks: Dict[str, List[IPNetwork]],
    errors: List[str],
) -> None:
    for peering in store.peerings():
        if peering.requester.name == peering.accepter.name:
            errors.append(f"peering {peering.name} connects segment {peering.requester.name} to itself")
            continue
        for a in blocks.get(peering.requester.name, []):
            for b in blocks.get(peering.accepter.name, []):
                if a.version == b.version and a.overlaps(b):  # type: ignore[arg-type]
                    errors.append(
                        f"peering {peering.name} joins overlapping blocks {a} and {b}"
                    )


def _validate_key_pairs(store: TopologyStore, errors: List[str]) -> None:
    for inst in store.instances():
        kp = store.get(inst.key_pair)
        seg = store.segment_of(inst)
        if not isinstance(kp, KeyPairRef) or seg is None or seg.context not in store.contexts:
            continue
        region = store.contexts[seg.context].region
        if kp.region != region:
            errors.append(
                f"instance {inst.name} launches in {region} but key pair {kp.name} lives in {kp.region}"
            )


def _validate_security_rules(store: TopologyStore, errors: List[str]) -> None:
    for rule in store.security_rules():
        _validate_rule(rule, errors)


def _validate_rule(rule: SecurityRule, errors: List[str]) -> None:
    if rule.direction not in {"ingress", "egress"}:
        errors.append(f"security rule {rule.name} has unknown direction {rule.direction!r}")
    if rule.protocol.lower() not in _PROTOCOLS:
        errors.append(f"security rule {rule.name} has unknown protocol {rule.protocol!r}")
    if not (0 <= rule.from_port <= rule.to_port <= 65535):
        errors.append(f"security rule {rule.name} has invalid port range {rule.from_port}-{rule.to_port}")
    if (rule.cidr is None) == (rule.source_rule is None):
        errors.append(f"security rule {rule.name} needs exactly one of cidr or source_rule")
    elif rule.cidr is not None and parse_cidr(rule.cidr) is None:
        errors.append(f"security rule {rule.name} has malformed CIDR {rule.cidr!r}")
