"""
Core types.

This file defines the topology model shared across the engine.

Important design choice
References between entities are typed Ref values keyed by (kind, name),
never bare strings. The graph builder resolves every Ref through a kind
checked symbol table, so a route table field that names a segment is a
build time error rather than a remote API failure.

The model is pure data. Entities only know how to describe their own
references and their own attributes. Ordering, validation and execution
live in the planner and execution packages.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple


class EntityKind(str, Enum):
    """
    Kinds of things the engine provisions or checks.

    route and route_table_association are not named entities in the model.
    They are children of a RouteTable, but each one is its own graph node
    and snapshot entry so route writes can run independently.
    """

    account_context = "account_context"
    segment = "segment"
    subnet = "subnet"
    route_table = "route_table"
    route = "route"
    route_table_association = "route_table_association"
    peering_connection = "peering_connection"
    security_rule = "security_rule"
    compute_instance = "compute_instance"
    key_pair = "key_pair"
    internet_gateway = "internet_gateway"
    dns_zone = "dns_zone"


# Route targets that may point at a destination inside the segment's own block.
LOCAL_OVERRIDE_TARGETS = frozenset({EntityKind.peering_connection, EntityKind.compute_instance})

ROUTE_TARGET_KINDS = frozenset(
    {EntityKind.peering_connection, EntityKind.compute_instance, EntityKind.internet_gateway}
)


class Operation(str, Enum):
    """
    What a graph node does when it runs.

    noop, create, update, recreate and destroy come from reconciliation.
    accept is the accepter side of a peering handshake.
    verify checks that an external resource exists without creating it.
    """

    noop = "noop"
    create = "create"
    update = "update"
    recreate = "recreate"
    destroy = "destroy"
    accept = "accept"
    verify = "verify"


MUTATING_OPERATIONS = frozenset(
    {Operation.create, Operation.update, Operation.recreate, Operation.destroy}
)


class NodeStatus(str, Enum):
    """
    Final status of one graph node.

    succeeded
      The operation completed.

    failed
      The operation raised. The reason is recorded on the result.

    blocked
      A dependency failed so the node was never attempted.

    skipped
      Nothing to do (no-op or dry run) or the apply was cancelled first.
    """

    succeeded = "succeeded"
    failed = "failed"
    blocked = "blocked"
    skipped = "skipped"


@dataclass(frozen=True)
class Ref:
    """A typed reference to a named entity."""

    kind: EntityKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}.{self.name}"


@dataclass(frozen=True)
class AccountContext:
    """
    An authenticated account and region pair.

    credential_handle is opaque to the engine. Adapter factories use it to
    pick credentials, the engine only uses the context name to route work.
    """

    name: str
    account_id: str
    region: str
    credential_handle: str = ""


@dataclass(frozen=True)
class LocalRoute:
    """The implicit in segment route a segment contributes for one of its blocks."""

    segment: str
    destination: str


@dataclass(frozen=True)
class ReferenceField:
    """One reference held by an entity, with the kinds the field accepts."""

    field: str
    ref: Ref
    allowed: frozenset


class Entity:
    """
    Mixin for model entities.

    Subclasses are dataclasses with a name field and a kind class variable.
    reference_fields declares which fields hold references and which kinds
    each accepts. Attributes used for change detection exclude name and any
    field listed in child_fields, because children are tracked as their own
    nodes.
    """

    kind: ClassVar[EntityKind]
    reference_fields: ClassVar[Dict[str, frozenset]] = {}
    child_fields: ClassVar[Tuple[str, ...]] = ()

    name: str

    @property
    def ref(self) -> Ref:
        return Ref(self.kind, self.name)

    def references(self) -> List[ReferenceField]:
        out: List[ReferenceField] = []
        for field_name, allowed in self.reference_fields.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                for idx, item in enumerate(value):
                    out.append(ReferenceField(f"{field_name}[{idx}]", item, allowed))
            else:
                out.append(ReferenceField(field_name, value, allowed))
        return out

    def attributes(self) -> Dict[str, Any]:
        skip = {"name", *self.child_fields}
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name not in skip}  # type: ignore[arg-type]


@dataclass
class NetworkSegment(Entity):
    """
    An isolated virtual network, the VPC concept.

    context names the AccountContext that owns the segment.
    secondary_cidrs are extra blocks associated after creation.
    """

    kind: ClassVar[EntityKind] = EntityKind.segment

    name: str
    context: str
    cidr: str
    secondary_cidrs: List[str] = field(default_factory=list)
    enable_dns_hostnames: bool = True
    tags: Dict[str, str] = field(default_factory=dict)

    def local_routes(self) -> List[LocalRoute]:
        """Return the implicit local routes for every block of this segment."""
        blocks = [self.cidr, *self.secondary_cidrs]
        return [LocalRoute(segment=self.name, destination=b) for b in blocks]


@dataclass
class Subnet(Entity):
    kind: ClassVar[EntityKind] = EntityKind.subnet
    reference_fields: ClassVar[Dict[str, frozenset]] = {"segment": frozenset({EntityKind.segment})}

    name: str
    segment: Ref
    cidr: str
    availability_zone: str
    map_public_ip: bool = False
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RouteEntry:
    """One route: destination CIDR forwarded to a typed target."""

    destination: str
    target: Ref


@dataclass
class RouteTable(Entity):
    """
    Ordered routing entries for one segment.

    routes and subnets are children. Each route and each subnet association
    becomes its own graph node so entries can be written independently
    under the per table lock.
    """

    kind: ClassVar[EntityKind] = EntityKind.route_table
    reference_fields: ClassVar[Dict[str, frozenset]] = {
        "segment": frozenset({EntityKind.segment}),
        "subnets": frozenset({EntityKind.subnet}),
    }
    child_fields: ClassVar[Tuple[str, ...]] = ("routes", "subnets")

    name: str
    segment: Ref
    routes: List[RouteEntry] = field(default_factory=list)
    subnets: List[Ref] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)

    def references(self) -> List[ReferenceField]:
        out = super().references()
        for idx, entry in enumerate(self.routes):
            out.append(ReferenceField(f"routes[{idx}].target", entry.target, ROUTE_TARGET_KINDS))
        return out


@dataclass
class PeeringConnection(Entity):
    """
    A link between two segments, possibly across accounts and regions.

    accept controls whether this plan issues the accept call on the
    accepter context. When False the connection is expected to be accepted
    out of band, and routes through it are only allowed once it is known
    to be active.
    """

    kind: ClassVar[EntityKind] = EntityKind.peering_connection
    reference_fields: ClassVar[Dict[str, frozenset]] = {
        "requester": frozenset({EntityKind.segment}),
        "accepter": frozenset({EntityKind.segment}),
    }

    name: str
    requester: Ref
    accepter: Ref
    accept: bool = True
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class SecurityRule(Entity):
    """
    Ingress or egress policy attached to a segment.

    Exactly one of cidr or source_rule identifies the peer side.
    source_rule names another rule set whose members are allowed.
    """

    kind: ClassVar[EntityKind] = EntityKind.security_rule
    reference_fields: ClassVar[Dict[str, frozenset]] = {
        "segment": frozenset({EntityKind.segment}),
        "source_rule": frozenset({EntityKind.security_rule}),
    }

    name: str
    segment: Ref
    direction: str = "ingress"
    protocol: str = "tcp"
    from_port: int = 0
    to_port: int = 0
    cidr: Optional[str] = None
    source_rule: Optional[Ref] = None
    description: str = ""


@dataclass
class KeyPairRef(Entity):
    """
    Credential material expected to exist already in one region.

    The engine verifies it exists. It never creates it.
    key_name is the provider side name, defaulting to name.
    """

    kind: ClassVar[EntityKind] = EntityKind.key_pair

    name: str
    region: str
    key_name: str = ""

    def __post_init__(self) -> None:
        if not self.key_name:
            self.key_name = self.name


@dataclass
class ComputeInstance(Entity):
    kind: ClassVar[EntityKind] = EntityKind.compute_instance
    reference_fields: ClassVar[Dict[str, frozenset]] = {
        "subnet": frozenset({EntityKind.subnet}),
        "security_rules": frozenset({EntityKind.security_rule}),
        "key_pair": frozenset({EntityKind.key_pair}),
    }

    name: str
    subnet: Ref
    key_pair: Ref
    image_id: str
    instance_type: str = "t3.micro"
    security_rules: List[Ref] = field(default_factory=list)
    private_ip: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class InternetGateway(Entity):
    kind: ClassVar[EntityKind] = EntityKind.internet_gateway
    reference_fields: ClassVar[Dict[str, frozenset]] = {"segment": frozenset({EntityKind.segment})}

    name: str
    segment: Ref
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class DnsZone(Entity):
    """
    A private DNS zone associated with one or more segments.

    Deleting a zone is refused while it holds records beyond the system
    managed NS and SOA pair at its apex.
    """

    kind: ClassVar[EntityKind] = EntityKind.dns_zone
    reference_fields: ClassVar[Dict[str, frozenset]] = {"segments": frozenset({EntityKind.segment})}

    name: str
    context: str
    domain: str
    segments: List[Ref] = field(default_factory=list)
    comment: str = ""


SYSTEM_RECORD_TYPES = frozenset({"NS", "SOA"})


@dataclass(frozen=True)
class RemoteState:
    """
    What an adapter reports for one remote id.

    status is the provider status string, for example available or
    pending-acceptance. attributes carries kind specific details such as
    the record list of a DNS zone.
    """

    exists: bool
    status: str = ""
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeResult:
    """Outcome of a single graph node."""

    node_id: str
    kind: EntityKind
    name: str
    context: str
    operation: Operation
    status: NodeStatus
    reason: str = ""
    remote_id: str = ""
    attempts: int = 0
