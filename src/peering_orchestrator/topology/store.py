"""
Topology store.

We keep a simple in memory store as the normalized view of the desired
topology. Loaders fill it, the graph builder and validator read it.

Why not pass raw loader documents around
We want a stable internal representation that does not leak declaration
syntax into the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Type, TypeVar

from peering_orchestrator.core.types import (
    AccountContext,
    ComputeInstance,
    DnsZone,
    Entity,
    EntityKind,
    InternetGateway,
    KeyPairRef,
    NetworkSegment,
    PeeringConnection,
    Ref,
    RouteTable,
    SecurityRule,
    Subnet,
)

E = TypeVar("E", bound=Entity)


@dataclass
class TopologyStore:
    """
    Entity registry keyed by (kind, name).

    contexts is the process wide AccountContext registry for this topology.
    It is immutable once loaded: add_context refuses to replace a context.
    """

    contexts: Dict[str, AccountContext] = field(default_factory=dict)
    _entities: Dict[Tuple[EntityKind, str], Entity] = field(default_factory=dict)

    def add_context(self, ctx: AccountContext) -> None:
        """Register an AccountContext. Contexts cannot be replaced."""
        if ctx.name in self.contexts:
            raise ValueError(f"account context {ctx.name} already registered")
        self.contexts[ctx.name] = ctx

    def add(self, entity: Entity) -> None:
        """Add or replace an entity."""
        self._entities[(entity.kind, entity.name)] = entity

    def remove(self, ref: Ref) -> Optional[Entity]:
        """Drop an entity. Returns what was removed, if anything."""
        return self._entities.pop((ref.kind, ref.name), None)

    def get(self, ref: Ref) -> Optional[Entity]:
        """Return the entity for a reference if present."""
        return self._entities.get((ref.kind, ref.name))

    def require(self, ref: Ref, cls: Type[E]) -> E:
        """Return the entity for a reference, or raise KeyError if it is missing or not a cls."""
        found = self.get(ref)
        if not isinstance(found, cls):
            raise KeyError(f"no {ref.kind.value} named {ref.name}")
        return found

    def context(self, name: str) -> AccountContext:
        ctx = self.contexts.get(name)
        if ctx is None:
            raise KeyError(f"unknown account context {name}")
        return ctx

    def all(self) -> List[Entity]:
        """Return all entities in deterministic (kind, name) order."""
        return [self._entities[k] for k in sorted(self._entities, key=lambda k: (k[0].value, k[1]))]

    def of_type(self, cls: Type[E]) -> List[E]:
        return [e for e in self.all() if isinstance(e, cls)]

    def segments(self) -> List[NetworkSegment]:
        return self.of_type(NetworkSegment)

    def subnets(self) -> List[Subnet]:
        return self.of_type(Subnet)

    def route_tables(self) -> List[RouteTable]:
        return self.of_type(RouteTable)

    def peerings(self) -> List[PeeringConnection]:
        return self.of_type(PeeringConnection)

    def security_rules(self) -> List[SecurityRule]:
        return self.of_type(SecurityRule)

    def instances(self) -> List[ComputeInstance]:
        return self.of_type(ComputeInstance)

    def key_pairs(self) -> List[KeyPairRef]:
        return self.of_type(KeyPairRef)

    def gateways(self) -> List[InternetGateway]:
        return self.of_type(InternetGateway)

    def zones(self) -> List[DnsZone]:
        return self.of_type(DnsZone)

    def segment_of(self, entity: Entity) -> Optional[NetworkSegment]:
        """
        Walk references up to the owning segment.

        Returns None for entities that do not belong to a single segment,
        such as peering connections, key pairs and zones.
        """
        if isinstance(entity, NetworkSegment):
            return entity
        if isinstance(entity, ComputeInstance):
            subnet = self.get(entity.subnet)
            return self.segment_of(subnet) if subnet is not None else None
        segment_ref = getattr(entity, "segment", None)
        if isinstance(segment_ref, Ref):
            found = self.get(segment_ref)
            if isinstance(found, NetworkSegment):
                return found
        return None

    def __iter__(self) -> Iterator[Entity]:
        """Allow for loops over TopologyStore."""
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._entities)
