"""
Dependency graph builder.

This module converts the topology model into a directed acyclic execution
graph that the reconciler and scheduler walk.

Design goals
1. Every edge is derived from a typed reference. Declaration order never
   matters.
2. One node per provisioning operation. Route entries and subnet
   associations are their own nodes so they can be written independently.
3. The cross account acceptance handshake is one explicit extra node,
   scheduled on the accepter's context, that every route through the
   connection depends on.

Edges point from dependency to dependent: an edge u -> v means u must
complete before v starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import networkx as nx

from peering_orchestrator.core.errors import (
    CyclicDependencyError,
    PrematureRouteError,
    UnresolvedReferenceError,
    ValidationError,
)
from peering_orchestrator.core.types import (
    Entity,
    EntityKind,
    KeyPairRef,
    NetworkSegment,
    PeeringConnection,
    Ref,
    RouteEntry,
    RouteTable,
)
from peering_orchestrator.peering.handshake import PeeringState
from peering_orchestrator.topology.store import TopologyStore
from peering_orchestrator.topology.symbols import SymbolTable


class NodeRole(StrEnum):
    """
    provision
      Create, update, recreate or destroy one entity, decided by the reconciler.

    accept
      Accept a peering connection on the accepter context.

    verify
      Confirm an external resource exists, such as a key pair.
    """

    provision = "provision"
    accept = "accept"
    verify = "verify"


def entity_node_id(kind: EntityKind, name: str) -> str:
    return f"{kind.value}.{name}"


def route_key(table: str, destination: str) -> str:
    return f"{table}:{destination}"


def association_key(table: str, subnet: str) -> str:
    return f"{table}:{subnet}"


def accept_node_id(peering: str) -> str:
    return f"{entity_node_id(EntityKind.peering_connection, peering)}#accept"


def destroy_node_id(node_id: str) -> str:
    """Id of the node that deletes the old resource of a node being recreated."""
    return f"{node_id}#destroy"


def key_pair_check_id(key_pair: str, context: str) -> str:
    return f"{entity_node_id(EntityKind.key_pair, key_pair)}@{context}"


@dataclass
class PlanNode:
    """
    One node of the execution graph.

    kind and name form the snapshot key. For route nodes name is
    table:destination, for association nodes table:subnet.

    context is the AccountContext whose worker pool runs the node.

    route_table is set for nodes that write into a route table and must
    hold that table's lock.

    attributes are the desired attributes used for change detection.
    References stay as Ref values so the hash does not depend on remote ids.
    """

    node_id: str
    kind: EntityKind
    name: str
    context: str
    role: NodeRole = NodeRole.provision
    attributes: Dict[str, Any] = field(default_factory=dict)
    entity: Optional[Entity] = None
    route_table: Optional[str] = None

    @property
    def key(self) -> Tuple[EntityKind, str]:
        return (self.kind, self.name)


class ExecutionGraph:
    """
    Directed acyclic execution graph.

    nodes maps node id to PlanNode. The underlying networkx graph stores
    only ids and edges.
    """

    def __init__(self) -> None:
        self._graph: nx.DiGraph = nx.DiGraph()
        self.nodes: Dict[str, PlanNode] = {}

    def add_node(self, node: PlanNode) -> None:
        if node.node_id in self.nodes:
            raise ValidationError([f"{node.node_id} is declared more than once"])
        self.nodes[node.node_id] = node
        self._graph.add_node(node.node_id)

    def add_edge(self, dependency: str, dependent: str) -> None:
        """Record that dependency must complete before dependent starts."""
        if dependency == dependent:
            return
        self._graph.add_edge(dependency, dependent)

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def dependencies(self, node_id: str) -> List[str]:
        return sorted(self._graph.predecessors(node_id))

    def dependents(self, node_id: str) -> List[str]:
        return sorted(self._graph.successors(node_id))

    def descendants(self, node_id: str) -> List[str]:
        return sorted(nx.descendants(self._graph, node_id))

    def ancestors(self, node_id: str) -> List[str]:
        return sorted(nx.ancestors(self._graph, node_id))

    def edges(self) -> List[Tuple[str, str]]:
        return sorted(self._graph.edges())

    def topological_order(self) -> List[str]:
        """Deterministic creation order."""
        return list(nx.lexicographical_topological_sort(self._graph))

    def teardown_order(self) -> List[str]:
        """Deterministic teardown order: the graph inverted, dependents first."""
        return list(nx.lexicographical_topological_sort(self._graph.reverse(copy=False)))

    def shortest_cycle(self) -> Optional[List[str]]:
        """
        Return the shortest cycle, or None when the graph is acyclic.

        For every edge u -> v inside a strongly connected component the
        shortest path v ~> u closes a cycle through that edge. The minimum
        over all such edges is the shortest cycle in the graph. Ties are
        broken by edge order so the report is stable.
        """

        best: Optional[List[str]] = None
        for component in nx.strongly_connected_components(self._graph):
            if len(component) < 2:
                continue
            sub = self._graph.subgraph(component)
            for u, v in sorted(sub.edges()):
                path = nx.shortest_path(sub, v, u)
                cycle = [u, *path]
                if best is None or len(cycle) < len(best):
                    best = cycle
        return best

    def ensure_acyclic(self) -> None:
        cycle = self.shortest_cycle()
        if cycle is not None:
            raise CyclicDependencyError(cycle)

    def __len__(self) -> int:
        return len(self.nodes)


class GraphBuilder:
    """
    Builds an ExecutionGraph from a TopologyStore.

    known_peering_states carries the last known state of each peering
    connection, normally from the state snapshot. It decides whether a
    route through a connection that this plan does not accept is allowed.
    """

    def __init__(
        self,
        store: TopologyStore,
        known_peering_states: Mapping[str, PeeringState] | None = None,
    ) -> None:
        self._store = store
        self._known = dict(known_peering_states or {})
        self._graph = ExecutionGraph()
        self._key_pair_contexts: Dict[str, Set[str]] = {}

    def build(self) -> ExecutionGraph:
        resolve_references(self._store)
        self._assign_key_pair_contexts()

        for seg in self._store.segments():
            self._add_entity(seg, seg.context)
        for gw in self._store.gateways():
            self._add_entity(gw, self._context_of(gw), depends_on=[gw.segment])
        for subnet in self._store.subnets():
            self._add_entity(subnet, self._context_of(subnet), depends_on=[subnet.segment])
        for rule in self._store.security_rules():
            deps = [rule.segment]
            if rule.source_rule is not None:
                deps.append(rule.source_rule)
            self._add_entity(rule, self._context_of(rule), depends_on=deps)
        for kp in self._store.key_pairs():
            self._add_key_pair_check(kp)
        for inst in self._store.instances():
            context = self._context_of(inst)
            inst_id = self._add_entity(inst, context, depends_on=[inst.subnet, *inst.security_rules])
            self._graph.add_edge(key_pair_check_id(inst.key_pair.name, context), inst_id)
        for peering in self._store.peerings():
            self._add_peering(peering)
        for zone in self._store.zones():
            self._add_entity(zone, zone.context, depends_on=list(zone.segments))
        for table in self._store.route_tables():
            self._add_route_table(table)

        self._graph.ensure_acyclic()
        return self._graph

    def _assign_key_pair_contexts(self) -> None:
        for inst in self._store.instances():
            self._key_pair_contexts.setdefault(inst.key_pair.name, set()).add(self._context_of(inst))

    def _context_of(self, entity: Entity) -> str:
        seg = self._store.segment_of(entity)
        if seg is None:
            raise ValueError(f"{entity.ref} has no owning segment")
        return seg.context

    def _add_entity(self, entity: Entity, context: str, depends_on: Iterable[Ref] = ()) -> str:
        node_id = entity_node_id(entity.kind, entity.name)
        self._graph.add_node(
            PlanNode(
                node_id=node_id,
                kind=entity.kind,
                name=entity.name,
                context=context,
                attributes=entity.attributes(),
                entity=entity,
            )
        )
        for ref in depends_on:
            self._graph.add_edge(entity_node_id(ref.kind, ref.name), node_id)
        return node_id

    def _add_key_pair_check(self, kp: KeyPairRef) -> None:
        """
        Add one existence check per account context that launches with kp.

        Key pairs live in one account and region, so an instance only
        depends on the check run in its own context. Unreferenced key pairs
        gate nothing and get no node.
        """

        for context in sorted(self._key_pair_contexts.get(kp.name, ())):
            self._graph.add_node(
                PlanNode(
                    node_id=key_pair_check_id(kp.name, context),
                    kind=kp.kind,
                    name=kp.name,
                    context=context,
                    role=NodeRole.verify,
                    attributes=kp.attributes(),
                    entity=kp,
                )
            )

    def _add_peering(self, peering: PeeringConnection) -> None:
        requester = self._store.require(peering.requester, NetworkSegment)
        accepter = self._store.require(peering.accepter, NetworkSegment)

        create_id = self._add_entity(
            peering,
            requester.context,
            depends_on=[peering.requester, peering.accepter],
        )
        if not peering.accept:
            return

        accept_id = accept_node_id(peering.name)
        self._graph.add_node(
            PlanNode(
                node_id=accept_id,
                kind=EntityKind.peering_connection,
                name=peering.name,
                context=accepter.context,
                role=NodeRole.accept,
                entity=peering,
            )
        )
        self._graph.add_edge(create_id, accept_id)

    def _add_route_table(self, table: RouteTable) -> None:
        table_id = self._add_entity(table, self._context_of(table), depends_on=[table.segment])
        context = self._context_of(table)

        for entry in table.routes:
            route_id = self._add_route(table, entry, context)
            self._graph.add_edge(table_id, route_id)

        for subnet_ref in table.subnets:
            name = association_key(table.name, subnet_ref.name)
            assoc_id = entity_node_id(EntityKind.route_table_association, name)
            self._graph.add_node(
                PlanNode(
                    node_id=assoc_id,
                    kind=EntityKind.route_table_association,
                    name=name,
                    context=context,
                    attributes={"route_table": table.ref, "subnet": subnet_ref},
                    route_table=table.name,
                )
            )
            self._graph.add_edge(table_id, assoc_id)
            self._graph.add_edge(entity_node_id(EntityKind.subnet, subnet_ref.name), assoc_id)

    def _add_route(self, table: RouteTable, entry: RouteEntry, context: str) -> str:
        name = route_key(table.name, entry.destination)
        route_id = entity_node_id(EntityKind.route, name)
        self._graph.add_node(
            PlanNode(
                node_id=route_id,
                kind=EntityKind.route,
                name=name,
                context=context,
                attributes={
                    "route_table": table.ref,
                    "destination": entry.destination,
                    "target": entry.target,
                },
                route_table=table.name,
            )
        )

        target = entry.target
        if target.kind == EntityKind.peering_connection:
            self._graph.add_edge(self._peering_gate(route_id, target.name), route_id)
        else:
            self._graph.add_edge(entity_node_id(target.kind, target.name), route_id)
        return route_id

    def _peering_gate(self, route_id: str, peering_name: str) -> str:
        """
        Return the node a route through a peering connection must wait for.

        When this plan accepts the connection, the route waits on the accept
        node, never on the create node. When it does not, the connection
        must already be known active, otherwise the route could be written
        while the connection is still pending.
        """

        peering = self._store.require(Ref(EntityKind.peering_connection, peering_name), PeeringConnection)
        if peering.accept:
            return accept_node_id(peering_name)

        known = self._known.get(peering_name, PeeringState.requested)
        if known != PeeringState.active:
            raise PrematureRouteError(route=route_id, peering=peering_name, state=known.value)
        return entity_node_id(EntityKind.peering_connection, peering_name)


def resolve_references(store: TopologyStore) -> None:
    """
    Resolve every typed reference and entity context in the store.

    Raises UnresolvedReferenceError or TypeMismatchError for the first bad
    reference in (kind, name) order. Nothing else in planning is safe to
    run until this passes.
    """

    symbols = SymbolTable(store.all())
    for entity in store.all():
        for ref_field in entity.references():
            symbols.resolve(entity, ref_field)
        ctx = getattr(entity, "context", None)
        if isinstance(ctx, str) and ctx not in store.contexts:
            raise UnresolvedReferenceError(
                entity=str(entity.ref),
                field="context",
                kind=EntityKind.account_context.value,
                name=ctx,
            )


def build_execution_graph(
    store: TopologyStore,
    known_peering_states: Mapping[str, PeeringState] | None = None,
) -> ExecutionGraph:
    """Build and cycle check the execution graph for a topology."""
    return GraphBuilder(store, known_peering_states).build()


__all__ = [
    "ExecutionGraph",
    "GraphBuilder",
    "NodeRole",
    "PlanNode",
    "accept_node_id",
    "association_key",
    "build_execution_graph",
    "destroy_node_id",
    "entity_node_id",
    "key_pair_check_id",
    "resolve_references",
    "route_key",
]
