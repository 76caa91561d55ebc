"""
Idempotency and reconciliation.

Purpose
Decide, for every graph node, whether applying it is a no-op, a create,
an in place update, a destroy then create, or a destroy, by comparing the
desired attributes against the persisted snapshot of last known state.

Rules
1) No snapshot entry: create.
2) Snapshot entry whose remote resource no longer exists: create.
3) Attribute hash matches and the resource exists: noop.
4) Attributes differ only in fields the kind can mutate: update.
5) Any changed field is immutable for the kind: recreate. The old resource
   is deleted by a separate destroy node on the context that owns it.
   Destroy nodes run dependents first, and each replacement is created
   only after its old resource is gone.
6) Snapshot entry with no node in the model: destroy, dependents first.
7) A node whose dependency is being replaced is replaced too, since the
   remote resource it points at will get a new id.

Accept nodes are noop once the snapshot says the connection is active.
Verify nodes always run, they never mutate anything.

After the scheduler finishes, apply_results folds node outcomes back into
a new snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Set

import structlog

from peering_orchestrator.core.serialization import attribute_hash, to_json_safe
from peering_orchestrator.core.types import (
    MUTATING_OPERATIONS,
    EntityKind,
    NodeResult,
    NodeStatus,
    Operation,
)
from peering_orchestrator.execution.base import CloudProviderAdapter, RetryPolicy
from peering_orchestrator.execution.retry import call_with_retry
from peering_orchestrator.peering.handshake import PeeringState
from peering_orchestrator.planner.graph import (
    ExecutionGraph,
    NodeRole,
    PlanNode,
    destroy_node_id,
    entity_node_id,
)
from peering_orchestrator.state.snapshot import SnapshotEntry, SnapshotKey, StateSnapshot

logger = structlog.get_logger("peering_orchestrator.reconcile")

# Fields that can change in place, by kind. Kinds absent here are replaced on any change.
MUTABLE_FIELDS: Dict[EntityKind, FrozenSet[str]] = {
    EntityKind.segment: frozenset({"secondary_cidrs", "enable_dns_hostnames", "tags"}),
    EntityKind.subnet: frozenset({"map_public_ip", "tags"}),
    EntityKind.route_table: frozenset({"tags"}),
    EntityKind.route: frozenset({"target"}),
    EntityKind.peering_connection: frozenset({"accept", "tags"}),
    EntityKind.security_rule: frozenset({"description"}),
    EntityKind.compute_instance: frozenset({"instance_type", "security_rules", "tags"}),
    EntityKind.internet_gateway: frozenset({"tags"}),
    EntityKind.dns_zone: frozenset({"segments", "comment"}),
}

_REPLACEMENT_OPS = frozenset({Operation.recreate})

_DEAD_PEERING = frozenset({PeeringState.rejected.value, PeeringState.deleted.value})


@dataclass
class ReconcilePlan:
    """
    Operation per node id.

    graph is the execution graph extended with destroy nodes, one per
    entity removed from the model and one per recreated node.

    prior is the snapshot the plan was computed against.
    """

    graph: ExecutionGraph
    operations: Dict[str, Operation]
    prior: StateSnapshot
    changed_fields: Dict[str, List[str]] = field(default_factory=dict)

    def operation(self, node_id: str) -> Operation:
        return self.operations[node_id]

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for op in self.operations.values():
            out[op.value] = out.get(op.value, 0) + 1
        return out

    def mutating(self) -> List[str]:
        """Node ids that will change remote state, in creation order."""
        return [n for n in self.graph.topological_order() if self.operations[n] in MUTATING_OPERATIONS]


class Reconciler:
    """
    Compare desired graph nodes to the snapshot.

    adapters maps context name to adapter. They are only used to confirm
    that snapshot resources still exist.
    """

    def __init__(
        self,
        adapters: Mapping[str, CloudProviderAdapter],
        retry: RetryPolicy | None = None,
    ) -> None:
        self._adapters = adapters
        self._retry = retry or RetryPolicy()

    def plan(self, graph: ExecutionGraph, snapshot: StateSnapshot) -> ReconcilePlan:
        operations: Dict[str, Operation] = {}
        changed: Dict[str, List[str]] = {}
        replaced: Set[str] = set()

        for node_id in graph.topological_order():
            node = graph.nodes[node_id]
            entry = snapshot.get(node.key)

            if node.role == NodeRole.verify:
                operations[node_id] = Operation.verify
                continue

            if node.role == NodeRole.accept:
                op = self._plan_accept(node, entry, operations)
                operations[node_id] = op
                create_id = entity_node_id(node.kind, node.name)
                if create_id in replaced:
                    replaced.add(node_id)
                continue

            op, fields = self._plan_provision(node, entry)
            parents_replaced = any(dep in replaced for dep in graph.dependencies(node_id))
            if parents_replaced and entry is not None and op != Operation.create:
                op = Operation.recreate
            operations[node_id] = op
            if fields:
                changed[node_id] = fields
            if op in _REPLACEMENT_OPS or (op == Operation.create and entry is not None):
                replaced.add(node_id)

        self._split_recreates(graph, snapshot, operations)
        self._add_destroys(graph, snapshot, operations)

        plan = ReconcilePlan(graph=graph, operations=operations, prior=snapshot, changed_fields=changed)
        logger.info("reconcile_planned", counts=plan.counts())
        return plan

    def _plan_accept(
        self,
        node: PlanNode,
        entry: SnapshotEntry | None,
        operations: Dict[str, Operation],
    ) -> Operation:
        create_op = operations.get(entity_node_id(node.kind, node.name))
        if create_op in {Operation.create, Operation.recreate}:
            return Operation.accept
        if entry is not None and entry.status == PeeringState.active.value:
            return Operation.noop
        return Operation.accept

    def _plan_provision(self, node: PlanNode, entry: SnapshotEntry | None) -> tuple[Operation, List[str]]:
        if entry is None:
            return Operation.create, []

        if not self._exists(entry.context or node.context, entry.remote_id):
            logger.warning("reconcile_drift_missing", node=node.node_id, remote_id=entry.remote_id)
            return Operation.create, []

        if node.kind == EntityKind.peering_connection and entry.status in _DEAD_PEERING:
            return Operation.recreate, ["status"]

        if attribute_hash(node.attributes) == entry.attribute_hash:
            return Operation.noop, []

        desired = to_json_safe(node.attributes)
        fields = sorted(
            k for k in set(desired) | set(entry.attributes) if desired.get(k) != entry.attributes.get(k)
        )
        mutable = MUTABLE_FIELDS.get(node.kind, frozenset())
        if fields and all(f in mutable for f in fields):
            return Operation.update, fields
        return Operation.recreate, fields

    def _exists(self, context: str, remote_id: str) -> bool:
        adapter = self._adapters.get(context)
        if adapter is None:
            # The owning account left the model, nothing can reach the resource.
            logger.warning("reconcile_context_gone", context=context, remote_id=remote_id)
            return False
        state = call_with_retry(lambda: adapter.describe(remote_id), self._retry, label=f"describe {remote_id}")
        return state.exists

    def _split_recreates(
        self,
        graph: ExecutionGraph,
        snapshot: StateSnapshot,
        operations: Dict[str, Operation],
    ) -> None:
        """
        Give every recreated node its own destroy node.

        The destroy node deletes the old resource through the context that
        owns it in the snapshot, which may differ from the desired context.
        Destroy nodes are chained against creation order: if X depends on Y
        and both are recreated, destroy X runs before destroy Y. The create
        half of X waits for destroy X.
        """

        recreated = [n for n in graph.topological_order() if operations[n] == Operation.recreate]
        doomed = set(recreated)
        replaced_ancestors = {n: [a for a in graph.ancestors(n) if a in doomed] for n in recreated}

        for node_id in recreated:
            node = graph.nodes[node_id]
            entry = snapshot.entries[node.key]
            destroy_id = destroy_node_id(node_id)
            graph.add_node(
                PlanNode(
                    node_id=destroy_id,
                    kind=node.kind,
                    name=node.name,
                    context=entry.context or node.context,
                    attributes=dict(entry.attributes),
                    route_table=node.route_table,
                )
            )
            operations[destroy_id] = Operation.destroy
            graph.add_edge(destroy_id, node_id)

        for node_id, ancestors in replaced_ancestors.items():
            for ancestor in ancestors:
                graph.add_edge(destroy_node_id(node_id), destroy_node_id(ancestor))

    def _add_destroys(
        self,
        graph: ExecutionGraph,
        snapshot: StateSnapshot,
        operations: Dict[str, Operation],
    ) -> None:
        """
        Add destroy nodes for snapshot entries with no desired node.

        Edges are inverted relative to creation: if X depended on Y, then
        destroy X runs before destroy Y. A removed entity that depended on
        a node being recreated must be gone before the old resource of that
        node is deleted.
        """

        desired_keys = {node.key for node in graph.nodes.values()}
        removed: Dict[SnapshotKey, str] = {}

        for key in snapshot.keys():
            if key in desired_keys:
                continue
            kind, name = key
            entry = snapshot.entries[key]
            node_id = entity_node_id(kind, name)
            route_table = None
            if kind in {EntityKind.route, EntityKind.route_table_association}:
                route_table = name.split(":", 1)[0]
            graph.add_node(
                PlanNode(
                    node_id=node_id,
                    kind=kind,
                    name=name,
                    context=entry.context,
                    attributes=dict(entry.attributes),
                    route_table=route_table,
                )
            )
            operations[node_id] = Operation.destroy
            removed[key] = node_id

        for key, node_id in removed.items():
            for raw in snapshot.entries[key].depends_on:
                kind_value, _, dep_name = raw.partition("/")
                dep_id = entity_node_id(EntityKind(kind_value), dep_name)
                if dep_id in removed.values():
                    graph.add_edge(node_id, dep_id)
                elif operations.get(dep_id) == Operation.recreate:
                    graph.add_edge(node_id, destroy_node_id(dep_id))

        graph.ensure_acyclic()


def snapshot_dependencies(graph: ExecutionGraph, node_id: str) -> List[str]:
    """Snapshot keys, encoded kind/name, that node_id depends on."""
    out: Set[str] = set()
    own = graph.nodes[node_id].key
    for dep in graph.dependencies(node_id):
        dep_node = graph.nodes.get(dep)
        if dep_node is None or dep_node.role == NodeRole.verify or dep_node.key == own:
            continue
        out.add(f"{dep_node.kind.value}/{dep_node.name}")
    return sorted(out)


def apply_results(
    plan: ReconcilePlan,
    results: Mapping[str, NodeResult],
    peering_states: Mapping[str, PeeringState],
) -> StateSnapshot:
    """
    Fold node outcomes into a new snapshot.

    Nodes are folded in creation order so the destroy half of a recreate
    drops the old entry before the create half records the new one. When
    only the destroy half succeeded the entry stays dropped and the next
    apply creates the resource again.
    """

    snapshot = plan.prior.copy()
    graph = plan.graph

    for node_id in graph.topological_order():
        node = graph.nodes[node_id]
        op = plan.operations[node_id]
        result = results.get(node_id)
        if node.role == NodeRole.verify:
            continue

        if node.role == NodeRole.accept:
            entry = snapshot.get(node.key)
            state = peering_states.get(node.name)
            if entry is not None and state is not None:
                entry.status = state.value
            continue

        if result is None:
            continue

        if result.status == NodeStatus.succeeded and op == Operation.destroy:
            snapshot.remove(node.key)
            continue

        if result.status == NodeStatus.succeeded or (op == Operation.noop and result.status == NodeStatus.skipped):
            prior = snapshot.get(node.key)
            status = "available"
            if node.kind == EntityKind.peering_connection and node.name in peering_states:
                status = peering_states[node.name].value
            elif op == Operation.noop and prior is not None:
                status = prior.status
            snapshot.put(
                node.key,
                SnapshotEntry(
                    remote_id=result.remote_id or (prior.remote_id if prior else ""),
                    attribute_hash=attribute_hash(node.attributes),
                    status=status,
                    context=node.context,
                    attributes=to_json_safe(node.attributes),
                    depends_on=snapshot_dependencies(graph, node_id),
                ),
            )

    return snapshot
