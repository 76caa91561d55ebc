"""
Execution scheduler.

The scheduler walks a reconciled execution graph and runs every node on
the worker pool of the node's AccountContext.

Behavior
1) A node is dispatched once every dependency succeeded or was skipped as
   a no-op.
2) One bounded ThreadPoolExecutor per AccountContext. Nodes of different
   contexts never share a worker, and concurrency per account is capped.
3) Route and association writes into the same route table are serialized
   with a per table lock, held for one entry write.
4) Remote calls are retried with bounded backoff only for transient errors.
   Every other failure marks the node failed at once.
5) Dependents of a failed node, transitively, are marked blocked and never
   attempted. Independent subgraphs keep running.
6) cancel() stops dispatch. Nodes not yet started are marked skipped and
   in flight nodes are allowed to finish. There is no rollback.

The peering handshake is driven from here: the create node waits for the
provider to acknowledge the request, and the accept node, on the
accepter's pool, accepts and waits for active within the configured bound.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from peering_orchestrator.core.errors import (
    HandshakeError,
    PreconditionError,
    RemoteStateError,
)
from peering_orchestrator.core.types import (
    SYSTEM_RECORD_TYPES,
    AccountContext,
    EntityKind,
    KeyPairRef,
    NetworkSegment,
    NodeResult,
    NodeStatus,
    Operation,
    PeeringConnection,
    Ref,
    RemoteState,
)
from peering_orchestrator.execution.base import CloudProviderAdapter, SchedulerConfig
from peering_orchestrator.execution.retry import PollTimeout, call_with_retry, poll_until
from peering_orchestrator.peering.handshake import HandshakeRegistry, PeeringState, state_from_provider
from peering_orchestrator.planner.graph import NodeRole, PlanNode
from peering_orchestrator.planner.reconcile import ReconcilePlan
from peering_orchestrator.topology.store import TopologyStore

logger = structlog.get_logger("peering_orchestrator.scheduler")

_NOOP_REASON = "no-op"
_CANCELLED = "cancelled"

# Kinds whose create returns before the resource is usable.
_READY_STATUS = {EntityKind.compute_instance: "running"}


@dataclass
class ScheduleResult:
    """
    Everything the scheduler observed.

    results maps node id to its final NodeResult.
    completion_order lists node ids in the order they finished running,
    including blocked and skipped nodes at the moment they were decided.
    """

    results: Dict[str, NodeResult]
    completion_order: List[str]
    remote_ids: Dict[Tuple[EntityKind, str], str]
    cancelled: bool = False


class _NodeRun:
    """Mutable per node bookkeeping used inside a worker."""

    def __init__(self) -> None:
        self.attempts = 0
        self.remote_id = ""

    def count(self, _: int) -> None:
        self.attempts += 1


class ExecutionScheduler:
    """
    Run a ReconcilePlan against per context adapters.

    adapters maps AccountContext name to its adapter.
    store is the desired topology, used to resolve peer contexts.
    Remote ids start from the prior snapshot and are updated as nodes create
    and delete resources.
    """

    def __init__(
        self,
        plan: ReconcilePlan,
        adapters: Mapping[str, CloudProviderAdapter],
        store: TopologyStore,
        config: SchedulerConfig | None = None,
        handshakes: HandshakeRegistry | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._plan = plan
        self._graph = plan.graph
        self._adapters = adapters
        self._store = store
        self._config = config or SchedulerConfig()
        self.handshakes = handshakes or HandshakeRegistry()
        self._sleep = sleep
        self._clock = clock

        self._remote_ids: Dict[Tuple[EntityKind, str], str] = {
            key: entry.remote_id for key, entry in plan.prior.entries.items()
        }
        self._ids_lock = threading.Lock()
        self._table_locks: Dict[str, threading.Lock] = {
            n.route_table: threading.Lock() for n in self._graph.nodes.values() if n.route_table
        }
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread."""
        logger.warning("apply_cancel_requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> ScheduleResult:
        order = self._graph.topological_order()
        results: Dict[str, NodeResult] = {}
        completion: List[str] = []
        pending: List[str] = list(order)
        running: Dict[Future, str] = {}
        pools: Dict[str, ThreadPoolExecutor] = {}

        def finish(node_id: str, result: NodeResult) -> None:
            results[node_id] = result
            completion.append(node_id)
            log = logger.warning if result.status in {NodeStatus.failed, NodeStatus.blocked} else logger.info
            log(
                "node_finished",
                node=node_id,
                context=result.context,
                operation=result.operation.value,
                status=result.status.value,
                reason=result.reason,
                attempts=result.attempts,
            )

        try:
            while pending or running:
                progressed = True
                while progressed:
                    progressed = False
                    for node_id in list(pending):
                        decision = self._decide(node_id, results)
                        if decision is None:
                            continue
                        pending.remove(node_id)
                        progressed = True
                        if isinstance(decision, NodeResult):
                            finish(node_id, decision)
                            continue
                        node = self._graph.nodes[node_id]
                        pool = pools.get(node.context)
                        if pool is None:
                            pool = ThreadPoolExecutor(
                                max_workers=self._config.max_workers_per_context,
                                thread_name_prefix=f"ctx-{node.context}",
                            )
                            pools[node.context] = pool
                        logger.info("node_dispatched", node=node_id, context=node.context)
                        running[pool.submit(self._execute, node, decision)] = node_id

                if not running:
                    if pending:
                        # Only reachable if a dependency never resolves, which the acyclic graph rules out.
                        for node_id in list(pending):
                            pending.remove(node_id)
                            finish(node_id, self._result(node_id, NodeStatus.blocked, "unresolved dependency"))
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for fut in done:
                    node_id = running.pop(fut)
                    finish(node_id, fut.result())
        finally:
            for pool in pools.values():
                pool.shutdown(wait=True)

        ordered = {n: results[n] for n in order if n in results}
        return ScheduleResult(
            results=ordered,
            completion_order=completion,
            remote_ids=dict(self._remote_ids),
            cancelled=self.cancelled,
        )

    def _decide(self, node_id: str, results: Mapping[str, NodeResult]) -> Optional[Any]:
        """
        Decide what to do with a pending node.

        Returns None while dependencies are still outstanding, a NodeResult
        when the node is settled without running, or the Operation to run.
        """

        blocked_by: List[str] = []
        cancelled_dep = False
        for dep in self._graph.dependencies(node_id):
            res = results.get(dep)
            if res is None:
                return None
            if res.status in {NodeStatus.failed, NodeStatus.blocked}:
                blocked_by.append(dep)
            elif res.status == NodeStatus.skipped and res.reason == _CANCELLED:
                cancelled_dep = True

        if blocked_by:
            return self._result(node_id, NodeStatus.blocked, "blocked by " + ", ".join(blocked_by))
        if cancelled_dep or self._cancel.is_set():
            return self._result(node_id, NodeStatus.skipped, _CANCELLED)

        op = self._plan.operations[node_id]
        if op == Operation.noop:
            node = self._graph.nodes[node_id]
            return self._result(
                node_id, NodeStatus.skipped, _NOOP_REASON, remote_id=self._remote_ids.get(node.key, "")
            )
        return op

    def _result(self, node_id: str, status: NodeStatus, reason: str = "", **kw: Any) -> NodeResult:
        node = self._graph.nodes[node_id]
        return NodeResult(
            node_id=node_id,
            kind=node.kind,
            name=node.name,
            context=node.context,
            operation=self._plan.operations[node_id],
            status=status,
            reason=reason,
            **kw,
        )

    def _execute(self, node: PlanNode, op: Operation) -> NodeResult:
        run = _NodeRun()
        try:
            adapter = self._adapter(node.context)
            if node.role == NodeRole.accept:
                self._accept(node, adapter, run)
            elif node.role == NodeRole.verify:
                self._verify(node, adapter, run)
            elif node.route_table:
                with self._table_locks[node.route_table]:
                    self._provision(node, op, adapter, run)
            else:
                self._provision(node, op, adapter, run)
        except Exception as exc:  # noqa: BLE001
            return self._result(
                node.node_id,
                NodeStatus.failed,
                f"{type(exc).__name__}: {exc}",
                remote_id=run.remote_id,
                attempts=run.attempts,
            )
        return self._result(node.node_id, NodeStatus.succeeded, remote_id=run.remote_id, attempts=run.attempts)

    def _adapter(self, context: str) -> CloudProviderAdapter:
        adapter = self._adapters.get(context)
        if adapter is None:
            raise RemoteStateError(f"no adapter for account context {context}")
        return adapter

    def _call(self, run: _NodeRun, label: str, fn: Callable[[], Any]) -> Any:
        return call_with_retry(fn, self._config.retry, sleep=self._sleep, label=label, on_attempt=run.count)

    def _provision(self, node: PlanNode, op: Operation, adapter: CloudProviderAdapter, run: _NodeRun) -> None:
        if op in {Operation.create, Operation.recreate}:
            # The old resource of a recreate is deleted by its own destroy node.
            self._create(node, adapter, run)
        elif op == Operation.update:
            remote_id = self._remote_id(node.key)
            run.remote_id = remote_id
            self._call(run, f"update {node.node_id}", lambda: adapter.update(remote_id, self._payload(node)))
        elif op == Operation.destroy:
            self._destroy(node, adapter, run)
        else:
            raise ValueError(f"unsupported operation {op} for {node.node_id}")

    def _create(self, node: PlanNode, adapter: CloudProviderAdapter, run: _NodeRun) -> None:
        payload = self._payload(node)
        remote_id = self._call(run, f"create {node.node_id}", lambda: adapter.create(node.kind, payload))
        run.remote_id = remote_id
        with self._ids_lock:
            self._remote_ids[node.key] = remote_id

        if node.kind == EntityKind.peering_connection:
            self._await_acknowledgement(node, adapter, remote_id)
        elif node.kind in _READY_STATUS:
            wanted = _READY_STATUS[node.kind]
            poll_until(
                lambda: adapter.describe(remote_id),
                lambda s: s.status == wanted,
                self._config.poll,
                sleep=self._sleep,
                clock=self._clock,
                label=f"{node.node_id} {wanted}",
            )

    def _destroy(self, node: PlanNode, adapter: CloudProviderAdapter, run: _NodeRun) -> None:
        remote_id = self._remote_id(node.key)
        run.remote_id = remote_id

        if node.kind == EntityKind.dns_zone:
            state = self._call(run, f"describe {node.node_id}", lambda: adapter.describe(remote_id))
            self._check_zone_empty(node, state)

        self._call(run, f"delete {node.node_id}", lambda: adapter.delete(remote_id))
        with self._ids_lock:
            self._remote_ids.pop(node.key, None)
        run.remote_id = ""

        if node.kind == EntityKind.peering_connection:
            handshake = self.handshakes.get_or_create(node.name)
            if not handshake.is_terminal:
                handshake.delete()

    def _check_zone_empty(self, node: PlanNode, state: RemoteState) -> None:
        if not state.exists:
            return
        apex = str(state.attributes.get("domain") or node.attributes.get("domain") or "").rstrip(".")
        extra = [
            r
            for r in state.attributes.get("records", [])
            if r.get("type") not in SYSTEM_RECORD_TYPES or str(r.get("name", "")).rstrip(".") != apex
        ]
        if extra:
            names = ", ".join(f"{r.get('type')} {r.get('name')}" for r in extra)
            raise PreconditionError(f"zone {node.name} still holds records beyond NS and SOA: {names}")

    def _await_acknowledgement(self, node: PlanNode, adapter: CloudProviderAdapter, remote_id: str) -> None:
        # Every created connection starts a fresh handshake, whatever the snapshot said.
        handshake = self.handshakes.replace(node.name)
        if not self._config.wait_for_acknowledgement:
            return
        try:
            state = poll_until(
                lambda: adapter.describe(remote_id),
                lambda s: state_from_provider(s.status) != PeeringState.requested,
                self._config.poll,
                sleep=self._sleep,
                clock=self._clock,
                label=f"{node.node_id} acknowledgement",
            )
        except PollTimeout as exc:
            handshake.reject(str(exc))
            raise
        handshake.observe(state.status)
        if handshake.state == PeeringState.rejected:
            raise RemoteStateError(f"peering {node.name} was rejected: {handshake.reason}")

    def _accept(self, node: PlanNode, adapter: CloudProviderAdapter, run: _NodeRun) -> None:
        remote_id = self._remote_id(node.key)
        run.remote_id = remote_id
        handshake = self.handshakes.get_or_create(node.name)

        current = self._call(run, f"describe {node.node_id}", lambda: adapter.describe(remote_id))
        if not current.exists:
            raise RemoteStateError(f"peering {node.name} ({remote_id}) is not visible to the accepter")
        handshake.observe(current.status)
        if handshake.state == PeeringState.active:
            return
        if handshake.is_terminal:
            raise RemoteStateError(f"peering {node.name} is {handshake.state}: {handshake.reason}")

        self._call(run, f"accept {node.node_id}", lambda: adapter.accept_peering(remote_id))

        try:
            state = poll_until(
                lambda: adapter.describe(remote_id),
                lambda s: state_from_provider(s.status) == PeeringState.active,
                self._config.poll,
                timeout=self._config.acceptance_timeout_seconds,
                sleep=self._sleep,
                clock=self._clock,
                label=f"{node.node_id} activation",
                stop=lambda s: state_from_provider(s.status) in {PeeringState.rejected, PeeringState.deleted},
            )
        except PollTimeout as exc:
            handshake.reject(
                f"not active within {self._config.acceptance_timeout_seconds:.0f}s of acceptance"
            )
            raise RemoteStateError(f"peering {node.name} rejected: {exc}") from exc

        handshake.observe(state.status)
        if handshake.state != PeeringState.active:
            raise RemoteStateError(f"peering {node.name} is {handshake.state}: {handshake.reason}")

    def _verify(self, node: PlanNode, adapter: CloudProviderAdapter, run: _NodeRun) -> None:
        kp = self._store.require(Ref(EntityKind.key_pair, node.name), KeyPairRef)
        state = self._call(run, f"describe {node.node_id}", lambda: adapter.describe(kp.key_name))
        if not state.exists:
            region = self._store.context(node.context).region
            raise RemoteStateError(
                f"key pair {kp.key_name} does not exist in region {region} of account context {node.context}"
            )
        run.remote_id = kp.key_name
        with self._ids_lock:
            self._remote_ids[node.key] = kp.key_name

    def _remote_id(self, key: Tuple[EntityKind, str]) -> str:
        with self._ids_lock:
            remote_id = self._remote_ids.get(key)
        if not remote_id:
            raise RemoteStateError(f"no remote id known for {key[0].value} {key[1]}")
        return remote_id

    def _payload(self, node: PlanNode) -> Dict[str, Any]:
        """
        Resolve desired attributes into an adapter payload.

        Refs become remote ids. A peering connection also carries the peer
        account and region so the provider can route the request, and the
        route target is checked against the handshake one last time.
        """

        payload: Dict[str, Any] = {}
        for key, value in node.attributes.items():
            if isinstance(value, Ref):
                payload[key] = self._remote_id((value.kind, value.name))
            elif isinstance(value, list) and value and all(isinstance(v, Ref) for v in value):
                payload[key] = [self._remote_id((v.kind, v.name)) for v in value]
            else:
                payload[key] = value

        if node.kind == EntityKind.route:
            target = node.attributes.get("target")
            if isinstance(target, Ref) and target.kind == EntityKind.peering_connection:
                hs = self.handshakes.get(target.name)
                if hs is not None and not hs.can_route:
                    raise HandshakeError(f"peering {target.name} is {hs.state}, route cannot be written")

        if node.kind == EntityKind.peering_connection and isinstance(node.entity, PeeringConnection):
            accepter = self._store.require(node.entity.accepter, NetworkSegment)
            peer: AccountContext = self._store.context(accepter.context)
            payload["peer_account_id"] = peer.account_id
            payload["peer_region"] = peer.region

        return payload
