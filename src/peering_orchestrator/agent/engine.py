"""
Apply engine.

This engine coordinates:
graph build, route and CIDR validation, reconciliation against the
snapshot, scheduled execution, snapshot update, and the apply report.

Determinism and safety
Every structural error, whether an ill typed or missing reference, a
cycle, a premature route, or a CIDR conflict, is raised from plan() before
any mutating remote call. Remote errors never escape apply(). They are
recorded per node in the report.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

import structlog

from peering_orchestrator.agent.execution_mode import ExecutionMode
from peering_orchestrator.agent.report import ApplyReport, build_report
from peering_orchestrator.core.errors import HandshakeError
from peering_orchestrator.core.types import NodeResult, NodeStatus
from peering_orchestrator.execution.base import AdapterFactory, CloudProviderAdapter, SchedulerConfig
from peering_orchestrator.execution.scheduler import ExecutionScheduler
from peering_orchestrator.peering.handshake import HandshakeRegistry, PeeringState, state_from_provider
from peering_orchestrator.planner.graph import ExecutionGraph, build_execution_graph, resolve_references
from peering_orchestrator.planner.reconcile import ReconcilePlan, Reconciler, apply_results
from peering_orchestrator.planner.validation import ValidationResult, ensure_valid
from peering_orchestrator.state.snapshot import StateSnapshot
from peering_orchestrator.topology.store import TopologyStore

logger = structlog.get_logger("peering_orchestrator.engine")


@dataclass(frozen=True)
class ApplyPlan:
    """
    Everything decided before execution.

    graph
    Execution graph including destroy nodes.

    reconcile
    Operation per node.

    validation
    Validator output, including non blocking warnings.
    """

    graph: ExecutionGraph
    reconcile: ReconcilePlan
    validation: ValidationResult


@dataclass(frozen=True)
class ApplyResult:
    ok: bool
    report: ApplyReport
    plan: ApplyPlan
    snapshot: StateSnapshot
    peering_states: Dict[str, PeeringState]


def known_peering_states(snapshot: StateSnapshot) -> Dict[str, PeeringState]:
    """Last observed handshake state of each peering connection in the snapshot."""
    out: Dict[str, PeeringState] = {}
    for name, status in snapshot.peering_states().items():
        try:
            out[name] = state_from_provider(status)
        except HandshakeError:
            logger.warning("snapshot_unknown_peering_status", peering=name, status=status)
    return out


class ApplyEngine:
    """
    Apply engine.

    adapter_factory
    Builds one adapter per AccountContext.

    config
    Scheduler configuration, including retry, polling and the peering
    acceptance timeout.

    mode
    apply or dry_run.
    """

    def __init__(
        self,
        adapter_factory: AdapterFactory,
        config: SchedulerConfig | None = None,
        mode: ExecutionMode = ExecutionMode.apply,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = adapter_factory
        self._config = config or SchedulerConfig()
        self._mode = mode
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._scheduler: ExecutionScheduler | None = None
        self._cancel_requested = False

    def _adapters(self, store: TopologyStore) -> Dict[str, CloudProviderAdapter]:
        return {name: self._factory.for_context(ctx) for name, ctx in sorted(store.contexts.items())}

    def plan(
        self,
        store: TopologyStore,
        snapshot: StateSnapshot,
        adapters: Dict[str, CloudProviderAdapter] | None = None,
    ) -> ApplyPlan:
        """
        Build, validate and reconcile.

        Steps
        1) typed reference resolution
        2) route and CIDR validation
        3) graph build with the premature route and cycle checks
        4) reconcile each node against the snapshot
        """

        resolve_references(store)
        validation = ensure_valid(store)
        for warning in validation.warnings:
            logger.warning("validation_warning", detail=warning)
        graph = build_execution_graph(store, known_peering_states(snapshot))

        adapters = adapters if adapters is not None else self._adapters(store)
        reconcile = Reconciler(adapters, self._config.retry).plan(graph, snapshot)
        return ApplyPlan(graph=graph, reconcile=reconcile, validation=validation)

    def apply(self, store: TopologyStore, snapshot: StateSnapshot) -> ApplyResult:
        """
        Plan and execute.

        Returns the report and the new snapshot. The caller owns persisting
        the snapshot.
        """

        adapters = self._adapters(store)
        plan = self.plan(store, snapshot, adapters)
        order = plan.graph.topological_order()
        logger.info("apply_started", mode=self._mode.value, nodes=len(order), operations=plan.reconcile.counts())

        if self._mode == ExecutionMode.dry_run:
            results = {
                node_id: NodeResult(
                    node_id=node_id,
                    kind=plan.graph.nodes[node_id].kind,
                    name=plan.graph.nodes[node_id].name,
                    context=plan.graph.nodes[node_id].context,
                    operation=plan.reconcile.operations[node_id],
                    status=NodeStatus.skipped,
                    reason="dry run",
                )
                for node_id in order
            }
            report = build_report(order, results)
            return ApplyResult(
                ok=True,
                report=report,
                plan=plan,
                snapshot=snapshot,
                peering_states=known_peering_states(snapshot),
            )

        handshakes = HandshakeRegistry()
        for name, state in known_peering_states(snapshot).items():
            handshakes.get_or_create(name, state)

        scheduler = ExecutionScheduler(
            plan.reconcile,
            adapters,
            store,
            self._config,
            handshakes,
            sleep=self._sleep,
            clock=self._clock,
        )
        with self._lock:
            self._scheduler = scheduler
            if self._cancel_requested:
                scheduler.cancel()

        try:
            outcome = scheduler.run()
        finally:
            with self._lock:
                self._scheduler = None
                self._cancel_requested = False

        states = handshakes.states()
        new_snapshot = apply_results(plan.reconcile, outcome.results, states)
        report = build_report(order, outcome.results, outcome.cancelled)
        logger.info("apply_finished", summary=report.summary, cancelled=outcome.cancelled)
        return ApplyResult(
            ok=report.ok and not outcome.cancelled,
            report=report,
            plan=plan,
            snapshot=new_snapshot,
            peering_states=states,
        )

    def cancel(self) -> None:
        """Cancel the running apply, or the next one if none is running yet."""
        with self._lock:
            self._cancel_requested = True
            if self._scheduler is not None:
                self._scheduler.cancel()
