"""
Apply runner.

Purpose
Continuously:
- Load the desired topology
- Load the state snapshot
- Run the apply engine
- Persist the new snapshot

This is the composition layer of the system. Re-running against an
unchanged topology is a no-op, so the loop doubles as drift correction.

Core engine remains pure.
Runner handles environment configuration.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import structlog

from peering_orchestrator.agent.engine import ApplyEngine, ApplyResult
from peering_orchestrator.agent.execution_mode import ExecutionMode
from peering_orchestrator.core.errors import StructuralError
from peering_orchestrator.execution.base import AdapterFactory, SchedulerConfig
from peering_orchestrator.state.snapshot import SnapshotStore
from peering_orchestrator.topology.source import TopologySource

logger = structlog.get_logger("peering_orchestrator.runner")


@dataclass(frozen=True)
class RunnerConfig:
    """
    Runner configuration.

    interval_seconds
    Sleep duration between cycles.

    snapshot_path
    Where the state snapshot lives.

    mode
    apply or dry_run. A dry run never writes the snapshot.
    """

    interval_seconds: int = 300
    snapshot_path: Path = Path("state/snapshot.json")
    mode: ExecutionMode = ExecutionMode.apply


class ApplyRunner:
    """
    Top level apply loop.

    This is not the apply engine.
    This is the runtime loop.
    """

    def __init__(
        self,
        source: TopologySource,
        adapter_factory: AdapterFactory,
        config: RunnerConfig | None = None,
        scheduler_config: SchedulerConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or RunnerConfig()
        self._source = source
        self._snapshots = SnapshotStore(self._config.snapshot_path)
        self._sleep = sleep
        self._engine = ApplyEngine(
            adapter_factory, scheduler_config, self._config.mode, sleep=sleep, clock=clock
        )

    @property
    def engine(self) -> ApplyEngine:
        return self._engine

    def run_cycle(self) -> ApplyResult:
        """
        Execute one apply cycle.

        Structural errors propagate: they mean the desired topology itself
        is wrong and retrying will not help.
        """

        store = self._source.load()
        snapshot = self._snapshots.load()

        try:
            result = self._engine.apply(store, snapshot)
        except StructuralError as exc:
            logger.error("apply_rejected", error=str(exc), error_type=type(exc).__name__)
            raise

        if self._config.mode == ExecutionMode.apply:
            self._snapshots.save(result.snapshot)

        for entry in result.report.entries:
            if entry.error:
                logger.warning(
                    "apply_node_problem",
                    entity=entry.entity,
                    operation=entry.operation.value,
                    status=entry.status.value,
                    error=entry.error,
                )
        logger.info("apply_cycle_done", ok=result.ok, summary=result.report.summary)
        return result

    def run_forever(self) -> None:
        """
        Continuous loop execution.
        """

        while True:
            try:
                self.run_cycle()
            except StructuralError:
                logger.error("apply_cycle_skipped", reason="topology rejected, waiting for a fix")
            self._sleep(self._config.interval_seconds)
