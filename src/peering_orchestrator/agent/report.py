"""
Apply report.

The caller facing contract for what happened during an apply: one entry per
graph node in creation order, plus summary counts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping

from peering_orchestrator.core.types import NodeResult, NodeStatus, Operation


@dataclass(frozen=True)
class ReportEntry:
    """
    One line of the report.

    entity is the node id, such as segment.vpc-a or route.rt-a:10.1.0.0/16.
    error is empty unless the node failed or was blocked.
    """

    entity: str
    operation: Operation
    status: NodeStatus
    error: str = ""
    context: str = ""
    remote_id: str = ""


@dataclass(frozen=True)
class ApplyReport:
    entries: List[ReportEntry]
    summary: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """True when nothing failed or was blocked."""
        return self.summary.get(NodeStatus.failed.value, 0) == 0 and self.summary.get(
            NodeStatus.blocked.value, 0
        ) == 0

    def entry(self, entity: str) -> ReportEntry:
        for e in self.entries:
            if e.entity == entity:
                return e
        raise KeyError(entity)

    def with_status(self, status: NodeStatus) -> List[ReportEntry]:
        return [e for e in self.entries if e.status == status]

    def operations(self) -> List[Operation]:
        return [e.operation for e in self.entries]


def build_report(
    order: Iterable[str],
    results: Mapping[str, NodeResult],
    cancelled: bool = False,
) -> ApplyReport:
    entries: List[ReportEntry] = []
    for node_id in order:
        res = results.get(node_id)
        if res is None:
            continue
        error = res.reason if res.status in {NodeStatus.failed, NodeStatus.blocked} else ""
        entries.append(
            ReportEntry(
                entity=node_id,
                operation=res.operation,
                status=res.status,
                error=error,
                context=res.context,
                remote_id=res.remote_id,
            )
        )

    summary = {s.value: 0 for s in NodeStatus}
    for e in entries:
        summary[e.status.value] += 1
    return ApplyReport(entries=entries, summary=summary, cancelled=cancelled)
