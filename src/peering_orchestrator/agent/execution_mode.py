"""
Execution modes.

apply
Run the reconciled plan against the provider adapters.

dry_run
Build the graph, validate, and reconcile against the snapshot, but make no
mutating call. Every node is reported as skipped with its planned
operation.
"""

from __future__ import annotations

from enum import StrEnum


class ExecutionMode(StrEnum):
    apply = "apply"
    dry_run = "dry_run"
