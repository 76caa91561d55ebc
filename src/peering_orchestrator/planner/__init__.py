"""
Planner package.

This makes the planner folder an explicit package so both Python and mypy
resolve modules consistently.
"""

from peering_orchestrator.planner.graph import ExecutionGraph, build_execution_graph
from peering_orchestrator.planner.reconcile import ReconcilePlan, Reconciler
from peering_orchestrator.planner.validation import ValidationResult, ensure_valid, validate_topology

__all__ = [
    "ExecutionGraph",
    "ReconcilePlan",
    "Reconciler",
    "ValidationResult",
    "build_execution_graph",
    "ensure_valid",
    "validate_topology",
]
