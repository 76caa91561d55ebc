"""
peering_orchestrator

This package is a provisioning orchestration engine for multi account,
multi region network topologies joined by peering connections.

We keep modules small and well separated:
core contains the topology model, errors and serialization
topology contains the store, the typed symbol table and topology sources
planner contains the dependency graph, validation and reconciliation
peering contains the cross account acceptance handshake
execution contains provider adapters, retry helpers and the scheduler
state contains the persisted snapshot
agent contains the apply engine, report and runner loop
"""
