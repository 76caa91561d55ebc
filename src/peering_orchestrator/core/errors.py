"""
Error taxonomy.

We separate error types so callers can react correctly.

Structural errors mean the desired topology itself cannot be realized.
They are raised before any remote call and abort the whole apply:
ValidationError, TypeMismatchError, UnresolvedReferenceError,
CyclicDependencyError, PrematureRouteError.

Remote errors are node scoped. The scheduler records them against one node,
blocks that node's dependents, and lets independent subgraphs continue:
RemoteTransientError is retried with backoff, RemoteStateError is not,
PreconditionError aborts a destructive action before it starts.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator exceptions."""


class StructuralError(OrchestratorError):
    """Base class for errors that make the whole apply unrealizable."""


class ValidationError(StructuralError):
    """
    Raised when CIDR or routing invariants are violated.

    errors holds every blocking finding so operators can fix them in one pass.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "topology validation failed")


class TypeMismatchError(StructuralError):
    """Raised when a reference names an entity of the wrong kind."""

    def __init__(self, entity: str, field: str, expected: str, actual: str, name: str) -> None:
        self.entity = entity
        self.field = field
        self.expected = expected
        self.actual = actual
        self.name = name
        super().__init__(
            f"{entity} field {field} expects a {expected} reference but {name!r} is a {actual}"
        )


class UnresolvedReferenceError(StructuralError):
    """Raised when a reference names nothing in the symbol table."""

    def __init__(self, entity: str, field: str, kind: str, name: str) -> None:
        self.entity = entity
        self.field = field
        self.kind = kind
        self.name = name
        super().__init__(f"{entity} field {field} references unknown {kind} {name!r}")


class CyclicDependencyError(StructuralError):
    """
    Raised when the dependency graph contains a cycle.

    cycle is the shortest offending cycle as a list of node ids where the
    first node is repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


class PrematureRouteError(StructuralError):
    """Raised when a route targets a peering connection that cannot reach active in this plan."""

    def __init__(self, route: str, peering: str, state: str) -> None:
        self.route = route
        self.peering = peering
        self.state = state
        super().__init__(
            f"route {route} targets peering connection {peering} in state {state}, "
            "routes require an active connection"
        )


class RemoteError(OrchestratorError):
    """Base class for failures reported by a cloud provider adapter."""


class RemoteTransientError(RemoteError):
    """Raised for throttling or eventual consistency lag. Safe to retry."""


class RemoteStateError(RemoteError):
    """Raised when remote state makes the call impossible, such as a missing key pair."""


class PreconditionError(OrchestratorError):
    """Raised when a destroy guard fails, such as a zone that still holds custom records."""


class HandshakeError(OrchestratorError):
    """Raised for an illegal peering handshake transition."""
