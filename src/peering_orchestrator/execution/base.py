"""
Execution interfaces.

Goal
Define stable interfaces for remote calls without binding the engine to a
specific cloud SDK.

Design notes
One adapter instance serves exactly one AccountContext. Cross account
operations always go through two adapters, one per context, so credentials
never cross.

Adapters classify their own failures:
RemoteTransientError for throttling and eventual consistency lag,
RemoteStateError for anything retrying cannot fix. Any other exception is
treated as a state level failure by the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from peering_orchestrator.core.types import AccountContext, EntityKind, RemoteState


class CloudProviderAdapter(Protocol):
    """
    Minimal provider shaped client interface for one AccountContext.

    create
    Creates a resource of kind with fully resolved attributes and returns
    its remote id. References in attrs are already remote ids.

    describe
    Returns the current RemoteState for a remote id. Missing resources
    return RemoteState(exists=False) rather than raising.

    update
    Mutates a resource in place.

    delete
    Removes a resource.

    accept_peering
    Accepts a peering request. Only valid on the accepter context.
    """

    def create(self, kind: EntityKind, attrs: dict[str, Any]) -> str:
        """Create a resource and return its remote id."""

    def describe(self, remote_id: str) -> RemoteState:
        """Describe a resource by remote id."""

    def update(self, remote_id: str, attrs: dict[str, Any]) -> None:
        """Apply attribute changes in place."""

    def delete(self, remote_id: str) -> None:
        """Delete a resource."""

    def accept_peering(self, remote_id: str) -> None:
        """Accept a pending peering connection."""


class AdapterFactory(Protocol):
    """
    Create an adapter for an AccountContext.

    This decouples the scheduler from credential handling, endpoints and
    SDK session setup.
    """

    def for_context(self, context: AccountContext) -> CloudProviderAdapter:
        """Return a ready adapter for the given context."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff with jitter for transient failures.

    max_attempts counts the first call. Delay before attempt n+1 is
    min(max_delay, base_delay * multiplier ** (n - 1)) scaled by a random
    factor in [1 - jitter, 1].
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter: float = 0.5


@dataclass(frozen=True)
class PollPolicy:
    """
    Bounded polling of an external state transition.

    interval grows by multiplier up to max_interval. timeout is a hard
    ceiling on the total wait.
    """

    interval: float = 1.0
    multiplier: float = 1.5
    max_interval: float = 15.0
    timeout: float = 300.0


@dataclass(frozen=True)
class SchedulerConfig:
    """
    Scheduler configuration.

    max_workers_per_context
    Size of each AccountContext's worker pool. Bounds concurrent calls per
    account to respect provider rate limits.

    acceptance_timeout_seconds
    How long an accept node waits for a connection to report active before
    the handshake is rejected.

    wait_for_acknowledgement
    When True the peering create node polls until the provider reports the
    request as pending acceptance before it completes.
    """

    max_workers_per_context: int = 4
    acceptance_timeout_seconds: float = 300.0
    wait_for_acknowledgement: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    poll: PollPolicy = field(default_factory=PollPolicy)
