"""
Peering handshake state machine.

A peering connection is created by the requester context and becomes
usable only after the accepter context accepts it.

States
requested
  The requester's create call returned.

pending_acceptance
  The provider acknowledged the request exists and is waiting for the
  accepter.

active
  The accepter accepted. Routes through the connection are now valid.

rejected, deleted
  Terminal. Reachable from any non terminal state. A connection that is
  never accepted within the configured wait is rejected.

This machine is independent of the generic create/update/destroy lifecycle
the reconciliation layer applies to every entity.
"""

from __future__ import annotations

import threading
from enum import StrEnum

import structlog

from peering_orchestrator.core.errors import HandshakeError

logger = structlog.get_logger("peering_orchestrator.peering")


class PeeringState(StrEnum):
    requested = "requested"
    pending_acceptance = "pending_acceptance"
    active = "active"
    rejected = "rejected"
    deleted = "deleted"


TERMINAL_STATES = frozenset({PeeringState.rejected, PeeringState.deleted})

_FORWARD = {
    PeeringState.requested: PeeringState.pending_acceptance,
    PeeringState.pending_acceptance: PeeringState.active,
}

_ORDER = (PeeringState.requested, PeeringState.pending_acceptance, PeeringState.active)

# Provider status strings, including the AWS spellings, mapped to our states.
_PROVIDER_STATUS = {
    "initiating-request": PeeringState.requested,
    "requested": PeeringState.requested,
    "provisioning": PeeringState.pending_acceptance,
    "pending-acceptance": PeeringState.pending_acceptance,
    "pending_acceptance": PeeringState.pending_acceptance,
    "active": PeeringState.active,
    "rejected": PeeringState.rejected,
    "failed": PeeringState.rejected,
    "expired": PeeringState.rejected,
    "deleting": PeeringState.deleted,
    "deleted": PeeringState.deleted,
}


def state_from_provider(status: str) -> PeeringState:
    """Map a provider status string to a PeeringState."""
    try:
        return _PROVIDER_STATUS[status.strip().lower()]
    except KeyError:
        raise HandshakeError(f"unknown peering status {status!r}") from None


class PeeringHandshake:
    """
    Handshake for one peering connection.

    Transitions are guarded by a lock because the requester and accepter
    sides run on different worker pools.
    """

    def __init__(self, name: str, state: PeeringState = PeeringState.requested) -> None:
        self.name = name
        self._state = state
        self._reason = ""
        self._lock = threading.Lock()

    @property
    def state(self) -> PeeringState:
        return self._state

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def can_route(self) -> bool:
        """Routes through this connection are valid only while active."""
        return self._state == PeeringState.active

    def _advance(self, target: PeeringState) -> None:
        with self._lock:
            if self._state in _ORDER and _ORDER.index(self._state) >= _ORDER.index(target):
                return
            if self._state in TERMINAL_STATES:
                raise HandshakeError(
                    f"peering {self.name} is {self._state} and cannot move to {target}"
                )
            if _FORWARD.get(self._state) != target:
                raise HandshakeError(f"peering {self.name} cannot move from {self._state} to {target}")
            previous = self._state
            self._state = target
        logger.info("peering_transition", peering=self.name, previous=previous.value, state=target.value)

    def acknowledge(self) -> None:
        """The provider confirmed the request exists."""
        self._advance(PeeringState.pending_acceptance)

    def activate(self) -> None:
        """The accepter accepted the request."""
        self._advance(PeeringState.active)

    def reject(self, reason: str) -> None:
        self._terminate(PeeringState.rejected, reason)

    def delete(self, reason: str = "deleted on request") -> None:
        self._terminate(PeeringState.deleted, reason)

    def _terminate(self, target: PeeringState, reason: str) -> None:
        with self._lock:
            if self._state in TERMINAL_STATES:
                if self._state == target:
                    return
                raise HandshakeError(f"peering {self.name} is already {self._state}")
            previous = self._state
            self._state = target
            self._reason = reason
        logger.warning(
            "peering_terminated",
            peering=self.name,
            previous=previous.value,
            state=target.value,
            reason=reason,
        )

    def observe(self, provider_status: str) -> PeeringState:
        """
        Fold a provider reported status into the machine.

        Forward progress is applied one step at a time so an observed
        active on a requested handshake passes through pending_acceptance.
        Observations behind the current state are ignored.
        """

        observed = state_from_provider(provider_status)
        if observed in TERMINAL_STATES:
            self._terminate(observed, f"provider reported {provider_status}")
            return self._state

        while True:
            current = self._state
            if current not in _ORDER or _ORDER.index(current) >= _ORDER.index(observed):
                return current
            self._advance(_FORWARD[current])


class HandshakeRegistry:
    """All handshakes of one apply, keyed by peering connection name."""

    def __init__(self) -> None:
        self._items: dict[str, PeeringHandshake] = {}
        self._lock = threading.Lock()

    def get_or_create(self, name: str, state: PeeringState = PeeringState.requested) -> PeeringHandshake:
        with self._lock:
            if name not in self._items:
                self._items[name] = PeeringHandshake(name, state)
            return self._items[name]

    def replace(self, name: str, state: PeeringState = PeeringState.requested) -> PeeringHandshake:
        with self._lock:
            self._items[name] = PeeringHandshake(name, state)
            return self._items[name]

    def get(self, name: str) -> PeeringHandshake | None:
        with self._lock:
            return self._items.get(name)

    def states(self) -> dict[str, PeeringState]:
        with self._lock:
            return {name: hs.state for name, hs in self._items.items()}
