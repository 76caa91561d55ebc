"""
In memory cloud.

This adapter is used for tests and local simulations.
It behaves like a provider control plane shared by every account, so a
peering connection requested from one context can be accepted from another.

Features
- One InMemoryCloud acts as the AdapterFactory, each context gets its own
  adapter bound to its account and region
- Key pairs are scoped to one account and region and must be seeded, they
  are never created
- Peering requests start as initiating-request, move to pending-acceptance
  on the next describe, and become active once the accepter accepts
- DNS zones start with the system NS and SOA records
- Failures can be injected per operation and kind
- Every call is recorded so tests can assert ordering and that no call was
  made at all
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from peering_orchestrator.core.errors import RemoteStateError
from peering_orchestrator.core.types import AccountContext, EntityKind, RemoteState

_PREFIX = {
    EntityKind.segment: "vpc",
    EntityKind.subnet: "subnet",
    EntityKind.route_table: "rtb",
    EntityKind.route: "route",
    EntityKind.route_table_association: "rtbassoc",
    EntityKind.peering_connection: "pcx",
    EntityKind.security_rule: "sgr",
    EntityKind.compute_instance: "i",
    EntityKind.internet_gateway: "igw",
    EntityKind.dns_zone: "zone",
}

_READY_STATUS = {
    EntityKind.compute_instance: "running",
    EntityKind.peering_connection: "initiating-request",
}


@dataclass
class CloudCall:
    context: str
    op: str
    subject: str


@dataclass
class CloudResource:
    remote_id: str
    kind: EntityKind
    context: str
    attrs: Dict[str, Any]
    status: str
    records: List[Dict[str, str]] = field(default_factory=list)


class InMemoryCloud:
    """
    Shared provider state for every account and region.

    stall_acceptance
    When True, accept_peering returns but the connection never turns active.
    Used to exercise the acceptance timeout.

    on_call
    Optional hook called with every CloudCall before it is executed.
    """

    def __init__(self, stall_acceptance: bool = False) -> None:
        self.resources: Dict[str, CloudResource] = {}
        self.key_pairs: Dict[Tuple[str, str], Set[str]] = {}
        self.calls: List[CloudCall] = []
        self.stall_acceptance = stall_acceptance
        self.on_call: Optional[Callable[[CloudCall], None]] = None
        self._faults: Dict[Tuple[str, str], List[Exception]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._in_flight: Dict[str, int] = {}
        self.max_in_flight: Dict[str, int] = {}

    def for_context(self, context: AccountContext) -> "InMemoryCloudAdapter":
        return InMemoryCloudAdapter(cloud=self, context=context)

    def add_key_pair(self, account_id: str, region: str, key_name: str) -> None:
        with self._lock:
            self.key_pairs.setdefault((account_id, region), set()).add(key_name)

    def add_record(self, zone_id: str, record_type: str, name: str) -> None:
        with self._lock:
            self.resources[zone_id].records.append({"type": record_type, "name": name})

    def inject(self, op: str, subject: str, errors: List[Exception]) -> None:
        """
        Queue errors for an operation.

        subject is an EntityKind value for create, or a remote id or key
        name for the other operations. Each call pops one error until the
        queue is empty.
        """
        with self._lock:
            self._faults.setdefault((op, subject), []).extend(errors)

    def calls_for(self, op: str) -> List[CloudCall]:
        with self._lock:
            return [c for c in self.calls if c.op == op]

    def of_kind(self, kind: EntityKind) -> List[CloudResource]:
        with self._lock:
            return [r for r in self.resources.values() if r.kind == kind]

    def _enter(self, context: str, op: str, subject: str) -> None:
        call = CloudCall(context=context, op=op, subject=subject)
        with self._lock:
            self.calls.append(call)
            self._in_flight[context] = self._in_flight.get(context, 0) + 1
            self.max_in_flight[context] = max(self.max_in_flight.get(context, 0), self._in_flight[context])
        try:
            if self.on_call is not None:
                self.on_call(call)
            with self._lock:
                queue = self._faults.get((op, subject))
                if queue:
                    raise queue.pop(0)
        except BaseException:
            self._leave(context)
            raise

    def _leave(self, context: str) -> None:
        with self._lock:
            self._in_flight[context] -= 1

    def next_id(self, kind: EntityKind) -> str:
        return f"{_PREFIX.get(kind, kind.value)}-{next(self._ids):08x}"


@dataclass
class InMemoryCloudAdapter:
    """CloudProviderAdapter bound to one AccountContext of an InMemoryCloud."""

    cloud: InMemoryCloud
    context: AccountContext

    def create(self, kind: EntityKind, attrs: dict[str, Any]) -> str:
        self.cloud._enter(self.context.name, "create", kind.value)
        try:
            with self.cloud._lock:
                remote_id = self.cloud.next_id(kind)
                res = CloudResource(
                    remote_id=remote_id,
                    kind=kind,
                    context=self.context.name,
                    attrs=dict(attrs),
                    status=_READY_STATUS.get(kind, "available"),
                )
                if kind == EntityKind.dns_zone:
                    apex = str(attrs.get("domain", ""))
                    res.records = [{"type": "NS", "name": apex}, {"type": "SOA", "name": apex}]
                self.cloud.resources[remote_id] = res
                return remote_id
        finally:
            self.cloud._leave(self.context.name)

    def describe(self, remote_id: str) -> RemoteState:
        self.cloud._enter(self.context.name, "describe", remote_id)
        try:
            with self.cloud._lock:
                res = self.cloud.resources.get(remote_id)
                if res is None:
                    keys = self.cloud.key_pairs.get((self.context.account_id, self.context.region), set())
                    if remote_id in keys:
                        return RemoteState(exists=True, status="available")
                    return RemoteState(exists=False)

                if res.kind == EntityKind.peering_connection and res.status == "initiating-request":
                    res.status = "pending-acceptance"

                attributes = dict(res.attrs)
                if res.kind == EntityKind.dns_zone:
                    attributes["records"] = [dict(r) for r in res.records]
                return RemoteState(exists=True, status=res.status, attributes=attributes)
        finally:
            self.cloud._leave(self.context.name)

    def update(self, remote_id: str, attrs: dict[str, Any]) -> None:
        self.cloud._enter(self.context.name, "update", remote_id)
        try:
            with self.cloud._lock:
                res = self._owned(remote_id)
                res.attrs.update(attrs)
        finally:
            self.cloud._leave(self.context.name)

    def delete(self, remote_id: str) -> None:
        self.cloud._enter(self.context.name, "delete", remote_id)
        try:
            with self.cloud._lock:
                self._owned(remote_id)
                del self.cloud.resources[remote_id]
        finally:
            self.cloud._leave(self.context.name)

    def accept_peering(self, remote_id: str) -> None:
        self.cloud._enter(self.context.name, "accept_peering", remote_id)
        try:
            with self.cloud._lock:
                res = self.cloud.resources.get(remote_id)
                if res is None or res.kind != EntityKind.peering_connection:
                    raise RemoteStateError(f"peering connection {remote_id} not found")
                if (
                    res.attrs.get("peer_account_id") != self.context.account_id
                    or res.attrs.get("peer_region") != self.context.region
                ):
                    raise RemoteStateError(
                        f"peering connection {remote_id} can only be accepted by its accepter account"
                    )
                if res.status not in {"pending-acceptance", "active"}:
                    raise RemoteStateError(f"peering connection {remote_id} is {res.status}")
                if not self.cloud.stall_acceptance:
                    res.status = "active"
        finally:
            self.cloud._leave(self.context.name)

    def _owned(self, remote_id: str) -> CloudResource:
        res = self.cloud.resources.get(remote_id)
        if res is None:
            raise RemoteStateError(f"resource {remote_id} not found")
        if res.context != self.context.name:
            raise RemoteStateError(f"resource {remote_id} belongs to another account context")
        return res
