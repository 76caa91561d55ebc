from topologies import FakeClock, seg, two_account_topology

from peering_orchestrator.agent.engine import ApplyEngine
from peering_orchestrator.core.types import (
    DnsZone,
    EntityKind,
    NodeStatus,
    Operation,
    PeeringConnection,
    Ref,
    RouteTable,
)
from peering_orchestrator.execution.mock import InMemoryCloud
from peering_orchestrator.peering.handshake import PeeringState
from peering_orchestrator.state.snapshot import StateSnapshot
from peering_orchestrator.topology.store import TopologyStore


def make_engine(cloud: InMemoryCloud) -> ApplyEngine:
    clock = FakeClock()
    return ApplyEngine(cloud, sleep=clock.sleep, clock=clock)


def with_zone(store: TopologyStore) -> TopologyStore:
    store.add(DnsZone(name="internal", context="a", domain="example.internal", segments=[seg("vpc-a")]))
    return store


def without_peering() -> TopologyStore:
    """The reference topology after the peering and every route through it are removed."""
    store = two_account_topology()
    store.remove(Ref(EntityKind.peering_connection, "a-b"))
    for name in ["rt-a", "rt-b"]:
        table = store.remove(Ref(EntityKind.route_table, name))
        store.add(RouteTable(name=table.name, segment=table.segment))
    return store


def test_removing_peering_deletes_routes_before_connection():
    cloud = InMemoryCloud()
    engine = make_engine(cloud)
    first = engine.apply(two_account_topology(), StateSnapshot())

    result = engine.apply(without_peering(), first.snapshot)

    assert result.ok
    order = [e.entity for e in result.report.entries]
    destroyed = [e.entity for e in result.report.entries if e.operation == Operation.destroy]
    assert sorted(destroyed) == [
        "peering_connection.a-b",
        "route.rt-a:10.1.0.0/16",
        "route.rt-b:10.0.0.0/16",
    ]
    assert order.index("route.rt-a:10.1.0.0/16") < order.index("peering_connection.a-b")
    assert order.index("route.rt-b:10.0.0.0/16") < order.index("peering_connection.a-b")

    deletes = [c for c in cloud.calls_for("delete")]
    assert deletes[-1].context == "a"
    assert cloud.of_kind(EntityKind.peering_connection) == []
    assert cloud.of_kind(EntityKind.route) == []

    assert result.peering_states["a-b"] == PeeringState.deleted
    assert result.snapshot.get((EntityKind.peering_connection, "a-b")) is None
    assert result.snapshot.get((EntityKind.route, "rt-a:10.1.0.0/16")) is None
    assert result.snapshot.get((EntityKind.route_table, "rt-a")) is not None


def test_zone_with_only_system_records_is_deleted():
    cloud = InMemoryCloud()
    engine = make_engine(cloud)
    first = engine.apply(with_zone(two_account_topology()), StateSnapshot())
    (zone,) = cloud.of_kind(EntityKind.dns_zone)
    assert sorted(r["type"] for r in zone.records) == ["NS", "SOA"]

    result = engine.apply(two_account_topology(), first.snapshot)

    assert result.ok
    assert result.report.entry("dns_zone.internal").status == NodeStatus.succeeded
    assert cloud.of_kind(EntityKind.dns_zone) == []
    assert result.snapshot.get((EntityKind.dns_zone, "internal")) is None


def test_zone_with_custom_records_is_refused():
    cloud = InMemoryCloud()
    engine = make_engine(cloud)
    first = engine.apply(with_zone(two_account_topology()), StateSnapshot())
    zone_id = first.snapshot.get((EntityKind.dns_zone, "internal")).remote_id
    cloud.add_record(zone_id, "A", "db.example.internal")

    result = engine.apply(two_account_topology(), first.snapshot)

    entry = result.report.entry("dns_zone.internal")
    assert entry.operation == Operation.destroy
    assert entry.status == NodeStatus.failed
    assert entry.error.startswith("PreconditionError")
    assert "A db.example.internal" in entry.error

    assert [c.subject for c in cloud.calls_for("delete")] == []
    assert [z.remote_id for z in cloud.of_kind(EntityKind.dns_zone)] == [zone_id]
    assert result.snapshot.get((EntityKind.dns_zone, "internal")).remote_id == zone_id


def test_delegation_below_apex_counts_as_a_custom_record():
    cloud = InMemoryCloud()
    engine = make_engine(cloud)
    first = engine.apply(with_zone(two_account_topology()), StateSnapshot())
    zone_id = first.snapshot.get((EntityKind.dns_zone, "internal")).remote_id
    cloud.add_record(zone_id, "NS", "dev.example.internal")

    result = engine.apply(two_account_topology(), first.snapshot)

    assert result.report.entry("dns_zone.internal").status == NodeStatus.failed
    assert len(cloud.of_kind(EntityKind.dns_zone)) == 1


def remote_names(snapshot: StateSnapshot) -> dict:
    return {entry.remote_id: name for (_, name), entry in snapshot.entries.items()}


def test_recreated_segment_tears_down_dependents_first():
    """
    A segment whose CIDR changes is replaced along with everything built on it.

    The old route entries go first, then the table and the connection, and
    the segment last. Nothing new is created in between.
    """
    cloud = InMemoryCloud()
    engine = make_engine(cloud)
    first = engine.apply(two_account_topology(), StateSnapshot())
    names = remote_names(first.snapshot)

    store = two_account_topology()
    store.get(seg("vpc-a")).cidr = "10.2.0.0/16"
    start = len(cloud.calls)
    result = engine.apply(store, first.snapshot)

    assert result.ok, [e for e in result.report.entries if e.error]
    deleted = [names[c.subject] for c in cloud.calls_for("delete")]
    assert sorted(deleted) == ["a-b", "rt-a", "rt-a:10.1.0.0/16", "rt-b:10.0.0.0/16", "vpc-a"]
    for dependent, dependency in [
        ("rt-a:10.1.0.0/16", "rt-a"),
        ("rt-a:10.1.0.0/16", "a-b"),
        ("rt-b:10.0.0.0/16", "a-b"),
        ("rt-a", "vpc-a"),
        ("a-b", "vpc-a"),
    ]:
        assert deleted.index(dependent) < deleted.index(dependency)

    ops = [c.op for c in cloud.calls[start:]]
    last_delete = max(i for i, op in enumerate(ops) if op == "delete")
    assert last_delete < ops.index("create")
    assert result.report.entry("segment.vpc-a#destroy").operation == Operation.destroy
    assert result.report.entry("segment.vpc-a").operation == Operation.recreate
    assert sorted(s.attrs["cidr"] for s in cloud.of_kind(EntityKind.segment)) == ["10.1.0.0/16", "10.2.0.0/16"]
    assert len(cloud.of_kind(EntityKind.route)) == 2
    assert engine.plan(store, result.snapshot).reconcile.mutating() == []


def test_swapped_peering_sides_delete_through_old_owner():
    cloud = InMemoryCloud()
    engine = make_engine(cloud)
    first = engine.apply(two_account_topology(), StateSnapshot())
    old_id = first.snapshot.get((EntityKind.peering_connection, "a-b")).remote_id

    store = two_account_topology()
    store.add(PeeringConnection(name="a-b", requester=seg("vpc-b"), accepter=seg("vpc-a")))
    result = engine.apply(store, first.snapshot)

    assert result.ok, [e for e in result.report.entries if e.error]
    (delete,) = [c for c in cloud.calls_for("delete") if c.subject == old_id]
    assert delete.context == "a"
    assert result.report.entry("peering_connection.a-b#destroy").context == "a"

    (peering,) = cloud.of_kind(EntityKind.peering_connection)
    assert peering.remote_id != old_id
    assert peering.context == "b"
    assert peering.status == "active"
    (accept,) = cloud.calls_for("accept_peering")[1:]
    assert accept.context == "a"

    entry = result.snapshot.get((EntityKind.peering_connection, "a-b"))
    assert (entry.remote_id, entry.context, entry.status) == (peering.remote_id, "b", "active")
