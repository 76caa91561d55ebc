import pytest

from topologies import pcx, seg, two_account_topology

from peering_orchestrator.core.errors import (
    CyclicDependencyError,
    PrematureRouteError,
    TypeMismatchError,
    UnresolvedReferenceError,
    ValidationError,
)
from peering_orchestrator.core.types import (
    AccountContext,
    ComputeInstance,
    EntityKind,
    KeyPairRef,
    NetworkSegment,
    Ref,
    RouteEntry,
    SecurityRule,
    Subnet,
)
from peering_orchestrator.peering.handshake import PeeringState
from peering_orchestrator.planner.graph import NodeRole, accept_node_id, build_execution_graph
from peering_orchestrator.topology.store import TopologyStore


def sg(name: str) -> Ref:
    return Ref(EntityKind.security_rule, name)


def test_two_account_graph_has_accept_node_on_accepter_context():
    g = build_execution_graph(two_account_topology())

    create = g.nodes["peering_connection.a-b"]
    accept = g.nodes[accept_node_id("a-b")]

    assert create.context == "a"
    assert accept.context == "b"
    assert accept.role == NodeRole.accept
    assert g.dependencies(accept.node_id) == ["peering_connection.a-b"]


def test_peering_routes_depend_on_accept_not_on_create():
    """
    Routes through a peering connection wait for the active transition.

    The create node alone is not enough, it only means requested.
    """
    g = build_execution_graph(two_account_topology())

    for route_id in ["route.rt-a:10.1.0.0/16", "route.rt-b:10.0.0.0/16"]:
        deps = g.dependencies(route_id)
        assert accept_node_id("a-b") in deps
        assert "peering_connection.a-b" not in deps


def test_topological_and_teardown_orders_are_inverse_on_edges():
    g = build_execution_graph(two_account_topology())

    order = g.topological_order()
    teardown = g.teardown_order()
    for dependency, dependent in g.edges():
        assert order.index(dependency) < order.index(dependent)
        assert teardown.index(dependent) < teardown.index(dependency)


def test_subnet_association_depends_on_table_and_subnet():
    store = two_account_topology()
    store.add(Subnet(name="a-1", segment=seg("vpc-a"), cidr="10.0.1.0/24", availability_zone="us-east-1a"))
    table = store.get(Ref(EntityKind.route_table, "rt-a"))
    table.subnets.append(Ref(EntityKind.subnet, "a-1"))

    g = build_execution_graph(store)

    assert g.dependencies("route_table_association.rt-a:a-1") == ["route_table.rt-a", "subnet.a-1"]


def test_instance_depends_on_subnet_rules_and_key_pair_check():
    store = two_account_topology()
    store.add(Subnet(name="a-1", segment=seg("vpc-a"), cidr="10.0.1.0/24", availability_zone="us-east-1a"))
    store.add(SecurityRule(name="ssh", segment=seg("vpc-a"), from_port=22, to_port=22, cidr="10.1.0.0/16"))
    store.add(KeyPairRef(name="deployer", region="us-east-1"))
    store.add(
        ComputeInstance(
            name="web",
            subnet=Ref(EntityKind.subnet, "a-1"),
            key_pair=Ref(EntityKind.key_pair, "deployer"),
            image_id="ami-1",
            security_rules=[sg("ssh")],
        )
    )

    g = build_execution_graph(store)

    assert g.dependencies("compute_instance.web") == [
        "key_pair.deployer@a",
        "security_rule.ssh",
        "subnet.a-1",
    ]
    assert g.nodes["key_pair.deployer@a"].role == NodeRole.verify
    assert g.nodes["compute_instance.web"].context == "a"


def test_key_pair_is_checked_in_every_launching_account():
    store = two_account_topology()
    store.add_context(AccountContext(name="c", account_id="333333333333", region="us-east-1"))
    store.add(NetworkSegment(name="vpc-c", context="c", cidr="10.2.0.0/16"))
    store.add(KeyPairRef(name="deployer", region="us-east-1"))
    for name, segment, cidr in [("a-1", "vpc-a", "10.0.1.0/24"), ("c-1", "vpc-c", "10.2.1.0/24")]:
        store.add(Subnet(name=name, segment=seg(segment), cidr=cidr, availability_zone="us-east-1a"))
        store.add(
            ComputeInstance(
                name=f"web-{name}",
                subnet=Ref(EntityKind.subnet, name),
                key_pair=Ref(EntityKind.key_pair, "deployer"),
                image_id="ami-1",
            )
        )

    g = build_execution_graph(store)

    assert g.nodes["key_pair.deployer@a"].context == "a"
    assert g.nodes["key_pair.deployer@c"].context == "c"
    assert "key_pair.deployer@a" in g.dependencies("compute_instance.web-a-1")
    assert "key_pair.deployer@c" in g.dependencies("compute_instance.web-c-1")
    assert "key_pair.deployer@a" not in g.dependencies("compute_instance.web-c-1")


def test_duplicate_route_destination_is_a_validation_error():
    store = two_account_topology()
    store.get(Ref(EntityKind.route_table, "rt-a")).routes.append(RouteEntry("10.1.0.0/16", pcx("a-b")))

    with pytest.raises(ValidationError) as exc:
        build_execution_graph(store)

    assert exc.value.errors == ["route.rt-a:10.1.0.0/16 is declared more than once"]


def test_misspelled_peering_reference_is_unresolved():
    store = two_account_topology()
    table = store.get(Ref(EntityKind.route_table, "rt-a"))
    table.routes[0] = RouteEntry(destination="10.1.0.0/16", target=pcx("a-bb"))

    with pytest.raises(UnresolvedReferenceError) as exc:
        build_execution_graph(store)

    assert exc.value.field == "routes[0].target"
    assert exc.value.name == "a-bb"
    assert exc.value.entity == "route_table.rt-a"


def test_reference_to_wrong_kind_is_type_mismatch():
    """A route table association pointing at a segment is never coerced."""
    store = two_account_topology()
    table = store.get(Ref(EntityKind.route_table, "rt-a"))
    table.subnets.append(seg("vpc-a"))

    with pytest.raises(TypeMismatchError) as exc:
        build_execution_graph(store)

    assert exc.value.field == "subnets[0]"
    assert exc.value.actual == "segment"


def test_name_of_other_kind_is_type_mismatch_not_unresolved():
    store = two_account_topology()
    store.add(
        Subnet(
            name="a-1",
            segment=Ref(EntityKind.segment, "rt-a"),
            cidr="10.0.1.0/24",
            availability_zone="us-east-1a",
        )
    )

    with pytest.raises(TypeMismatchError) as exc:
        build_execution_graph(store)

    assert exc.value.expected == "segment"
    assert exc.value.actual == "route_table"


def test_unknown_account_context_is_unresolved():
    store = two_account_topology()
    store.get(seg("vpc-b")).context = "c"

    with pytest.raises(UnresolvedReferenceError) as exc:
        build_execution_graph(store)

    assert exc.value.field == "context"


def test_mutual_rule_set_references_report_shortest_cycle():
    """
    x and y reference each other, and z joins a longer loop through x.

    The reported cycle is the two node one.
    """
    store = two_account_topology()
    store.add(SecurityRule(name="x", segment=seg("vpc-a"), source_rule=sg("y")))
    store.add(SecurityRule(name="y", segment=seg("vpc-a"), source_rule=sg("x")))
    store.add(SecurityRule(name="z", segment=seg("vpc-a"), source_rule=sg("w")))
    store.add(SecurityRule(name="w", segment=seg("vpc-a"), source_rule=sg("v")))
    store.add(SecurityRule(name="v", segment=seg("vpc-a"), source_rule=sg("z")))

    with pytest.raises(CyclicDependencyError) as exc:
        build_execution_graph(store)

    cycle = exc.value.cycle
    assert len(cycle) == 3
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"security_rule.x", "security_rule.y"}


def test_self_referencing_rule_set_is_not_a_cycle():
    store = two_account_topology()
    store.add(SecurityRule(name="self", segment=seg("vpc-a"), source_rule=sg("self")))

    g = build_execution_graph(store)

    assert g.dependencies("security_rule.self") == ["segment.vpc-a"]


@pytest.mark.parametrize("known", [None, PeeringState.requested, PeeringState.pending_acceptance])
def test_route_through_unaccepted_peering_is_premature(known):
    states = {} if known is None else {"a-b": known}

    with pytest.raises(PrematureRouteError) as exc:
        build_execution_graph(two_account_topology(accept=False), states)

    assert exc.value.peering == "a-b"


def test_route_through_externally_accepted_active_peering_is_allowed():
    g = build_execution_graph(two_account_topology(accept=False), {"a-b": PeeringState.active})

    assert accept_node_id("a-b") not in g.nodes
    assert "peering_connection.a-b" in g.dependencies("route.rt-a:10.1.0.0/16")


def test_declaration_order_does_not_change_graph():
    first = two_account_topology()
    second = TopologyStore()
    for ctx in reversed(list(first.contexts.values())):
        second.add_context(ctx)
    for entity in reversed(first.all()):
        second.add(entity)

    assert build_execution_graph(first).edges() == build_execution_graph(second).edges()
    assert build_execution_graph(first).topological_order() == build_execution_graph(second).topological_order()


def test_store_require_checks_presence_and_type():
    store = two_account_topology()

    assert store.require(seg("vpc-a"), NetworkSegment).context == "a"
    with pytest.raises(KeyError):
        store.require(seg("vpc-z"), NetworkSegment)
    with pytest.raises(KeyError):
        store.require(Ref(EntityKind.segment, "vpc-a"), Subnet)
