import json
from pathlib import Path

import pytest

from topologies import FakeClock

from peering_orchestrator.agent.execution_mode import ExecutionMode
from peering_orchestrator.agent.runner import ApplyRunner, RunnerConfig
from peering_orchestrator.core.errors import TypeMismatchError
from peering_orchestrator.core.types import EntityKind, NodeStatus, Operation, Ref
from peering_orchestrator.execution.mock import InMemoryCloud
from peering_orchestrator.topology.source import StaticTopologySource, parse_ref, store_from_dict

TOPOLOGY = {
    "accounts": [
        {"name": "a", "account_id": "111111111111", "region": "us-east-1"},
        {"name": "b", "account_id": "222222222222", "region": "us-west-2"},
    ],
    "segments": [
        {"name": "vpc-a", "context": "a", "cidr": "10.0.0.0/16"},
        {"name": "vpc-b", "context": "b", "cidr": "10.1.0.0/16"},
    ],
    "subnets": [
        {"name": "a-1", "segment": "vpc-a", "cidr": "10.0.1.0/24", "availability_zone": "us-east-1a"},
    ],
    "internet_gateways": [{"name": "igw-a", "segment": "vpc-a"}],
    "peerings": [{"name": "a-b", "requester": "vpc-a", "accepter": "segment.vpc-b"}],
    "route_tables": [
        {
            "name": "rt-a",
            "segment": "vpc-a",
            "routes": [
                {"destination": "10.1.0.0/16", "target": "peering_connection.a-b"},
                {"destination": "0.0.0.0/0", "target": {"kind": "internet_gateway", "name": "igw-a"}},
            ],
            "subnets": ["a-1"],
        },
        {
            "name": "rt-b",
            "segment": "vpc-b",
            "routes": [{"destination": "10.0.0.0/16", "target": "peering_connection.a-b"}],
        },
    ],
    "security_rules": [
        {"name": "web", "segment": "vpc-a", "from_port": 443, "cidr": "10.1.0.0/16"},
    ],
    "key_pairs": [{"name": "deployer", "region": "us-east-1"}],
    "instances": [
        {"name": "web-1", "subnet": "a-1", "key_pair": "deployer", "image_id": "ami-1", "security_rules": ["web"]}
    ],
    "dns_zones": [{"name": "internal", "context": "a", "domain": "example.internal", "segments": ["vpc-a"]}],
}


def write_topology(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "topology.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def make_runner(
    tmp_path: Path,
    cloud: InMemoryCloud,
    mode: ExecutionMode = ExecutionMode.apply,
    data: dict = TOPOLOGY,
) -> ApplyRunner:
    source = StaticTopologySource(write_topology(tmp_path, data))
    config = RunnerConfig(interval_seconds=1, snapshot_path=tmp_path / "state" / "snapshot.json", mode=mode)
    clock = FakeClock()
    return ApplyRunner(source, cloud, config, sleep=clock.sleep, clock=clock)


def test_store_from_dict_parses_every_section():
    store = store_from_dict(TOPOLOGY)

    assert sorted(store.contexts) == ["a", "b"]
    assert len(store) == 11
    rt = store.get(Ref(EntityKind.route_table, "rt-a"))
    assert rt.routes[1].target == Ref(EntityKind.internet_gateway, "igw-a")
    assert rt.subnets == [Ref(EntityKind.subnet, "a-1")]
    rule = store.get(Ref(EntityKind.security_rule, "web"))
    assert (rule.from_port, rule.to_port) == (443, 443)
    assert store.get(Ref(EntityKind.key_pair, "deployer")).key_name == "deployer"


@pytest.mark.parametrize(
    "raw,default,expected",
    [
        ("vpc-a", EntityKind.segment, Ref(EntityKind.segment, "vpc-a")),
        ("segment.vpc-a", EntityKind.subnet, Ref(EntityKind.segment, "vpc-a")),
        ("example.internal", EntityKind.dns_zone, Ref(EntityKind.dns_zone, "example.internal")),
        ({"kind": "subnet", "name": "a-1"}, None, Ref(EntityKind.subnet, "a-1")),
    ],
)
def test_parse_ref(raw, default, expected):
    assert parse_ref(raw, default) == expected


def test_route_target_must_name_its_kind():
    with pytest.raises(ValueError):
        parse_ref("a-b", None)


def test_explicit_wrong_kind_is_rejected_at_build(tmp_path):
    data = json.loads(json.dumps(TOPOLOGY))
    data["route_tables"][0]["subnets"] = ["segment.vpc-a"]
    cloud = InMemoryCloud()
    runner = make_runner(tmp_path, cloud, data=data)

    with pytest.raises(TypeMismatchError):
        runner.run_cycle()

    assert cloud.calls == []
    assert not (tmp_path / "state" / "snapshot.json").exists()


def test_run_cycle_applies_and_persists_snapshot(tmp_path):
    cloud = InMemoryCloud()
    cloud.add_key_pair("111111111111", "us-east-1", "deployer")
    runner = make_runner(tmp_path, cloud)

    first = runner.run_cycle()

    assert first.ok, [e for e in first.report.entries if e.error]
    assert (tmp_path / "state" / "snapshot.json").exists()

    second = runner.run_cycle()

    assert second.ok
    assert set(second.report.operations()) == {Operation.noop, Operation.verify}
    assert len(cloud.of_kind(EntityKind.route)) == 3


def test_dry_run_cycle_never_writes_snapshot(tmp_path):
    cloud = InMemoryCloud()
    runner = make_runner(tmp_path, cloud, ExecutionMode.dry_run)

    result = runner.run_cycle()

    assert {e.status for e in result.report.entries} == {NodeStatus.skipped}
    assert cloud.calls == []
    assert not (tmp_path / "state" / "snapshot.json").exists()


class StopLoop(Exception):
    pass


def unknown_accepter(data: dict) -> None:
    data["peerings"][0]["accepter"] = "vpc-c"


def duplicate_route(data: dict) -> None:
    data["route_tables"][0]["routes"].append({"destination": "10.1.0.0/16", "target": "peering_connection.a-b"})


@pytest.mark.parametrize("breakage", [unknown_accepter, duplicate_route])
def test_run_forever_keeps_going_after_rejected_topology(tmp_path, breakage):
    data = json.loads(json.dumps(TOPOLOGY))
    breakage(data)
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise StopLoop()

    source = StaticTopologySource(write_topology(tmp_path, data))
    config = RunnerConfig(interval_seconds=7, snapshot_path=tmp_path / "snapshot.json")
    runner = ApplyRunner(source, InMemoryCloud(), config, sleep=sleep)

    with pytest.raises(StopLoop):
        runner.run_forever()

    assert sleeps == [7, 7]
