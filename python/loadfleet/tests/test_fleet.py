import asyncio
import threading

import pytest

from conftest import TAG, FakeCompute, FakeObjectStore, make_node
from loadfleet.models.fleet import NamedSecurityGroupLaunch, NodeHealth, NodeState
from loadfleet.services.fleet import FleetManager, FleetReadinessTimeout, join_key

LAUNCH = NamedSecurityGroupLaunch(
    image_id="ami-b66ed3de",
    key_pair_name="gatling-key-pair",
    security_group="gatling-security-group",
)


def test_find_existing_filters_on_tag_state_and_type(compute):
    compute.nodes = {
        n.instance_id: n
        for n in [
            make_node("i-1"),
            make_node("i-2", tagged=False),
            make_node("i-3", state=NodeState.STOPPED),
            make_node("i-4", instance_type="c5.large"),
        ]
    }
    fleet = FleetManager(compute, TAG)

    found = asyncio.run(fleet.find_existing("m3.medium"))

    assert [n.instance_id for n in found] == ["i-1"]
    _, _, filters = compute.calls[0]
    assert filters == {
        "tag:Name": ["Gatling Load Generator"],
        "instance-state-name": ["running"],
        "instance-type": ["m3.medium"],
    }


def test_acquire_reuses_existing_nodes_without_creating(compute, sleeps):
    compute.nodes = {"i-1": make_node("i-1"), "i-2": make_node("i-2")}
    fleet = FleetManager(compute, TAG)

    nodes = asyncio.run(fleet.acquire("m3.medium", 5, LAUNCH))

    assert {n.instance_id for n in nodes} == {"i-1", "i-2"}
    assert compute.called("run_instances") == []
    assert compute.called("create_tags") == []
    assert sleeps == []


def test_acquire_creates_tags_once_and_waits(sleeps):
    compute = FakeCompute(launch_ids=["i-a", "i-b", "i-c"])
    compute.state_polls = [NodeState.PENDING, NodeState.RUNNING]
    compute.health_polls = [NodeHealth.INITIALIZING, NodeHealth.OK]
    fleet = FleetManager(compute, TAG)

    nodes = asyncio.run(fleet.acquire("m3.medium", 2, LAUNCH))

    assert [n.instance_id for n in nodes] == ["i-a", "i-b"]
    assert all(n.state == NodeState.RUNNING for n in nodes)
    assert all(n.public_dns_name for n in nodes)
    assert compute.called("create_tags") == [("create_tags", ["i-a", "i-b"], TAG)]
    assert all(compute.nodes[i].has_tag(TAG) for i in ("i-a", "i-b"))
    # pending pass (2 status polls) then running pass (1 status poll)
    assert sleeps == [16.0] * 5


def test_acquire_without_create_returns_empty(compute):
    fleet = FleetManager(compute, TAG)

    assert asyncio.run(fleet.acquire("m3.medium", 2, LAUNCH, create_if_missing=False)) == []
    assert compute.called("run_instances") == []


def test_readiness_needs_every_node_ok(sleeps):
    compute = FakeCompute([make_node("i-1"), make_node("i-2")])
    compute.health_polls = [
        {"i-1": NodeHealth.OK, "i-2": NodeHealth.INITIALIZING},
        {"i-1": NodeHealth.OK, "i-2": NodeHealth.IMPAIRED},
        NodeHealth.OK,
    ]
    fleet = FleetManager(compute, TAG, poll_interval=2.0)

    asyncio.run(fleet.wait_until_ready(["i-1", "i-2"]))

    assert len(compute.called("describe_instance_status")) == 3
    assert sleeps == [2.0] * 4


def test_readiness_deadline_raises():
    compute = FakeCompute([make_node("i-1", state=NodeState.PENDING)])
    compute.state_polls = [NodeState.PENDING]
    compute.health_polls = [NodeHealth.OK]
    fleet = FleetManager(compute, TAG, poll_interval=0.01, max_ready_wait=0.05)

    with pytest.raises(FleetReadinessTimeout):
        asyncio.run(fleet.wait_until_ready(["i-1"]))


def test_terminate_issues_one_batch_call():
    compute = FakeCompute([make_node("i-1"), make_node("i-2")])
    fleet = FleetManager(compute, TAG)

    assert asyncio.run(fleet.terminate(["i-1", "i-2"])) is True
    assert compute.called("terminate_instances") == [
        ("terminate_instances", ["i-1", "i-2"])
    ]


def test_one_untagged_node_blocks_the_whole_batch(caplog):
    compute = FakeCompute([make_node("i-1"), make_node("i-2", tagged=False), make_node("i-3")])
    fleet = FleetManager(compute, TAG)

    assert asyncio.run(fleet.terminate(["i-1", "i-2", "i-3"])) is False
    assert compute.called("terminate_instances") == []
    assert any("i-2" in r.getMessage() for r in caplog.records if r.levelname == "ERROR")


def test_unknown_id_blocks_the_batch():
    compute = FakeCompute([make_node("i-1")])
    fleet = FleetManager(compute, TAG)

    assert asyncio.run(fleet.terminate(["i-1", "i-missing"])) is False
    assert compute.called("terminate_instances") == []


def test_terminate_with_no_ids_does_nothing(compute):
    fleet = FleetManager(compute, TAG)

    assert asyncio.run(fleet.terminate([])) is False
    assert compute.calls == []


def _report_tree(root):
    (root / "js").mkdir(parents=True)
    (root / "index.html").write_text("<html/>")
    (root / "js/app.js").write_text("//")
    (root / "simulation.log").write_text("RUN")
    return root


def test_upload_tree_walks_recursively_with_public_read(tmp_path, compute):
    report = _report_tree(tmp_path / "report")
    store = FakeObjectStore()
    fleet = FleetManager(compute, TAG, object_store=store, upload_poll=0.01)

    outcome = asyncio.run(fleet.upload_tree("bucket", "sub/test-1", str(report)))

    assert [p[1] for p in store.puts] == [
        "sub/test-1/index.html",
        "sub/test-1/js/app.js",
        "sub/test-1/simulation.log",
    ]
    assert all(p[0] == "bucket" for p in store.puts)
    assert all(p[3] == {"x-amz-acl": "public-read"} for p in store.puts)
    assert outcome.uploaded == [p[1] for p in store.puts]
    assert outcome.failed == [] and outcome.timed_out == []


def test_upload_errors_do_not_stop_the_walk(tmp_path, compute):
    report = _report_tree(tmp_path / "report")
    store = FakeObjectStore(fail=["t/js/app.js"])
    fleet = FleetManager(compute, TAG, object_store=store, upload_poll=0.01)

    outcome = asyncio.run(fleet.upload_tree("bucket", "t", str(report)))

    assert outcome.failed == ["t/js/app.js"]
    assert outcome.uploaded == ["t/index.html", "t/simulation.log"]


def test_slow_upload_is_abandoned_after_deadline(tmp_path, compute):
    (tmp_path / "big.bin").write_bytes(b"0" * 16)
    release = threading.Event()
    store = FakeObjectStore(block=release)
    fleet = FleetManager(
        compute, TAG, object_store=store, upload_poll=0.01, upload_deadline=0.05
    )

    async def scenario():
        outcome = await fleet.upload_tree("bucket", "t", str(tmp_path))
        release.set()
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.timed_out == ["t/big.bin"]
    assert outcome.uploaded == []


def test_upload_without_store_is_an_error(tmp_path, compute):
    fleet = FleetManager(compute, TAG)

    with pytest.raises(RuntimeError):
        asyncio.run(fleet.upload_tree("bucket", "t", str(tmp_path)))


def test_join_key_drops_empty_parts():
    assert join_key("", "test-1", "index.html") == "test-1/index.html"
    assert join_key("/runs/", "test-1") == "runs/test-1"
