"""
Shared fakes for the loadfleet tests: a compute API, a transport and an
object store that only record what they are asked to do.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import pytest

from loadfleet.models.fleet import (
    FleetTag,
    LaunchParams,
    NodeHandle,
    NodeHealth,
    NodeState,
    NodeStatus,
)
from loadfleet.models.ssh import SSHTarget, TransferSpec
from loadfleet.utils.async_command_runner import CommandError

TAG = FleetTag()


def make_node(
    instance_id: str,
    *,
    state: NodeState = NodeState.RUNNING,
    tagged: bool = True,
    instance_type: str = "m3.medium",
) -> NodeHandle:
    return NodeHandle(
        instance_id=instance_id,
        state=state,
        instance_type=instance_type,
        public_dns_name=f"{instance_id}.compute.example.com"
        if state == NodeState.RUNNING
        else "",
        private_ip_address="10.0.0.1" if state == NodeState.RUNNING else "",
        tags={TAG.key: TAG.value} if tagged else {},
    )


HealthPoll = Union[NodeHealth, Dict[str, NodeHealth]]


class FakeCompute:
    """
    In-memory compute API.

    `state_polls` / `health_polls` script what successive by-id polls report;
    once a script runs out its last entry repeats.
    """

    def __init__(self, nodes: Sequence[NodeHandle] = (), launch_ids: Sequence[str] = ()):
        self.nodes: Dict[str, NodeHandle] = {n.instance_id: n for n in nodes}
        self.launch_ids = list(launch_ids)
        self.state_polls: List[NodeState] = []
        self.health_polls: List[HealthPoll] = []
        self.calls: List[tuple] = []

    def _next(self, script: list):
        if not script:
            return None
        return script.pop(0) if len(script) > 1 else script[0]

    async def describe_instances(
        self,
        ids: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> List[NodeHandle]:
        self.calls.append(("describe_instances", list(ids or []), dict(filters or {})))
        if filters is not None:
            return [n for n in self.nodes.values() if self._matches(n, filters)]

        state = self._next(self.state_polls)
        if state is not None:
            for i in ids or []:
                if i in self.nodes:
                    self.nodes[i] = make_node(
                        i,
                        state=state,
                        tagged=bool(self.nodes[i].tags),
                        instance_type=self.nodes[i].instance_type,
                    )
        return [self.nodes[i] for i in ids or [] if i in self.nodes]

    @staticmethod
    def _matches(node: NodeHandle, filters: Mapping[str, Sequence[str]]) -> bool:
        for name, values in filters.items():
            if name.startswith("tag:"):
                actual = node.tags.get(name[len("tag:") :])
            elif name == "instance-state-name":
                actual = node.state.value
            elif name == "instance-type":
                actual = node.instance_type
            else:
                raise AssertionError(f"unexpected filter {name}")
            if actual not in values:
                return False
        return True

    async def describe_instance_status(self, ids: Sequence[str]) -> List[NodeStatus]:
        self.calls.append(("describe_instance_status", list(ids)))
        poll = self._next(self.health_polls) or NodeHealth.OK
        statuses = []
        for i in ids:
            health = poll.get(i, NodeHealth.INITIALIZING) if isinstance(poll, dict) else poll
            statuses.append(
                NodeStatus(instance_id=i, state=self.nodes[i].state, health=health)
            )
        return statuses

    async def run_instances(
        self, launch: LaunchParams, instance_type: str, count: int
    ) -> List[NodeHandle]:
        self.calls.append(("run_instances", launch, instance_type, count))
        created = []
        for instance_id in self.launch_ids[:count]:
            node = make_node(
                instance_id,
                state=NodeState.PENDING,
                tagged=False,
                instance_type=instance_type,
            )
            self.nodes[instance_id] = node
            created.append(node)
        return created

    async def create_tags(self, ids: Sequence[str], tag: FleetTag) -> None:
        self.calls.append(("create_tags", list(ids), tag))
        for i in ids:
            node = self.nodes[i]
            self.nodes[i] = node.model_copy(update={"tags": {**node.tags, tag.key: tag.value}})

    async def terminate_instances(self, ids: Sequence[str]) -> None:
        self.calls.append(("terminate_instances", list(ids)))
        for i in ids:
            self.nodes[i] = self.nodes[i].model_copy(update={"state": NodeState.TERMINATED})

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


class FakeTransport:
    """
    Records uploads, downloads and commands per host. The Gatling launch
    returns `launch_codes[host]` (default 0); hosts in `broken_hosts` fail
    their first command with a CommandError.
    """

    def __init__(self) -> None:
        self.uploads: List[tuple] = []
        self.downloads: List[tuple] = []
        self.commands: List[tuple] = []
        self.launch_codes: Dict[str, int] = {}
        self.broken_hosts: set = set()

    async def upload(self, target: SSHTarget, specs: Sequence[TransferSpec]) -> None:
        self.uploads.append((target.hostname, list(specs)))

    async def download(self, target: SSHTarget, spec: TransferSpec) -> None:
        self.downloads.append((target.hostname, spec))
        os.makedirs(os.path.dirname(spec.destination), exist_ok=True)
        Path(spec.destination).write_text(f"log from {target.hostname}\n")

    async def execute(self, target: SSHTarget, command: str, *, debug: bool = False) -> int:
        self.commands.append((target.hostname, command))
        if target.hostname in self.broken_hosts:
            raise CommandError("Command failed with return code 255.", 255)
        if "/bin/gatling.sh" in command:
            return self.launch_codes.get(target.hostname, 0)
        return 0

    def commands_for(self, host: str) -> List[str]:
        return [c for h, c in self.commands if h == host]


class FakeObjectStore:
    """Synchronous S3 stand-in; fput_object runs in a worker thread."""

    def __init__(self, fail: Sequence[str] = (), block=None) -> None:
        self.fail = set(fail)
        self.block = block
        self.puts: List[tuple] = []

    def fput_object(self, bucket_name, object_name, file_path, metadata=None):
        if self.block is not None:
            self.block.wait(5)
        if object_name in self.fail:
            raise OSError(f"upload of {object_name} refused")
        self.puts.append((bucket_name, object_name, file_path, dict(metadata or {})))


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> List[float]:
    """Make asyncio.sleep instant and record every requested delay."""
    recorded: List[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, result=None):
        recorded.append(delay)
        await real_sleep(0)
        return result

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return recorded


@pytest.fixture
def compute() -> FakeCompute:
    return FakeCompute()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A workload checkout laid out the way the default settings expect."""
    resources = tmp_path / "src/test/resources"
    (resources / "scripts").mkdir(parents=True)
    (resources / "scripts/install-gatling.sh").write_text("#!/bin/sh\n")
    (resources / "data").mkdir()
    (resources / "data/users.csv").write_text("id\n1\n")
    (resources / "config.properties").write_text("rate=10\n")
    (resources / "conf").mkdir()
    (resources / "conf/gatling.conf").write_text("gatling {}\n")

    scala = tmp_path / "src/test/scala"
    (scala / "pkg").mkdir(parents=True)
    (scala / "Sim.scala").write_text("class Sim\n")
    (scala / "pkg/Helper.scala").write_text("object Helper\n")

    target = tmp_path / "target"
    target.mkdir()
    (target / "app-jar-with-dependencies.jar").write_bytes(b"PK")
    (target / "app.jar").write_bytes(b"PK")
    return tmp_path
