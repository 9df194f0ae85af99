"""
loadfleet/deployment/worker.py

RemoteWorker: stage, run and collect one Gatling shard on one node.

The worker makes a single pass with no retries of its own (the transport
retries connecting). Whatever happens, it leaves exactly one entry for its
host in the ResultsTable: an exit code, or a failure reason if it raised.
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from loadfleet.models.results import ResultsTable
from loadfleet.models.run_config import RunConfig
from loadfleet.models.ssh import SSHTarget, TransferSpec, transfers_into

logger = logging.getLogger(__name__)

DEFAULT_JVM_ARGS = "-Dsun.net.inetaddr.ttl=60"
RESOURCE_SUBDIRS = ("data", "bodies")
JAR_SUFFIX = "-jar-with-dependencies.jar"
REMOTE_SIMULATION_LOG = "simulation.log"


class Transport(Protocol):
    async def upload(self, target: SSHTarget, specs: Sequence[TransferSpec]) -> None: ...

    async def download(self, target: SSHTarget, spec: TransferSpec) -> None: ...

    async def execute(
        self, target: SSHTarget, command: str, *, debug: bool = False
    ) -> int: ...


def _listing(directory: Path) -> List[Path]:
    """Entries of a directory, or nothing if it is missing or empty."""
    if not directory.is_dir():
        return []
    return sorted(directory.iterdir())


def launch_command(root: str, simulation: str, test_name: str, java_opts: str) -> str:
    return (
        f'JAVA_OPTS="{DEFAULT_JVM_ARGS} {java_opts}" {root}/bin/gatling.sh '
        f"-s {simulation} -on {test_name} -rd test -nr -rf results/{test_name}"
    )


def detached_command(launch: str, remote_log: str) -> str:
    """Wrap a launch so it survives the session and logs to `remote_log`."""
    return (
        f"nohup bash -c {shlex.quote(launch)} > {remote_log} 2>&1 < /dev/null & sleep 1"
    )


def host_log_name(remote_log_path: str, host: str) -> str:
    """`gatling-run.log` on host h becomes `gatling-run-h.log`."""
    path = Path(remote_log_path)
    return f"{path.stem}-{host}{path.suffix}"


class RemoteWorker:
    """
    One node's share of the load test.

    Args:
        host: Hostname to connect to; also the ResultsTable key.
        config: The run configuration.
        test_name: Derived test name shared by every shard.
        shard_index: 0-based index of this node.
        shard_count: Total number of nodes.
        results: Shared results table.
        transport: Upload/download/execute implementation.
        base_dir: Directory local relative paths are resolved against.
    """

    def __init__(
        self,
        host: str,
        config: RunConfig,
        test_name: str,
        shard_index: int,
        shard_count: int,
        results: ResultsTable,
        transport: Transport,
        base_dir: Optional[Path] = None,
    ) -> None:
        self.host = host
        self.config = config
        self.test_name = test_name
        self.shard_index = shard_index
        self.shard_count = shard_count
        self.results = results
        self.transport = transport
        self.base_dir = base_dir or Path.cwd()

    @property
    def target(self) -> SSHTarget:
        """The ssh target for this host, validated on each use."""
        return SSHTarget(
            user=self.config.ssh.user,
            hostname=self.host,
            port=self.config.ssh.port,
            private_key_path=self.config.ssh.resolved_key_path(),
        )

    def _log(self, message: str, *args: object) -> None:
        logger.info("%s > " + message, self.host, *args)

    def _local(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.base_dir / candidate

    async def _execute(self, command: str) -> int:
        return await self.transport.execute(
            self.target, command, debug=self.config.debug_output
        )

    def staging_specs(self) -> List[TransferSpec]:
        """
        Everything the node needs besides the install script, in upload order.
        The resource subdirectories and the config file are always listed; the
        jar, simulation and conf entries only when their directory has content.
        """
        gatling = self.config.gatling
        root = gatling.root
        specs: List[TransferSpec] = []

        for extra in gatling.files:
            specs.append(TransferSpec(source=str(self._local(extra)), destination=""))

        jars = [
            p
            for p in _listing(self._local(gatling.build_output_dir))
            if p.name.endswith(JAR_SUFFIX)
        ]
        if jars:
            self._log("Copying additional JAR files")
            specs.extend(transfers_into(jars, f"{root}/lib"))

        resources = self._local(gatling.resources_dir)
        for name in RESOURCE_SUBDIRS:
            self._log("Copying resource %s", name)
            specs.extend(transfers_into([resources / name], f"{root}/user-files"))

        if gatling.config_file:
            specs.append(
                TransferSpec(source=str(self._local(gatling.config_file)), destination="")
            )

        simulations = _listing(self._local(gatling.source_dir))
        if simulations:
            self._log("Copying simulation files")
            specs.extend(transfers_into(simulations, f"{root}/user-files/simulations"))

        conf = _listing(self._local(gatling.conf_dir))
        if conf:
            self._log("Copying gatling configuration files")
            specs.extend(transfers_into(conf, f"{root}/conf"))

        return specs

    async def run(self) -> None:
        """Run every step; never raises, the outcome lands in the ResultsTable."""
        try:
            code = await self._run_steps()
        except Exception as exc:
            logger.exception("%s > worker failed", self.host)
            self.results.record_failure(self.host, f"{type(exc).__name__}: {exc}")
            return
        self.results.record(self.host, code)

    async def _run_steps(self) -> int:
        gatling = self.config.gatling
        self._log("started")

        install_script = self._local(gatling.install_script)
        script_name = install_script.name
        await self.transport.upload(
            self.target, [TransferSpec(source=str(install_script), destination="")]
        )
        await self._execute(f"chmod +x {script_name}; ./{script_name}")
        await self._execute(
            f'echo "num_instance={self.shard_index}\ninstance_count={self.shard_count}"'
            " >> instance.txt"
        )

        await self.transport.upload(self.target, self.staging_specs())

        launch = launch_command(
            gatling.root, gatling.simulation, self.test_name, gatling.java_opts
        )
        if self.config.detached:
            code = await self._execute(
                detached_command(launch, self.config.remote_log_path)
            )
            self._log("launched detached run, exit code %d", code)
            return code

        code = await self._execute(launch)
        await self._collect()
        return code

    async def _collect(self) -> None:
        gatling = self.config.gatling
        local_dir = self._local(gatling.local_results_dir) / self.test_name
        self._log("collecting %s", self.test_name)

        await self._execute(
            f"mv {gatling.root}/results/{self.test_name}/*/simulation.log "
            f"{REMOTE_SIMULATION_LOG}"
        )
        await self.transport.download(
            self.target,
            TransferSpec(
                source=REMOTE_SIMULATION_LOG,
                destination=os.fspath(local_dir / f"simulation-{self.host}.log"),
            ),
        )
        if self.config.download_remote_log:
            await self.transport.download(
                self.target,
                TransferSpec(
                    source=self.config.remote_log_path,
                    destination=os.fspath(
                        local_dir / host_log_name(self.config.remote_log_path, self.host)
                    ),
                ),
            )
