"""
loadfleet/deployment/driver.py

Top-level sequencing of one load-test run:

  acquire fleet -> one RemoteWorker task per node -> wait for all of them
  -> count failures -> termination policy -> local report -> optional S3
  upload + results file -> optional hard failure.

Fleet mutations all happen here, on the one driver task.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import aiofiles
from pydantic import BaseModel

from loadfleet.deployment.worker import RemoteWorker, Transport
from loadfleet.models.fleet import NodeHandle
from loadfleet.models.results import ResultsTable
from loadfleet.models.run_config import RunConfig
from loadfleet.services.fleet import FleetManager, join_key
from loadfleet.utils.async_command_runner import run_command_unchecked

logger = logging.getLogger(__name__)

WORKER_POLL_SECONDS = 1.0


class LoadTestFailure(RuntimeError):
    """Raised after cleanup when failures should fail the whole run."""

    def __init__(self, failed: int) -> None:
        super().__init__(f"Some gatling simulation failed: {failed}")
        self.failed = failed


class RunSummary(BaseModel):
    test_name: str
    hosts: List[str]
    failed: int
    terminated: bool
    report_exit_code: Optional[int] = None
    results_url: Optional[str] = None


def derive_test_name(test_name: str, simulation: str, now: Optional[float] = None) -> str:
    """`<name>-<epoch ms>`, falling back to the lower-cased simulation name."""
    stamp = int((time.time() if now is None else now) * 1000)
    base = test_name if test_name else simulation.lower()
    return f"{base}-{stamp}"


def preferred_hostname(node: NodeHandle, prefer_private: bool) -> str:
    return node.hostname(prefer_private)


def count_failed(hosts: Sequence[str], results: ResultsTable) -> int:
    """Hosts without a stored zero code; logs why each one failed."""
    for host in hosts:
        code = results.get(host)
        if code is None:
            reason = results.failures.get(host)
            if reason:
                logger.info("No result collected from hostname: %s (%s)", host, reason)
            else:
                logger.info("No result collected from hostname: %s", host)
        elif code != 0:
            logger.info("Unsuccessful result code: %d on hostname: %s", code, host)
    failed = results.failed_count(hosts)
    logger.info("Load generators were unsuccessful. Failed instances count: %d", failed)
    return failed


def should_terminate(
    failed: int, keep_alive: bool, detached: bool, force_termination: bool
) -> bool:
    if keep_alive or detached:
        return False
    return failed == 0 or force_termination


def results_url(region: str, bucket: str, subfolder: str, test_name: str) -> str:
    """Public URL of the uploaded report's index page."""
    path = join_key(bucket, subfolder, test_name, "index.html")
    if region.lower() == "us-east-1":
        return f"https://s3.amazonaws.com/{path}"
    return f"https://s3-{region}.amazonaws.com/{path}"


async def generate_report(local_home: str, report_dir: str) -> Optional[int]:
    """
    Run the local report generator. Its output is printed and its exit code
    logged; it never fails the run.

    Returns:
        The exit code, or None if the binary could not be started.
    """
    command = [os.path.expanduser(local_home), "-ro", report_dir]
    logger.info("Report command: %s", " ".join(command))
    try:
        result = await run_command_unchecked(command)
    except OSError as exc:
        logger.error("Could not run report command %s: %s", command[0], exc)
        return None
    print(result.stdout + result.stderr)
    logger.info("Report command exit code: %d", result.return_code)
    return result.return_code


async def write_results_file(path: str, url: str) -> None:
    async with aiofiles.open(path, "w", encoding="utf-8") as fresults:
        await fresults.write(url)


async def run_workers(
    workers: Iterable[RemoteWorker], poll_interval: float = WORKER_POLL_SECONDS
) -> None:
    """Start every worker as its own task and wait until all are done."""
    pending = {asyncio.create_task(worker.run()) for worker in workers}
    while pending:
        done, pending = await asyncio.wait(pending, timeout=poll_interval)
        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.error("Worker task failed: %r", exc, exc_info=exc)
        if pending:
            logger.info("Waiting for %d worker(s) to finish", len(pending))
    logger.info("Finished all workers")


def _local(base_dir: Path, path: str) -> Path:
    candidate = Path(path).expanduser()
    return candidate if candidate.is_absolute() else base_dir / candidate


async def run_load_test(
    config: RunConfig,
    fleet: FleetManager,
    transport: Transport,
    *,
    base_dir: Optional[Path] = None,
    now: Optional[float] = None,
    worker_poll: float = WORKER_POLL_SECONDS,
) -> RunSummary:
    """
    Drive one full run against the fleet.

    Raises:
        LoadTestFailure: After every cleanup step, if propagate_failure is set
            and at least one node failed.
    """
    base_dir = base_dir or Path.cwd()
    ec2 = config.ec2
    gatling = config.gatling

    nodes = await fleet.acquire(
        ec2.instance_type, ec2.instance_count, ec2.launch_params()
    )
    test_name = derive_test_name(gatling.test_name, gatling.simulation, now)
    results_dir = _local(base_dir, gatling.local_results_dir) / test_name
    results_dir.mkdir(parents=True, exist_ok=True)
    logger.info("created result dir %s", results_dir)

    hosts = [preferred_hostname(n, ec2.prefer_private_ip_hostnames) for n in nodes]
    results = ResultsTable()
    workers = [
        RemoteWorker(
            host=host,
            config=config,
            test_name=test_name,
            shard_index=index,
            shard_count=ec2.instance_count,
            results=results,
            transport=transport,
            base_dir=base_dir,
        )
        for index, host in enumerate(hosts)
    ]
    await run_workers(workers, poll_interval=worker_poll)

    failed = count_failed(hosts, results)
    summary = RunSummary(test_name=test_name, hosts=hosts, failed=failed, terminated=False)

    if should_terminate(failed, ec2.keep_alive, config.detached, ec2.force_termination):
        summary.terminated = await fleet.terminate([n.instance_id for n in nodes])
    elif ec2.keep_alive or config.detached:
        logger.info("EC2 instances are still running for the next load test")
    else:
        logger.info("Leaving instances running since %d node(s) failed", failed)

    if not config.detached:
        summary.report_exit_code = await generate_report(
            gatling.local_home, str(results_dir)
        )
        if config.s3.upload_enabled:
            summary.results_url = await _publish(config, fleet, test_name, results_dir, base_dir)
        else:
            logger.info("Skipping upload to S3.")

    if config.propagate_failure and failed > 0:
        raise LoadTestFailure(failed)
    return summary


async def _publish(
    config: RunConfig,
    fleet: FleetManager,
    test_name: str,
    results_dir: Path,
    base_dir: Path,
) -> str:
    s3 = config.s3
    prefix = join_key(s3.subfolder, test_name)
    logger.info("Trying to upload simulation to S3 location %s/%s", s3.bucket, prefix)
    report = await fleet.upload_tree(s3.bucket, prefix, str(results_dir))
    if report.failed or report.timed_out:
        logger.warning(
            "%d file(s) failed and %d timed out during upload",
            len(report.failed),
            len(report.timed_out),
        )

    url = results_url(s3.region, s3.bucket, s3.subfolder, test_name)
    logger.info("Results are on %s", url)
    try:
        await write_results_file(str(_local(base_dir, config.results_file)), url)
    except OSError as exc:
        logger.error("Can't write result address: %s", exc)
    return url


async def kill_fleet(config: RunConfig, fleet: FleetManager) -> bool:
    """
    Terminate every running node carrying the fleet tag and the configured
    instance type. The tag check in FleetManager.terminate still applies.

    Returns:
        True if nothing needed terminating or the terminate call was issued.
    """
    nodes = await fleet.find_existing(config.ec2.instance_type)
    if not nodes:
        logger.info("No running %s instances tagged %s=%s.",
                    config.ec2.instance_type, fleet.tag.key, fleet.tag.value)
        return True
    return await fleet.terminate([n.instance_id for n in nodes])
