"""
loadfleet/services/fleet.py

FleetManager: owns every mutation of the compute fleet and the report upload.

  - find_existing:    running nodes carrying the fleet tag and the node class
  - acquire:          reuse existing nodes, or create + tag + wait for new ones
  - wait_until_ready: poll run-state and status checks until both are good
  - terminate:        re-check the fleet tag on every node, then one batch call
  - upload_tree:      best-effort recursive upload of a results directory

Create/tag/terminate are always issued as single batch calls from the one
driver task, never concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from minio import Minio
from pydantic import BaseModel, Field

from loadfleet.models.credentials import AWSApiKey
from loadfleet.models.fleet import (
    FleetTag,
    LaunchParams,
    NodeHandle,
    NodeHealth,
    NodeState,
    NodeStatus,
    describe_launch,
)
from loadfleet.models.run_config import S3Settings

logger = logging.getLogger(__name__)

READY_POLL_SECONDS = 16.0
UPLOAD_DEADLINE_SECONDS = 60.0
UPLOAD_POLL_SECONDS = 0.1
UPLOAD_HEARTBEAT_POLLS = 100
PUBLIC_READ = {"x-amz-acl": "public-read"}


class ComputeApi(Protocol):
    async def describe_instances(
        self,
        ids: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> List[NodeHandle]: ...

    async def describe_instance_status(self, ids: Sequence[str]) -> List[NodeStatus]: ...

    async def run_instances(
        self, launch: LaunchParams, instance_type: str, count: int
    ) -> List[NodeHandle]: ...

    async def create_tags(self, ids: Sequence[str], tag: FleetTag) -> None: ...

    async def terminate_instances(self, ids: Sequence[str]) -> None: ...


class FleetReadinessTimeout(RuntimeError):
    """Nodes did not become ready within the configured max wait."""


class UploadReport(BaseModel):
    """Object keys grouped by how their upload ended."""

    uploaded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    timed_out: List[str] = Field(default_factory=list)


def build_s3_client(settings: S3Settings, credentials: AWSApiKey) -> Minio:
    """Create an S3 client for the report bucket."""
    return Minio(
        settings.endpoint,
        access_key=credentials.access_key_id,
        secret_key=credentials.secret_access_key,
        session_token=credentials.session_token,
        region=settings.region,
        secure=True,
    )


def join_key(*parts: str) -> str:
    """Join object-key fragments, dropping empty ones and stray slashes."""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def _discard_result(future: "asyncio.Future[Any]") -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.debug("Abandoned upload finished with: %s", future.exception())


class FleetManager:
    """
    Fleet lifecycle against a compute API, plus report uploads to object storage.

    Args:
        compute: The compute API (an Ec2Client in production).
        tag: The fleet tag. Fixed for the lifetime of the manager.
        object_store: S3 client used by upload_tree.
        poll_interval: Seconds between readiness polls.
        max_ready_wait: Optional readiness deadline in seconds. None (the
            default) waits for as long as it takes.
        upload_deadline: Seconds after which a single file upload is abandoned.
        upload_poll: Seconds between upload completion checks.
    """

    def __init__(
        self,
        compute: ComputeApi,
        tag: FleetTag,
        *,
        object_store: Optional[Minio] = None,
        poll_interval: float = READY_POLL_SECONDS,
        max_ready_wait: Optional[float] = None,
        upload_deadline: float = UPLOAD_DEADLINE_SECONDS,
        upload_poll: float = UPLOAD_POLL_SECONDS,
    ) -> None:
        self._compute = compute
        self._tag = tag
        self._object_store = object_store
        self._poll_interval = poll_interval
        self._max_ready_wait = max_ready_wait
        self._upload_deadline = upload_deadline
        self._upload_poll = upload_poll

    @property
    def tag(self) -> FleetTag:
        return self._tag

    async def find_existing(self, instance_type: str) -> List[NodeHandle]:
        """Running nodes of this class that carry the fleet tag. No side effects."""
        nodes = await self._compute.describe_instances(
            filters={
                self._tag.as_filter_name(): [self._tag.value],
                "instance-state-name": [NodeState.RUNNING.value],
                "instance-type": [instance_type],
            }
        )
        for node in nodes:
            logger.info(
                "Reservation %s (%s)", node.instance_id, node.state.value
            )
        return nodes

    async def acquire(
        self,
        instance_type: str,
        count: int,
        launch: LaunchParams,
        create_if_missing: bool = True,
    ) -> List[NodeHandle]:
        """
        Reuse running tagged nodes if there are any; otherwise create `count`
        nodes, tag them in one call and wait until they are ready.

        The returned list may be shorter than `count` if the API allocated fewer.
        """
        existing = await self.find_existing(instance_type)
        if existing or not create_if_missing:
            return existing

        logger.info(
            "Did not find any existing instances, starting new ones with %s",
            describe_launch(launch),
        )
        created = await self._compute.run_instances(launch, instance_type, count)
        ids = [node.instance_id for node in created]
        for instance_id in ids:
            logger.info("%s launched", instance_id)
        if len(ids) < count:
            logger.warning("Requested %d instances but only %d launched.", count, len(ids))
        if not ids:
            return []

        await self._compute.create_tags(ids, self._tag)
        return await self.wait_until_ready(ids)

    async def wait_until_ready(self, ids: Sequence[str]) -> List[NodeHandle]:
        """
        Block until every node is `running` and every status check is `ok`.

        The outer loop polls run-state; each outer pass then polls status checks
        until all report ok. Only a pass whose run-state poll saw every node
        running ends the wait.

        Returns:
            The node handles from the last run-state poll, in `ids` order.

        Raises:
            FleetReadinessTimeout: Only when max_ready_wait is set and exceeded.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        latest: Dict[str, NodeHandle] = {}

        all_started = False
        while not all_started:
            await self._ready_sleep(started)
            nodes = await self._compute.describe_instances(ids=ids)
            latest = {node.instance_id: node for node in nodes}
            for node in nodes:
                logger.info("%s %s", node.instance_id, node.state.value)
            all_started = all(
                i in latest and latest[i].state == NodeState.RUNNING for i in ids
            )

            all_initialized = False
            while not all_initialized:
                await self._ready_sleep(started)
                statuses = {
                    s.instance_id: s
                    for s in await self._compute.describe_instance_status(ids)
                }
                for status in statuses.values():
                    logger.info("%s %s", status.instance_id, status.health.value)
                all_initialized = all(
                    i in statuses and statuses[i].health == NodeHealth.OK for i in ids
                )

        return [latest[i] for i in ids]

    async def _ready_sleep(self, started: float) -> None:
        if self._max_ready_wait is not None:
            elapsed = asyncio.get_running_loop().time() - started
            if elapsed >= self._max_ready_wait:
                raise FleetReadinessTimeout(
                    f"Instances not ready after {elapsed:.0f}s "
                    f"(max_ready_wait={self._max_ready_wait}s)."
                )
        await asyncio.sleep(self._poll_interval)

    async def terminate(self, ids: Sequence[str]) -> bool:
        """
        Terminate the given nodes, but only if every one of them carries the
        fleet tag. A single untagged or unknown node aborts the whole batch.

        Returns:
            True if the terminate call was issued.
        """
        if not ids:
            logger.info("No instances to terminate.")
            return False

        nodes = {n.instance_id: n for n in await self._compute.describe_instances(ids=ids)}
        for instance_id in ids:
            node = nodes.get(instance_id)
            if node is None or not node.has_tag(self._tag):
                logger.error(
                    "Aborting since instance %s does not look like a load generator "
                    "(missing tag %s=%s).",
                    instance_id,
                    self._tag.key,
                    self._tag.value,
                )
                return False
            logger.info("Instance %s looks like a load generator.", instance_id)

        logger.info("Terminating %s", list(ids))
        await self._compute.terminate_instances(list(ids))
        return True

    async def upload_tree(
        self,
        bucket: str,
        remote_prefix: str,
        local_dir: str,
        report: Optional[UploadReport] = None,
    ) -> UploadReport:
        """
        Recursively upload `local_dir` under `remote_prefix`, public-read.

        Best effort: a file that fails or exceeds the per-file deadline is
        logged and skipped, and the walk carries on.
        """
        client = self._object_store
        if client is None:
            raise RuntimeError("upload_tree requires an object_store client.")
        report = report if report is not None else UploadReport()

        for entry in sorted(os.scandir(local_dir), key=lambda e: e.name):
            key = join_key(remote_prefix, entry.name)
            if entry.is_dir():
                await self.upload_tree(bucket, key, entry.path, report)
            elif entry.is_file():
                await self._upload_file(client, bucket, key, entry.path, report)
        return report

    async def _upload_file(
        self,
        client: Minio,
        bucket: str,
        key: str,
        path: str,
        report: UploadReport,
    ) -> None:
        def do_fput_object() -> None:
            client.fput_object(
                bucket_name=bucket,
                object_name=key,
                file_path=path,
                metadata=PUBLIC_READ,
            )

        upload = asyncio.create_task(asyncio.to_thread(do_fput_object))
        logger.info("Uploading %s", os.path.abspath(path))

        loop = asyncio.get_running_loop()
        started = loop.time()
        checks = 0
        while not upload.done():
            if loop.time() - started >= self._upload_deadline:
                upload.add_done_callback(_discard_result)
                logger.warning(
                    "Upload of %s did not finish within %.0fs, skipping it.",
                    path,
                    self._upload_deadline,
                )
                report.timed_out.append(key)
                return
            await asyncio.sleep(self._upload_poll)
            checks += 1
            if checks % UPLOAD_HEARTBEAT_POLLS == 0:
                logger.info("Still uploading %s", os.path.abspath(path))

        try:
            upload.result()
        except Exception as exc:
            logger.warning("Failed to upload to S3 %s/%s: %s", bucket, key, exc)
            report.failed.append(key)
            return
        report.uploaded.append(key)
