"""
loadfleet/utils/ssh.py

Remote-shell transport built on the OpenSSH client binaries:
  - ssh_session: open one authenticated master connection (with exponential
    backoff) that later ssh/sftp invocations multiplex over, and always close it.
  - upload_files: push a whole list of TransferSpecs through one session using
    a single sftp batch.
  - download_file: fetch one remote file over its own session.
  - execute_command: run a remote command with a pseudo-terminal, streaming its
    output live, and return the exit status as data.

Host keys are accepted without verification (known_hosts is discarded). That is
only acceptable for the short-lived nodes this tool creates and tears down.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, List, Optional, Sequence

import aiofiles

from loadfleet.models.ssh import SSHTarget, TransferSpec
from loadfleet.utils.async_command_runner import (
    CommandError,
    run_command,
    stream_command,
    write_to_console,
)
from loadfleet.utils.async_retry import async_retry
from loadfleet.utils.ephemeral_file import ephemeral_path

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 8
CONNECT_INITIAL_DELAY = 0.1
CONNECT_BACKOFF = 2.0

_SFTP_SPECIAL = ("\\", '"', "*", "?", "[", "]")


def _sftp_quote(path: str) -> str:
    escaped = path
    for ch in _SFTP_SPECIAL:
        escaped = escaped.replace(ch, "\\" + ch)
    return f'"{escaped}"'


def build_sftp_batch(specs: Sequence[TransferSpec], *, upload: bool = True) -> str:
    """
    Render sftp batch commands, one `put -r` (or `get`) per spec.

    An empty upload destination leaves the remote path off, so sftp drops the
    file into the remote working directory (the user's home).
    """
    lines: List[str] = []
    for spec in specs:
        if upload:
            line = f"put -r {_sftp_quote(spec.source)}"
            if spec.destination:
                line += f" {_sftp_quote(spec.destination)}"
        else:
            line = f"get {_sftp_quote(spec.source)} {_sftp_quote(spec.destination)}"
        lines.append(line)
    return "\n".join(lines) + "\n"


class SSHSession:
    """
    One OpenSSH master connection to a target. Commands built with
    `ssh_args`/`sftp_args` reuse it through the control socket.
    """

    def __init__(self, target: SSHTarget, control_path: str) -> None:
        self.target = target
        self.control_path = control_path
        self._open = False

    def _options(self) -> List[str]:
        return [
            "-o",
            f"Port={self.target.port}",
            "-o",
            f"IdentityFile={self.target.private_key_path}",
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "GlobalKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            "-o",
            "Compression=yes",
            "-o",
            f"ControlPath={self.control_path}",
        ]

    def ssh_args(self, *extra: str, remote_command: Optional[str] = None) -> List[str]:
        args = ["ssh", *self._options(), *extra, self.target.destination]
        if remote_command is not None:
            args.append(remote_command)
        return args

    def sftp_args(self, batch_path: str) -> List[str]:
        return ["sftp", "-b", batch_path, *self._options(), self.target.destination]

    async def connect(
        self,
        *,
        attempts: int = CONNECT_ATTEMPTS,
        initial_delay: float = CONNECT_INITIAL_DELAY,
        backoff: float = CONNECT_BACKOFF,
    ) -> None:
        """
        Start the master connection, retrying with exponential backoff.

        Raises:
            CommandError: If the final attempt fails.
        """
        master_cmd = self.ssh_args(
            "-o",
            "ControlMaster=yes",
            "-o",
            "ControlPersist=yes",
            "-o",
            "ConnectTimeout=30",
            "-f",
            "-N",
        )

        @async_retry(
            retries=attempts,
            delay=initial_delay,
            backoff=backoff,
            noisy=True,
            retry_on=(CommandError,),
        )
        async def _start_master() -> None:
            try:
                await run_command(master_cmd, retries=1)
            except CommandError as exc:
                logger.warning(
                    "Failed to login to host %s as user %s. Exception: %s.",
                    self.target.hostname,
                    self.target.user,
                    exc,
                )
                raise

        await _start_master()
        self._open = True

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            await run_command(
                self.ssh_args("-O", "exit"),
                retries=1,
                successful_return_codes=[0, 255],
            )
        except CommandError as exc:
            logger.warning(
                "Could not close SSH master for %s: %s", self.target.hostname, exc
            )


@asynccontextmanager
async def ssh_session(
    target: SSHTarget,
    *,
    attempts: int = CONNECT_ATTEMPTS,
    initial_delay: float = CONNECT_INITIAL_DELAY,
    backoff: float = CONNECT_BACKOFF,
) -> AsyncGenerator[SSHSession, None]:
    """
    Open a master connection for the duration of the block. Teardown runs even
    when the block raises.
    """
    async with ephemeral_path("ctl", prefix="lf-ssh-") as control_path:
        session = SSHSession(target, control_path)
        await session.connect(
            attempts=attempts, initial_delay=initial_delay, backoff=backoff
        )
        try:
            yield session
        finally:
            await session.close()


async def _run_sftp_batch(session: SSHSession, batch: str) -> None:
    async with ephemeral_path("batch", prefix="lf-sftp-") as batch_path:
        async with aiofiles.open(batch_path, "w", encoding="utf-8") as fbatch:
            await fbatch.write(batch)
        await run_command(session.sftp_args(batch_path), sensitive=False, retries=1)


async def upload_files(target: SSHTarget, specs: Sequence[TransferSpec]) -> None:
    """
    Upload every spec, in order, over one session.

    Raises:
        CommandError: If connecting fails or any single transfer fails.
    """
    if not specs:
        return
    async with ssh_session(target) as session:
        for spec in specs:
            logger.info(
                "%s > Copying %s to %s",
                target.hostname,
                spec.source,
                spec.destination or "~",
            )
        await _run_sftp_batch(session, build_sftp_batch(specs, upload=True))


async def download_file(target: SSHTarget, spec: TransferSpec) -> None:
    """Fetch one remote file to a local path, creating the local directory."""
    parent = os.path.dirname(os.path.abspath(spec.destination))
    os.makedirs(parent, exist_ok=True)
    async with ssh_session(target) as session:
        logger.info(
            "%s > Downloading %s to %s", target.hostname, spec.source, spec.destination
        )
        await _run_sftp_batch(session, build_sftp_batch([spec], upload=False))


async def execute_command(
    target: SSHTarget,
    command: str,
    *,
    debug: bool = False,
    on_output: Callable[[str], None] = write_to_console,
) -> int:
    """
    Run `command` on the target, streaming its output, and return the remote
    exit status. A non-zero status is returned, not raised.

    Raises:
        CommandError: If no connection could be established.
    """
    async with ssh_session(target) as session:
        if debug:
            logger.info("%s > About to run: %s", target.hostname, command)
        exit_code = await stream_command(
            session.ssh_args("-tt", remote_command=command),
            on_output=on_output,
        )
        if exit_code != 0:
            logger.info("%s > exit code: %d", target.hostname, exit_code)
        return exit_code


class SSHTransport:
    """The three transport operations behind one object."""

    async def upload(self, target: SSHTarget, specs: Sequence[TransferSpec]) -> None:
        await upload_files(target, specs)

    async def download(self, target: SSHTarget, spec: TransferSpec) -> None:
        await download_file(target, spec)

    async def execute(self, target: SSHTarget, command: str, *, debug: bool = False) -> int:
        return await execute_command(target, command, debug=debug)
