"""
loadfleet/utils/async_command_runner.py

Provides asynchronous local command runners:
  - run_command: capture stdout, raise CommandError on unexpected exit codes,
    with optional retries.
  - run_command_unchecked: capture stdout/stderr and return them with the exit
    code, never raising on the code.
  - stream_command: forward output chunk by chunk as it arrives and return the
    exit code, for long-running commands a human watches live.

Usage example:
    from loadfleet.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["ssh", "-O", "check", "host"], retries=1)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Callable, Dict, List, NamedTuple, Optional

from loadfleet.utils.async_retry import async_retry

OUTPUT_CHUNK_SIZE = 1024
IDLE_POLL_SECONDS = 1.0


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


class CommandResult(NamedTuple):
    return_code: int
    stdout: str
    stderr: str


def _build_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if env is None:
        return None
    proc_env = os.environ.copy()
    proc_env.update(env)
    return proc_env


async def run_command_unchecked(
    command: List[str],
    *,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> CommandResult:
    """
    Run a local command to completion and capture both output streams.

    Raises:
        OSError: If the executable cannot be started at all.
    """
    proc = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_build_env(env),
        cwd=cwd,
    )
    stdout_bytes, stderr_bytes = await proc.communicate()
    return_code = proc.returncode if proc.returncode is not None else -1
    return CommandResult(
        return_code=return_code,
        stdout=stdout_bytes.decode(errors="replace"),
        stderr=stderr_bytes.decode(errors="replace"),
    )


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    When `sensitive=True`, the command, stdout, and stderr are left out of the
    raised error message.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            Total attempts. Defaults to 3.
        retry_delay (float):
            Delay in seconds between attempts. Defaults to 1.0.

    Returns:
        str: The captured stdout of the command on success, stripped.

    Raises:
        CommandError: If the command fails after all retries.
    """
    accepted = successful_return_codes or [0]

    @async_retry(retries=retries, delay=retry_delay)
    async def _inner_run_command() -> str:
        try:
            result = await run_command_unchecked(command, env=env, cwd=cwd)
        except OSError as exc:
            raise CommandError(f"Could not start {command[0]}: {exc}") from exc

        if result.return_code not in accepted:
            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {result.stdout.strip()}"
                    f"\nStderr: {result.stderr.strip()}"
                )
            raise CommandError(
                f"Command failed with return code {result.return_code}.{detail}",
                result.return_code,
            )

        return result.stdout.strip()

    return await _inner_run_command()


def write_to_console(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def stream_command(
    command: List[str],
    *,
    on_output: Callable[[str], None] = write_to_console,
    idle_poll: float = IDLE_POLL_SECONDS,
    env: Optional[Dict[str, str]] = None,
) -> int:
    """
    Run a command, handing its merged stdout/stderr to `on_output` chunk by
    chunk while it runs, and return its exit code.

    The output pipe is drained until the process closes it; when no data is
    available the loop waits up to `idle_poll` seconds before checking again.
    A non-zero exit code is returned, not raised.

    Raises:
        CommandError: If the executable cannot be started.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=_build_env(env),
        )
    except OSError as exc:
        raise CommandError(f"Could not start {command[0]}: {exc}") from exc

    stdout = proc.stdout
    if stdout is None:
        raise CommandError(f"No output pipe for {command[0]}")
    while True:
        try:
            chunk = await asyncio.wait_for(
                stdout.read(OUTPUT_CHUNK_SIZE), timeout=idle_poll
            )
        except asyncio.TimeoutError:
            continue
        if not chunk:
            break
        on_output(chunk.decode(errors="replace"))

    return await proc.wait()
