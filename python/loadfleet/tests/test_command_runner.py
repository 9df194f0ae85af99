import asyncio

import pytest

from loadfleet.utils.async_command_runner import (
    CommandError,
    run_command,
    run_command_unchecked,
    stream_command,
)


def test_unchecked_returns_code_and_both_streams():
    result = asyncio.run(
        run_command_unchecked(["sh", "-c", "echo out; echo err 1>&2; exit 5"])
    )
    assert result.return_code == 5
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"


def test_run_command_strips_stdout():
    assert asyncio.run(run_command(["sh", "-c", "echo '  hi  '"], retries=1)) == "hi"


def test_run_command_raises_with_return_code():
    with pytest.raises(CommandError) as err:
        asyncio.run(run_command(["sh", "-c", "exit 7"], retries=1, sensitive=False))
    assert err.value.return_code == 7
    assert "Command: sh -c exit 7" in str(err.value)


def test_run_command_accepts_listed_codes():
    assert asyncio.run(
        run_command(["sh", "-c", "exit 255"], retries=1, successful_return_codes=[0, 255])
    ) == ""


def test_missing_executable_is_a_command_error():
    with pytest.raises(CommandError):
        asyncio.run(run_command(["/nonexistent/loadfleet-binary"], retries=1))


def test_stream_merges_output_and_returns_exit_code():
    chunks = []
    code = asyncio.run(
        stream_command(
            ["sh", "-c", "echo one; sleep 0.2; echo two 1>&2; exit 3"],
            on_output=chunks.append,
            idle_poll=0.05,
        )
    )
    assert code == 3
    assert "".join(chunks) == "one\ntwo\n"
