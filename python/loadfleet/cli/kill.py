#!/usr/bin/env python3
"""
loadfleet/cli/kill.py

Terminate every running fleet node of the configured instance type.

Usage example:
  python -m loadfleet.cli.kill --config loadtest.yaml --tag-value "Gatling Load Generator"
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import NoReturn

from loadfleet.cli.common import (
    add_common_arguments,
    configure_logging,
    load_config,
    open_fleet,
)
from loadfleet.deployment.driver import kill_fleet


def main() -> NoReturn:
    parser = argparse.ArgumentParser(
        prog="loadfleet.cli.kill",
        description="Terminate running EC2 nodes that carry the fleet tag.",
    )
    add_common_arguments(parser)
    args = parser.parse_args()
    configure_logging(args)

    try:
        terminated = asyncio.run(_kill(args))
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    if not terminated:
        print("ERROR: refusing to terminate untagged instances", file=sys.stderr)
        sys.exit(1)
    sys.exit(0)


async def _kill(args: argparse.Namespace) -> bool:
    config = load_config(args)
    async with open_fleet(config, args.aws_properties) as fleet:
        return await kill_fleet(config, fleet)


if __name__ == "__main__":
    main()
