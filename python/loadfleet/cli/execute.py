#!/usr/bin/env python3
"""
loadfleet/cli/execute.py

Run a distributed Gatling load test on a tagged EC2 fleet.

Usage example:
  python -m loadfleet.cli.execute --config loadtest.yaml \
      --instance-count 4 --simulation com.example.CheckoutSimulation
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import NoReturn

from loadfleet.cli.common import (
    add_common_arguments,
    configure_logging,
    load_config,
    open_fleet,
    optional_flag,
)
from loadfleet.deployment.driver import run_load_test
from loadfleet.utils.ssh import SSHTransport

logger = logging.getLogger(__name__)


def main() -> NoReturn:
    parser = argparse.ArgumentParser(
        prog="loadfleet.cli.execute",
        description="Acquire a tagged EC2 fleet, run Gatling on every node, "
        "collect logs and build the report.",
    )
    add_common_arguments(parser)
    parser.add_argument("--instance-count", type=int, help="Override ec2.instance_count.")
    parser.add_argument("--simulation", help="Override gatling.simulation.")
    parser.add_argument("--test-name", help="Override gatling.test_name.")
    parser.add_argument("--java-opts", help="Override gatling.java_opts.")
    parser.add_argument(
        "--keep-alive",
        action="store_true",
        default=False,
        help="Never terminate the fleet after the run.",
    )
    parser.add_argument(
        "--force-termination",
        action="store_true",
        default=False,
        help="Terminate the fleet even if some nodes failed.",
    )
    parser.add_argument(
        "--detached",
        action="store_true",
        default=False,
        help="Start Gatling in the background and return without a report.",
    )
    parser.add_argument(
        "--propagate-failure",
        action="store_true",
        default=False,
        help="Exit non-zero if any node failed.",
    )
    parser.add_argument(
        "--s3-upload",
        action="store_true",
        default=False,
        help="Upload the report to S3 and write its URL to the results file.",
    )

    args = parser.parse_args()
    configure_logging(args)

    try:
        asyncio.run(_execute(args))
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    else:
        sys.exit(0)


async def _execute(args: argparse.Namespace) -> None:
    config = load_config(args)
    config = config.with_overrides(
        "ec2",
        instance_count=args.instance_count,
        keep_alive=optional_flag(args.keep_alive),
        force_termination=optional_flag(args.force_termination),
    )
    config = config.with_overrides(
        "gatling",
        simulation=args.simulation,
        test_name=args.test_name,
        java_opts=args.java_opts,
    )
    config = config.with_overrides("s3", upload_enabled=optional_flag(args.s3_upload))
    config = config.with_overrides(
        detached=optional_flag(args.detached),
        propagate_failure=optional_flag(args.propagate_failure),
    )

    async with open_fleet(config, args.aws_properties) as fleet:
        summary = await run_load_test(config, fleet, SSHTransport())
    logger.info(
        "Test %s finished on %d node(s), %d failed.",
        summary.test_name,
        len(summary.hosts),
        summary.failed,
    )


if __name__ == "__main__":
    main()
