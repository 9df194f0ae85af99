"""
loadfleet/cli/common.py

Arguments and setup shared by the execute and kill commands: config file
loading with flag overrides, logging, credentials and the FleetManager.
"""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from loadfleet.models.loadfleet_settings import LoadfleetSettings
from loadfleet.models.run_config import RunConfig
from loadfleet.secrets.aws import load_aws_credentials
from loadfleet.services.fleet import FleetManager, build_s3_client
from loadfleet.utils.ec2 import Ec2Client


def add_common_arguments(
    parser: argparse.ArgumentParser, settings: Optional[LoadfleetSettings] = None
) -> None:
    settings = settings or LoadfleetSettings()
    parser.add_argument(
        "--config",
        default=settings.config_path,
        help="YAML run configuration (defaults are used for anything missing; "
        "env: LOADFLEET_CONFIG_PATH).",
    )
    parser.add_argument(
        "--aws-properties",
        default=settings.aws_properties,
        help="Properties file with accessKey/secretKey, tried before the "
        "environment (default: aws.properties).",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Logging level (default: INFO, env: LOADFLEET_LOG_LEVEL).",
    )
    parser.add_argument("--instance-type", help="Override ec2.instance_type.")
    parser.add_argument("--endpoint", help="Override ec2.endpoint.")
    parser.add_argument("--region", help="Override ec2.region (request signing).")
    parser.add_argument("--tag-name", help="Override ec2.tag_name.")
    parser.add_argument("--tag-value", help="Override ec2.tag_value.")
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Log at DEBUG level and trace remote commands.",
    )


def configure_logging(args: argparse.Namespace) -> None:
    logging.basicConfig(
        level=logging.DEBUG if args.debug else args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_config(args: argparse.Namespace) -> RunConfig:
    """Read --config (if any) and apply the flags that were given."""
    config = RunConfig.load(args.config) if args.config else RunConfig()
    config = config.with_overrides(
        "ec2",
        instance_type=args.instance_type,
        endpoint=args.endpoint,
        region=args.region,
        tag_name=args.tag_name,
        tag_value=args.tag_value,
    )
    if args.debug:
        config = config.with_overrides(debug_output=True)
    return config


@asynccontextmanager
async def open_fleet(
    config: RunConfig, aws_properties: str
) -> AsyncGenerator[FleetManager, None]:
    """A FleetManager bound to a live EC2 client for the duration of the block."""
    credentials = await load_aws_credentials(aws_properties)
    object_store = (
        build_s3_client(config.s3, credentials) if config.s3.upload_enabled else None
    )
    async with Ec2Client(
        credentials, endpoint=config.ec2.endpoint, region=config.ec2.region
    ) as ec2:
        yield FleetManager(
            ec2,
            config.ec2.fleet_tag,
            object_store=object_store,
            poll_interval=config.ec2.ready_poll_interval,
            max_ready_wait=config.ec2.max_ready_wait,
        )


def optional_flag(value: bool) -> Optional[bool]:
    """store_true flags only override the file when actually given."""
    return True if value else None
