"""
loadfleet/secrets/aws.py

Resolves AWS credentials through a provider chain, first hit wins:
  1) a properties file (default `aws.properties`) with accessKey/secretKey
  2) environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_SESSION_TOKEN)
  3) the shared credentials file profile (AWS_PROFILE, default "default")
  4) the EC2 instance metadata service (IMDSv2)
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import aiofiles
import aiofiles.ospath
import aiohttp

from loadfleet.models.credentials import AWSApiKey

logger = logging.getLogger(__name__)

IMDS_URL = "http://169.254.169.254/latest"
IMDS_TIMEOUT = 2.0


class CredentialsNotFound(RuntimeError):
    """No provider in the chain produced credentials."""


async def _read_text(path: str) -> Optional[str]:
    if not await aiofiles.ospath.isfile(path):
        return None
    async with aiofiles.open(path, "r", encoding="utf-8") as fh:
        return await fh.read()


async def credentials_from_properties(path: str) -> Optional[AWSApiKey]:
    text = await _read_text(path)
    return AWSApiKey.from_properties(text) if text is not None else None


async def credentials_from_shared_file(
    env: Mapping[str, str],
) -> Optional[AWSApiKey]:
    path = env.get("AWS_SHARED_CREDENTIALS_FILE") or str(
        Path("~/.aws/credentials").expanduser()
    )
    text = await _read_text(path)
    if text is None:
        return None
    return AWSApiKey.from_shared_credentials(text, env.get("AWS_PROFILE", "default"))


async def credentials_from_instance_metadata(
    base_url: str = IMDS_URL, timeout: float = IMDS_TIMEOUT
) -> Optional[AWSApiKey]:
    """
    Fetch role credentials from the instance metadata service. Returns None
    when not running on EC2 or no role is attached.
    """
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.put(
                f"{base_url}/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": "60"},
            ) as resp:
                if resp.status != 200:
                    return None
                token = await resp.text()
            headers = {"X-aws-ec2-metadata-token": token}
            role_url = f"{base_url}/meta-data/iam/security-credentials/"
            async with session.get(role_url, headers=headers) as resp:
                if resp.status != 200:
                    return None
                role = (await resp.text()).strip().splitlines()[0]
            async with session.get(role_url + role, headers=headers) as resp:
                if resp.status != 200:
                    return None
                doc = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, IndexError) as exc:
        logger.debug("Instance metadata credentials unavailable: %s", exc)
        return None
    return AWSApiKey.from_instance_metadata(doc)


async def load_aws_credentials(
    properties_path: str = "aws.properties",
    *,
    env: Optional[Mapping[str, str]] = None,
    use_instance_metadata: bool = True,
) -> AWSApiKey:
    """
    Walk the provider chain and return the first credentials found.

    Raises:
        CredentialsNotFound: If no provider yields credentials.
    """
    environ = os.environ if env is None else env

    key = await credentials_from_properties(properties_path)
    if key is not None:
        logger.debug("Using AWS credentials from %s", properties_path)
        return key

    key = AWSApiKey.from_env(environ)
    if key is not None:
        logger.debug("Using AWS credentials from the environment")
        return key

    key = await credentials_from_shared_file(environ)
    if key is not None:
        logger.debug("Using AWS credentials from the shared credentials file")
        return key

    if use_instance_metadata:
        key = await credentials_from_instance_metadata()
        if key is not None:
            logger.debug("Using AWS credentials from instance metadata")
            return key

    raise CredentialsNotFound(
        "No AWS credentials found in aws.properties, the environment, "
        "the shared credentials file, or instance metadata."
    )
