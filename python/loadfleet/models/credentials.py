"""
loadfleet/models/credentials.py

Provides the AWSApiKey pydantic model, plus parsers for the places credentials
are read from (Java-style properties files, environment variables, the shared
credentials file and the instance metadata service).
"""

from __future__ import annotations

import configparser
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class AWSApiKey(BaseModel):
    """Pydantic model for AWS credentials used to sign EC2 and S3 requests."""

    model_config = ConfigDict(frozen=True)

    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    @field_validator("access_key_id", "secret_access_key")
    @classmethod
    def validate_non_empty(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("AWS key fields must be non-empty strings")
        return val.strip()

    @classmethod
    def from_properties(cls, text: str) -> Optional[AWSApiKey]:
        """
        Parse a properties file holding `accessKey=` and `secretKey=` lines.

        Returns:
            The key, or None if either property is missing.
        """
        props: Dict[str, str] = {}
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith(("#", "!")):
                continue
            sep = min(
                (idx for idx in (line.find("="), line.find(":")) if idx >= 0),
                default=-1,
            )
            if sep < 0:
                continue
            props[line[:sep].strip()] = line[sep + 1 :].strip()

        if not props.get("accessKey") or not props.get("secretKey"):
            return None
        return cls(
            access_key_id=props["accessKey"],
            secret_access_key=props["secretKey"],
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> Optional[AWSApiKey]:
        access = env.get("AWS_ACCESS_KEY_ID") or env.get("AWS_ACCESS_KEY")
        secret = env.get("AWS_SECRET_ACCESS_KEY") or env.get("AWS_SECRET_KEY")
        if not access or not secret:
            return None
        return cls(
            access_key_id=access,
            secret_access_key=secret,
            session_token=env.get("AWS_SESSION_TOKEN") or None,
        )

    @classmethod
    def from_shared_credentials(cls, text: str, profile: str) -> Optional[AWSApiKey]:
        """Read one profile out of an `~/.aws/credentials` style INI document."""
        parser = configparser.ConfigParser()
        parser.read_string(text)
        if not parser.has_section(profile):
            return None
        section = parser[profile]
        access = section.get("aws_access_key_id")
        secret = section.get("aws_secret_access_key")
        if not access or not secret:
            return None
        return cls(
            access_key_id=access,
            secret_access_key=secret,
            session_token=section.get("aws_session_token") or None,
        )

    @classmethod
    def from_instance_metadata(cls, doc: Dict[str, Any]) -> AWSApiKey:
        """Build from the JSON document served by the instance metadata service."""
        return cls(
            access_key_id=doc["AccessKeyId"],
            secret_access_key=doc["SecretAccessKey"],
            session_token=doc.get("Token") or None,
        )


__all__ = ["AWSApiKey"]
