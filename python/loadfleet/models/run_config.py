"""
loadfleet/models/run_config.py

The immutable per-invocation configuration record. Every section is a frozen
Pydantic model; the whole record is read from YAML.

Sections:
  - Ec2Settings:     fleet size, image, network selection, tag, termination flags
  - SshSettings:     remote-shell user and key
  - GatlingSettings: install script, workload files, runtime options
  - S3Settings:      report upload
  - RunConfig:       the above plus execution-mode flags
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from loadfleet.models.fleet import (
    FleetTag,
    LaunchParams,
    NamedSecurityGroupLaunch,
    SecurityGroupIdLaunch,
)


class Ec2Settings(BaseModel):
    """Compute fleet settings.

    Attributes:
        instance_count: Nodes to create when none are found.
        instance_type: Node class; also part of the discovery filter.
        ami_id: Image to boot. Defaults to Amazon Linux.
        key_pair_name: EC2 key pair installed on new nodes.
        security_group: Named security group (default-VPC launches).
        security_group_id: Security group id; selects the subnet launch form.
        subnet_id: Subnet for the security-group-id launch form.
        endpoint: EC2 API endpoint.
        region: Region used when signing EC2 requests.
        tag_name / tag_value: The fleet tag.
        force_termination: Terminate even if some nodes failed.
        keep_alive: Never terminate, leave nodes for the next run.
        prefer_private_ip_hostnames: Connect to private addresses.
        ready_poll_interval: Seconds between readiness polls.
        max_ready_wait: Optional deadline for readiness, None waits forever.
    """

    model_config = ConfigDict(frozen=True)

    instance_count: int = Field(default=1, ge=1)
    instance_type: str = "m3.medium"
    ami_id: str = "ami-b66ed3de"
    key_pair_name: str = "gatling-key-pair"
    security_group: str = "gatling-security-group"
    security_group_id: Optional[str] = None
    subnet_id: Optional[str] = None
    endpoint: str = "https://ec2.us-east-1.amazonaws.com"
    region: str = "us-east-1"
    tag_name: str = "Name"
    tag_value: str = "Gatling Load Generator"
    force_termination: bool = False
    keep_alive: bool = False
    prefer_private_ip_hostnames: bool = False
    ready_poll_interval: float = Field(default=16.0, ge=0.0)
    max_ready_wait: Optional[float] = Field(default=None, gt=0.0)

    @model_validator(mode="after")
    def check_subnet(self) -> Ec2Settings:
        if self.security_group_id and not self.subnet_id:
            raise ValueError("subnet_id is required when security_group_id is set.")
        return self

    @property
    def fleet_tag(self) -> FleetTag:
        return FleetTag(key=self.tag_name, value=self.tag_value)

    def launch_params(self) -> LaunchParams:
        """Pick the launch form: security group id + subnet wins when given."""
        if self.security_group_id:
            return SecurityGroupIdLaunch(
                image_id=self.ami_id,
                key_pair_name=self.key_pair_name,
                security_group_id=self.security_group_id,
                subnet_id=self.subnet_id or "",
            )
        return NamedSecurityGroupLaunch(
            image_id=self.ami_id,
            key_pair_name=self.key_pair_name,
            security_group=self.security_group,
        )


class SshSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: str = "ec2-user"
    private_key_path: str = "~/gatling-private-key.pem"
    port: int = Field(default=22, ge=1, le=65535)

    def resolved_key_path(self) -> str:
        return str(Path(self.private_key_path).expanduser().absolute())


class GatlingSettings(BaseModel):
    """Workload files and runtime options.

    Relative paths are resolved against the working directory of the run.
    """

    model_config = ConfigDict(frozen=True)

    install_script: str = "src/test/resources/scripts/install-gatling.sh"
    source_dir: str = "src/test/scala"
    simulation: str = "Simulation"
    resources_dir: str = "src/test/resources"
    test_name: str = ""
    config_file: Optional[str] = "src/test/resources/config.properties"
    local_results_dir: str = "target/gatling/results"
    local_home: str = "~/gatling/gatling-charts-highcharts-bundle-2.1.4/bin/gatling.sh"
    root: str = "gatling-charts-highcharts-bundle-2.1.4"
    java_opts: str = "-Xms1g -Xmx6g"
    files: List[str] = Field(default_factory=list)
    build_output_dir: str = "target"
    conf_dir: str = "src/test/resources/conf"


class S3Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    upload_enabled: bool = False
    region: str = "us-west-1"
    bucket: str = "loadtest-results"
    subfolder: str = ""
    endpoint: str = "s3.amazonaws.com"


class RunConfig(BaseModel):
    """
    Everything one fleet lifecycle needs.

    Attributes:
        debug_output: Trace remote commands before running them.
        detached: Fire-and-forget launch; no report, no termination.
        download_remote_log: Also fetch `remote_log_path` after attached runs.
        remote_log_path: Remote file fetched on request; detached runs write
            their console output there.
        propagate_failure: Turn failed nodes into a hard error after cleanup.
        results_file: Where the public report URL is written.
    """

    model_config = ConfigDict(frozen=True)

    ec2: Ec2Settings = Field(default_factory=Ec2Settings)
    ssh: SshSettings = Field(default_factory=SshSettings)
    gatling: GatlingSettings = Field(default_factory=GatlingSettings)
    s3: S3Settings = Field(default_factory=S3Settings)

    debug_output: bool = False
    detached: bool = False
    download_remote_log: bool = False
    remote_log_path: str = "gatling-run.log"
    propagate_failure: bool = False
    results_file: str = "results.txt"

    @classmethod
    def from_yaml(cls, yaml_str: str) -> RunConfig:
        """
        Deserialize a RunConfig from a YAML string. An empty document yields
        the defaults.
        """
        data = yaml.safe_load(yaml_str) or {}
        return cls.model_validate(data)

    @classmethod
    def load(cls, path: str) -> RunConfig:
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        return yaml.dump(self.model_dump(), sort_keys=sort_keys)

    def with_overrides(self, section: Optional[str] = None, **values: Any) -> RunConfig:
        """
        Return a copy with the given fields replaced, skipping None values so
        unset CLI flags keep the file's settings.
        """
        updates = {k: v for k, v in values.items() if v is not None}
        if not updates:
            return self
        if section is None:
            return self.model_validate({**self.model_dump(), **updates})
        current = getattr(self, section)
        merged = current.model_validate({**current.model_dump(), **updates})
        return self.model_copy(update={section: merged})
