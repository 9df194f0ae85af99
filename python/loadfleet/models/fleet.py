"""
loadfleet/models/fleet.py

Holds the Pydantic models describing fleet nodes:
  - FleetTag
  - NodeState / NodeHealth
  - NodeHandle
  - NamedSecurityGroupLaunch / SecurityGroupIdLaunch (the LaunchParams variant)
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Annotated


class FleetTag(BaseModel):
    """
    Key/value pair marking a node as owned by this tool. Every created node gets
    it; no node without it is ever terminated.
    """

    model_config = ConfigDict(frozen=True)

    key: str = "Name"
    value: str = "Gatling Load Generator"

    def as_filter_name(self) -> str:
        return f"tag:{self.key}"


class NodeState(str, Enum):
    """EC2 instance run-states."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"


class NodeHealth(str, Enum):
    """EC2 instance status-check values."""

    OK = "ok"
    IMPAIRED = "impaired"
    INITIALIZING = "initializing"
    INSUFFICIENT_DATA = "insufficient-data"
    NOT_APPLICABLE = "not-applicable"


class NodeHandle(BaseModel):
    """
    Cached view of one compute node, refreshed only by polling.

    Attributes:
        instance_id: Cloud-assigned identifier.
        state: Last observed run-state.
        instance_type: Node size/class.
        public_dns_name: Public hostname, empty until the node runs.
        private_ip_address: Private address, may be empty while pending.
        tags: Tag key -> value.
    """

    model_config = ConfigDict(frozen=True)

    instance_id: str
    state: NodeState = NodeState.PENDING
    instance_type: str = ""
    public_dns_name: str = ""
    private_ip_address: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)

    def has_tag(self, tag: FleetTag) -> bool:
        return self.tags.get(tag.key) == tag.value

    def hostname(self, prefer_private: bool = False) -> str:
        """Address workers connect to, picked by the private/public policy."""
        if prefer_private:
            return self.private_ip_address
        return self.public_dns_name


class NodeStatus(BaseModel):
    """One instance-status record: run-state plus health checks."""

    instance_id: str
    state: NodeState
    health: NodeHealth = NodeHealth.NOT_APPLICABLE


class NamedSecurityGroupLaunch(BaseModel):
    """Launch into the default network with a security group referenced by name."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["named_group"] = "named_group"
    image_id: str
    key_pair_name: str
    security_group: str


class SecurityGroupIdLaunch(BaseModel):
    """Launch into a specific subnet with a security group referenced by id."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["group_id"] = "group_id"
    image_id: str
    key_pair_name: str
    security_group_id: str
    subnet_id: str


LaunchParams = Annotated[
    Union[NamedSecurityGroupLaunch, SecurityGroupIdLaunch],
    Field(discriminator="kind"),
]


def describe_launch(launch: LaunchParams) -> str:
    """Short human-readable description of the network selection."""
    if isinstance(launch, SecurityGroupIdLaunch):
        return (
            f"security group id: '{launch.security_group_id}' "
            f"and subnet: '{launch.subnet_id}'"
        )
    return f"security group: '{launch.security_group}'"


__all__ = [
    "FleetTag",
    "NodeState",
    "NodeHealth",
    "NodeHandle",
    "NodeStatus",
    "NamedSecurityGroupLaunch",
    "SecurityGroupIdLaunch",
    "LaunchParams",
    "describe_launch",
]
