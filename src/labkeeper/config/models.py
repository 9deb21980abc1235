"""Pydantic models for labkeeper settings."""

import ipaddress
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def check_cidr(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError:
        raise ValueError(f"'{value}' is not a valid CIDR block (e.g., 203.0.113.10/32)")
    return value


class StateConfig(BaseModel):
    """Where the ledger lives."""

    bucket: str = Field("aws-project-state", min_length=3, max_length=63, description="State bucket name")
    key: str = Field("state.json", min_length=1, description="Object key of the ledger document")
    cache_path: Optional[str] = Field(
        ".labkeeper/state.json", description="Local copy of the last pulled ledger; null disables it"
    )
    consistency: Literal["last_writer_wins", "optimistic"] = "last_writer_wins"


class NetworkConfig(BaseModel):
    """Security group defaults."""

    security_group: str = Field("devops-sg", min_length=1, max_length=255)
    description: str = "Managed by labkeeper"
    ssh_cidr: Optional[str] = Field(None, description="CIDR allowed on port 22")
    http_cidr: Optional[str] = Field(None, description="CIDR allowed on port 80")

    @field_validator("ssh_cidr", "http_cidr")
    @classmethod
    def validate_cidr(cls, v: Optional[str]) -> Optional[str]:
        return check_cidr(v)


class InstanceConfig(BaseModel):
    """EC2 instance defaults."""

    name: str = "AutomationLabInstance"
    type: str = Field("t2.micro", min_length=1)
    image: Optional[str] = Field(None, description="AMI id; latest Amazon Linux 2 when unset")
    key_prefix: str = "automation-lab-key-"
    key_dir: str = Field(".", description="Directory for private key files")
    wait_timeout: float = Field(600, gt=0, description="Seconds to wait for state changes")
    poll_interval: float = Field(15, gt=0, description="Seconds between state polls")


class BucketConfig(BaseModel):
    """S3 bucket defaults."""

    prefix: str = "automation-lab-bucket-"
    versioning: bool = True
    sample_key: str = "welcome.txt"
    tags: Dict[str, str] = Field(default_factory=lambda: {"Environment": "Development"})


class CleanupConfig(BaseModel):
    """Cleanup retry policy."""

    sg_max_attempts: int = Field(5, ge=1, le=50)
    sg_retry_delay: float = Field(5.0, ge=0)
    sg_backoff: Literal["fixed", "exponential"] = "fixed"


class LoggingConfig(BaseModel):
    """Log output."""

    level: str = Field("info", pattern="^(debug|info|warning|error)$")
    dir: Optional[str] = Field(".labkeeper/logs", description="JSON-lines log directory; null disables it")

    @field_validator("level", mode="before")
    @classmethod
    def lower_level(cls, v):
        return v.lower() if isinstance(v, str) else v


class Settings(BaseModel):
    """Complete labkeeper configuration."""

    project: str = Field("aws-project", min_length=1)
    region: str = Field("eu-central-1", pattern=r"^[a-z]{2}(-[a-z]+)+-\d+$")
    profile: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=lambda: {"Project": "AutomationLab"})
    state: StateConfig = Field(default_factory=StateConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    instance: InstanceConfig = Field(default_factory=InstanceConfig)
    bucket: BucketConfig = Field(default_factory=BucketConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
