"""
Schema definitions for VPC + EC2 environments.

This module provides the configuration records consumed by the stack builder:
the per-environment settings and the deployment target the stack is
synthesized for.
"""

import hashlib
import re
from typing import Any, Optional, Tuple

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ._unpack_tags import normalize_tags, unpack_tags

env_prefix = "VPC_EC2_"

DEFAULT_PROJECT_TAG = "demo"
DEFAULT_ENVIRONMENT_TAG = "development"
DEFAULT_VPC_CIDR = "10.0.0.0/16"
DEFAULT_PRIVATE_SUBNET_CIDR = "10.0.1.0/24"
DEFAULT_AVAILABILITY_ZONE = "us-east-1a"
DEFAULT_INSTANCE_TYPE = "t3.micro"
DEFAULT_STACK_NAME = "VpcEc2Stack"


class _EnvironmentSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", env_prefix=env_prefix
    )
    project_tag: Optional[str] = None
    environment_tag: Optional[str] = None
    vpc_cidr: Optional[str] = None
    private_subnet_cidr: Optional[str] = None
    availability_zone: Optional[str] = None
    instance_type: Optional[str] = None
    extra_tags_str: Optional[str] = None  # in the format "key1=value1;key2=value2"


class EnvironmentConfig(BaseModel, frozen=True):
    """
    Configuration for one VPC + EC2 environment.

    Every field is optional; unset fields take their default when the
    configuration is resolved.

    Attributes:
        project_tag: Project name, used in Name tags and the role name
            (defaults to "demo")
        environment_tag: Environment name (defaults to "development")
        vpc_cidr: CIDR block of the VPC (defaults to 10.0.0.0/16)
        private_subnet_cidr: CIDR block of the single isolated subnet
            (defaults to 10.0.1.0/24)
        availability_zone: Zone the subnet lives in (defaults to us-east-1a)
        instance_type: EC2 instance type (defaults to t3.micro)
        tags: tuple of 2-tuples of free-form tags applied to every resource
    """

    project_tag: Optional[str] = None
    environment_tag: Optional[str] = None
    vpc_cidr: Optional[str] = None
    private_subnet_cidr: Optional[str] = None
    availability_zone: Optional[str] = None
    instance_type: Optional[str] = None
    tags: Tuple[Tuple[str, str], ...] = ()

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> Tuple[Tuple[str, str], ...]:
        return normalize_tags(value)

    @classmethod
    def from_settings(cls, **kwargs):
        """Create an instance from environment settings with optional overrides."""
        settings = _EnvironmentSettings()

        params = {
            "project_tag": settings.project_tag,
            "environment_tag": settings.environment_tag,
            "vpc_cidr": settings.vpc_cidr,
            "private_subnet_cidr": settings.private_subnet_cidr,
            "availability_zone": settings.availability_zone,
            "instance_type": settings.instance_type,
            "tags": unpack_tags(settings.extra_tags_str),
        }

        # Override with any provided kwargs
        params.update(kwargs)

        return cls(**params)

    def resolve_defaults(self) -> "EnvironmentConfig":
        """Return a copy with every unset field replaced by its default."""
        return self.model_copy(
            update={
                "project_tag": self.project_tag or DEFAULT_PROJECT_TAG,
                "environment_tag": self.environment_tag or DEFAULT_ENVIRONMENT_TAG,
                "vpc_cidr": self.vpc_cidr or DEFAULT_VPC_CIDR,
                "private_subnet_cidr": self.private_subnet_cidr
                or DEFAULT_PRIVATE_SUBNET_CIDR,
                "availability_zone": self.availability_zone
                or DEFAULT_AVAILABILITY_ZONE,
                "instance_type": self.instance_type or DEFAULT_INSTANCE_TYPE,
            }
        )

    def fingerprint(self) -> str:
        """Short digest of the CIDR blocks, used to suffix logical ids.

        Only the CIDRs go in: changing either one replaces the VPC or subnet
        anyway, while every other field updates resources in place.
        """
        resolved = self.resolve_defaults()
        key = f"{resolved.vpc_cidr}|{resolved.private_subnet_cidr}"
        digest = hashlib.sha256(key.encode("utf-8"))
        return digest.hexdigest()[:8].upper()


class DeploymentTarget(BaseModel, frozen=True):
    """
    Where a stack is deployed.

    Attributes:
        stack_name: CloudFormation stack name, used in export names and the
            bootstrap log lines
        region: AWS region (optional, derived from the availability zone
            otherwise)
    """

    stack_name: str = DEFAULT_STACK_NAME
    region: Optional[str] = None

    @classmethod
    def for_config(
        cls, config: EnvironmentConfig, **kwargs
    ) -> "DeploymentTarget":
        target = cls(**kwargs)
        if target.region is None:
            zone = config.availability_zone or DEFAULT_AVAILABILITY_ZONE
            target = target.model_copy(update={"region": region_of_zone(zone)})
        return target


# Region prefix of an AZ, Local Zone or Wavelength Zone name:
# us-east-1a, us-west-2-lax-1a, us-gov-west-1a, ap-northeast-1-wl1-nrt-wlz-1
_REGION_PATTERN = re.compile(r"^([a-z]{2}(?:-gov|-iso[a-z]?)?-[a-z]+-\d+)")


def region_of_zone(availability_zone: str) -> str:
    match = _REGION_PATTERN.match(availability_zone)
    if match is None:
        raise ValueError(
            f"Cannot derive a region from availability zone '{availability_zone}'"
        )
    return match.group(1)
