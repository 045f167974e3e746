from vpcec2.builder import build
from vpcec2.graph import (
    Join,
    OutputRecord,
    Ref,
    ResourceGraph,
    ResourceKind,
    ResourceNode,
)
from vpcec2.schema import DeploymentTarget, EnvironmentConfig

__all__ = [
    "build",
    "DeploymentTarget",
    "EnvironmentConfig",
    "Join",
    "OutputRecord",
    "Ref",
    "ResourceGraph",
    "ResourceKind",
    "ResourceNode",
]
