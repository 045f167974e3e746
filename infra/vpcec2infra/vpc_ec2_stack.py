"""Module for deploying the VPC + EC2 resource graph using AWS CDK.

The resources themselves are described by ``vpcec2.build``; this stack turns
each declared resource into the matching CloudFormation (L1) construct, keeping
the logical ids from the graph so the synthesized template lines up with it.
"""

from logging import getLogger
from typing import Any, Callable, Dict, Optional

import aws_cdk as cdk
import aws_cdk.aws_ec2 as ec2
import aws_cdk.aws_iam as iam
from constructs import Construct

from vpcec2 import (
    DeploymentTarget,
    EnvironmentConfig,
    Join,
    Ref,
    ResourceGraph,
    ResourceKind,
    ResourceNode,
    build,
)

logger = getLogger(__name__)

# Same placeholder rule CDK uses for SecurityGroup(allow_all_outbound=False):
# an egress rule that can never match replaces the VPC default allow-all.
DISALLOW_ALL_EGRESS = ec2.CfnSecurityGroup.EgressProperty(
    ip_protocol="icmp",
    cidr_ip="255.255.255.255/32",
    description="Disallow all traffic",
    from_port=252,
    to_port=86,
)


class VpcEc2Stack(cdk.Stack):
    """CDK Stack for one VPC + EC2 environment.

    Creates a VPC with a single isolated subnet, SSM interface endpoints and
    an EC2 instance reachable through Session Manager.
    """

    def __init__(
        self,
        scope: Construct,
        id: str,
        config: Optional[EnvironmentConfig] = None,
        **kwargs,
    ) -> None:
        """Initialize the VPC + EC2 stack.

        Args:
            scope: The parent construct.
            id: The construct ID.
            config: Environment configuration; unset fields take their defaults.
            **kwargs: Additional keyword arguments passed to the parent Stack.
        """
        super().__init__(scope, id, **kwargs)

        self.graph: ResourceGraph = build(
            config,
            DeploymentTarget(stack_name=self.stack_name, region=self.region),
        )
        self.resources: Dict[str, cdk.CfnResource] = {}

        materializers: Dict[ResourceKind, Callable[[ResourceNode], cdk.CfnResource]] = {
            ResourceKind.VPC: self._vpc,
            ResourceKind.SUBNET: self._subnet,
            ResourceKind.ROUTE_TABLE: self._route_table,
            ResourceKind.ROUTE_TABLE_ASSOCIATION: self._route_table_association,
            ResourceKind.SECURITY_GROUP: self._security_group,
            ResourceKind.SECURITY_GROUP_INGRESS: self._security_group_ingress,
            ResourceKind.SECURITY_GROUP_EGRESS: self._security_group_egress,
            ResourceKind.VPC_ENDPOINT: self._vpc_endpoint,
            ResourceKind.IAM_ROLE: self._role,
            ResourceKind.INSTANCE_PROFILE: self._instance_profile,
            ResourceKind.INSTANCE: self._instance,
        }

        for node in self.graph.nodes:
            resource = materializers[node.kind](node)
            resource.override_logical_id(node.logical_id)
            for dependency in node.depends_on:
                resource.add_dependency(self.resources[dependency])
            for key, value in node.tags:
                cdk.Tags.of(resource).add(key, value)
            self.resources[node.logical_id] = resource

        for output in self.graph.outputs:
            cdk.CfnOutput(
                self,
                output.name,
                value=self._resolve(output.value),
                description=output.description,
                export_name=output.export_name,
            )

        logger.info(
            f"Materialized {len(self.resources)} resources and "
            f"{len(self.graph.outputs)} outputs in stack {id}"
        )

    def _resolve(self, value: Any) -> Any:
        """Replace graph references with CDK tokens."""
        if isinstance(value, Ref):
            resource = self.resources[value.logical_id]
            if value.attribute is None:
                return resource.ref
            return cdk.Token.as_string(resource.get_att(value.attribute))
        if isinstance(value, Join):
            return "".join(self._resolve(part) for part in value.parts)
        if isinstance(value, dict):
            return {key: self._resolve(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(item) for item in value]
        return value

    def _props(self, node: ResourceNode, *exclude: str) -> Dict[str, Any]:
        return {
            key: self._resolve(value)
            for key, value in node.attributes.items()
            if key not in exclude
        }

    def _vpc(self, node: ResourceNode) -> cdk.CfnResource:
        return ec2.CfnVPC(self, node.logical_id, **self._props(node))

    def _subnet(self, node: ResourceNode) -> cdk.CfnResource:
        return ec2.CfnSubnet(self, node.logical_id, **self._props(node))

    def _route_table(self, node: ResourceNode) -> cdk.CfnResource:
        return ec2.CfnRouteTable(self, node.logical_id, **self._props(node))

    def _route_table_association(self, node: ResourceNode) -> cdk.CfnResource:
        return ec2.CfnSubnetRouteTableAssociation(
            self, node.logical_id, **self._props(node)
        )

    def _security_group(self, node: ResourceNode) -> cdk.CfnResource:
        props = self._props(node, "allow_all_outbound")
        if not node.attributes.get("allow_all_outbound", True):
            props["security_group_egress"] = [DISALLOW_ALL_EGRESS]
        return ec2.CfnSecurityGroup(self, node.logical_id, **props)

    def _security_group_ingress(self, node: ResourceNode) -> cdk.CfnResource:
        return ec2.CfnSecurityGroupIngress(self, node.logical_id, **self._props(node))

    def _security_group_egress(self, node: ResourceNode) -> cdk.CfnResource:
        return ec2.CfnSecurityGroupEgress(self, node.logical_id, **self._props(node))

    def _vpc_endpoint(self, node: ResourceNode) -> cdk.CfnResource:
        return ec2.CfnVPCEndpoint(self, node.logical_id, **self._props(node))

    def _role(self, node: ResourceNode) -> cdk.CfnResource:
        props = self._props(node, "managed_policy_names")
        props["managed_policy_arns"] = [
            iam.ManagedPolicy.from_aws_managed_policy_name(name).managed_policy_arn
            for name in node.attributes.get("managed_policy_names", [])
        ]
        return iam.CfnRole(self, node.logical_id, **props)

    def _instance_profile(self, node: ResourceNode) -> cdk.CfnResource:
        return iam.CfnInstanceProfile(self, node.logical_id, **self._props(node))

    def _instance(self, node: ResourceNode) -> cdk.CfnResource:
        props = self._props(node, "image_parameter", "user_data")
        # Latest image published under the parameter, resolved at deploy time
        image = ec2.MachineImage.from_ssm_parameter(
            node.attributes["image_parameter"]
        ).get_image(self)
        props["image_id"] = image.image_id
        props["user_data"] = cdk.Fn.base64("\n".join(node.attributes["user_data"]))
        return ec2.CfnInstance(self, node.logical_id, **props)
