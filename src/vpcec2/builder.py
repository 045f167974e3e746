"""Assemble the VPC + EC2 resource graph for one environment.

The graph is a single isolated subnet reachable only through SSM interface
endpoints, and one EC2 instance managed through Session Manager:

    VPC -> subnet -> security groups -> endpoints -> IAM role -> instance -> outputs

``build`` is a pure function of its inputs; creating the resources is left to
whichever engine consumes the graph (see the CDK app under ``infra/``).
"""

from logging import getLogger
from typing import List, Optional

from ._unpack_tags import Tags, merge_tags
from .graph import Join, OutputRecord, Ref, ResourceGraph, ResourceKind, ResourceNode
from .schema import DeploymentTarget, EnvironmentConfig

logger = getLogger(__name__)

HTTPS_PORT = 443

CREATED_BY = "CDK"

AMAZON_LINUX_2_IMAGE_PARAMETER = (
    "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2"
)

SSM_MANAGED_POLICY = "AmazonSSMManagedInstanceCore"

BOOTSTRAP_LOG = "/var/log/cloudformation-init.log"

# Granted to any principal on the SSM endpoint. Broader than least privilege,
# kept because the Session Manager workflow relies on it.
SSM_ENDPOINT_ACTIONS = [
    "ssm:UpdateInstanceInformation",
    "ssm:SendCommand",
    "ssm:ListCommandInvocations",
    "ssm:DescribeInstanceInformation",
    "ssm:GetDeployablePatchSnapshotForInstance",
    "ssm:GetDefaultPatchBaseline",
    "ssm:GetManifest",
    "ssm:GetParameter",
    "ssm:GetParameters",
    "ssm:ListAssociations",
    "ssm:ListInstanceAssociations",
    "ssm:PutInventory",
    "ssm:PutComplianceItems",
    "ssm:PutConfigurePackageResult",
    "ssm:UpdateAssociationStatus",
    "ssm:UpdateInstanceAssociationStatus",
]


def tag_set(config: EnvironmentConfig, name: str) -> Tags:
    """Tags for one resource: free-form tags, then the common tags, then Name.

    Not used for rules, route table associations or instance profiles, which
    CloudFormation cannot tag.
    """
    common = (
        ("Project", config.project_tag or ""),
        ("Environment", config.environment_tag or ""),
        ("CreatedBy", CREATED_BY),
    )
    return merge_tags(config.tags, common, (("Name", name),))


def bootstrap_commands(
    config: EnvironmentConfig, target: DeploymentTarget
) -> List[str]:
    """User data for the instance: get the SSM agent running and log who we are."""
    return [
        "#!/bin/bash",
        "yum update -y",
        "yum install -y amazon-ssm-agent",
        "systemctl enable amazon-ssm-agent",
        "systemctl start amazon-ssm-agent",
        "",
        "# Check SSM agent status",
        "systemctl status amazon-ssm-agent",
        "",
        "# Record instance details in the log",
        f'echo "$(date): Instance {target.stack_name} started successfully" '
        f">> {BOOTSTRAP_LOG}",
        f'echo "Project: {config.project_tag}" >> {BOOTSTRAP_LOG}',
        f'echo "Environment: {config.environment_tag}" >> {BOOTSTRAP_LOG}',
    ]


def build(
    config: Optional[EnvironmentConfig] = None,
    target: Optional[DeploymentTarget] = None,
) -> ResourceGraph:
    """Build the resource graph for one environment.

    Args:
        config: Environment configuration; unset fields take their defaults.
        target: Stack name and region; the region defaults to the one the
            availability zone belongs to.

    Returns:
        The resource graph, resources in creation order followed by outputs.
    """
    config = (config or EnvironmentConfig()).resolve_defaults()
    if target is None or target.region is None:
        target = DeploymentTarget.for_config(
            config, **(target.model_dump() if target is not None else {})
        )

    project = config.project_tag
    suffix = config.fingerprint()
    graph = ResourceGraph()

    def logical_id(base: str) -> str:
        return f"{base}{suffix}"

    # Network: one VPC, one isolated subnet in a single AZ
    vpc = graph.add(
        ResourceNode(
            kind=ResourceKind.VPC,
            logical_id=logical_id("Vpc"),
            attributes={
                "cidr_block": config.vpc_cidr,
                "enable_dns_hostnames": True,
                "enable_dns_support": True,
                "instance_tenancy": "default",
            },
            tags=tag_set(config, f"{project}-vpc"),
        )
    )
    subnet = graph.add(
        ResourceNode(
            kind=ResourceKind.SUBNET,
            logical_id=logical_id("PrivateSubnet"),
            attributes={
                "vpc_id": Ref(logical_id=vpc.logical_id),
                "cidr_block": config.private_subnet_cidr,
                "availability_zone": config.availability_zone,
                "map_public_ip_on_launch": False,
            },
            tags=tag_set(config, f"{project}-private-subnet"),
        )
    )
    # No routes: the subnet is isolated
    route_table = graph.add(
        ResourceNode(
            kind=ResourceKind.ROUTE_TABLE,
            logical_id=logical_id("PrivateRouteTable"),
            attributes={"vpc_id": Ref(logical_id=vpc.logical_id)},
            tags=tag_set(config, f"{project}-private-rt"),
        )
    )
    graph.add(
        ResourceNode(
            kind=ResourceKind.ROUTE_TABLE_ASSOCIATION,
            logical_id=logical_id("PrivateRouteTableAssociation"),
            attributes={
                "route_table_id": Ref(logical_id=route_table.logical_id),
                "subnet_id": Ref(logical_id=subnet.logical_id),
            },
        )
    )

    # Security groups, both default-deny outbound
    endpoint_sg = graph.add(
        ResourceNode(
            kind=ResourceKind.SECURITY_GROUP,
            logical_id=logical_id("VPCEndpointSecurityGroup"),
            attributes={
                "group_description": "Security group for VPC endpoints",
                "vpc_id": Ref(logical_id=vpc.logical_id),
                "allow_all_outbound": False,
            },
            tags=tag_set(config, f"{project}-vpc-endpoint-sg"),
        )
    )
    instance_sg = graph.add(
        ResourceNode(
            kind=ResourceKind.SECURITY_GROUP,
            logical_id=logical_id("InstanceSecurityGroup"),
            attributes={
                "group_description": "Security group for demo EC2 instance",
                "vpc_id": Ref(logical_id=vpc.logical_id),
                "allow_all_outbound": False,
            },
            tags=tag_set(config, f"{project}-instance-sg"),
        )
    )
    endpoint_sg_id = Ref(logical_id=endpoint_sg.logical_id, attribute="GroupId")
    instance_sg_id = Ref(logical_id=instance_sg.logical_id, attribute="GroupId")
    graph.add(
        ResourceNode(
            kind=ResourceKind.SECURITY_GROUP_INGRESS,
            logical_id=logical_id("VPCEndpointSecurityGroupHttpsIngress"),
            attributes={
                "group_id": endpoint_sg_id,
                "source_security_group_id": instance_sg_id,
                "ip_protocol": "tcp",
                "from_port": HTTPS_PORT,
                "to_port": HTTPS_PORT,
                "description": "HTTPS from EC2 instances",
            },
        )
    )
    graph.add(
        ResourceNode(
            kind=ResourceKind.SECURITY_GROUP_EGRESS,
            logical_id=logical_id("InstanceSecurityGroupHttpsEgress"),
            attributes={
                "group_id": instance_sg_id,
                "destination_security_group_id": endpoint_sg_id,
                "ip_protocol": "tcp",
                "from_port": HTTPS_PORT,
                "to_port": HTTPS_PORT,
                "description": "HTTPS to VPC endpoints",
            },
        )
    )

    # SSM interface endpoints (required for Session Manager)
    def interface_endpoint(base: str, service: str, name: str, **extra):
        return graph.add(
            ResourceNode(
                kind=ResourceKind.VPC_ENDPOINT,
                logical_id=logical_id(base),
                attributes={
                    "service_name": f"com.amazonaws.{target.region}.{service}",
                    "vpc_endpoint_type": "Interface",
                    "vpc_id": Ref(logical_id=vpc.logical_id),
                    "subnet_ids": [Ref(logical_id=subnet.logical_id)],
                    "security_group_ids": [endpoint_sg_id],
                    "private_dns_enabled": True,
                    **extra,
                },
                tags=tag_set(config, name),
            )
        )

    ssm_endpoint = interface_endpoint(
        "SSMVPCEndpoint",
        "ssm",
        f"{project}-ssm-endpoint",
        policy_document={
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"AWS": "*"},
                    "Action": list(SSM_ENDPOINT_ACTIONS),
                    "Resource": "*",
                }
            ],
        },
    )
    ssm_messages_endpoint = interface_endpoint(
        "SSMMessagesVPCEndpoint", "ssmmessages", f"{project}-ssmmessages-endpoint"
    )
    ec2_messages_endpoint = interface_endpoint(
        "EC2MessagesVPCEndpoint", "ec2messages", f"{project}-ec2messages-endpoint"
    )

    # IAM role for the instance
    role = graph.add(
        ResourceNode(
            kind=ResourceKind.IAM_ROLE,
            logical_id=logical_id("EC2Role"),
            attributes={
                "role_name": f"{project}-ec2-ssm-role-{target.region}",
                "assume_role_policy_document": {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Principal": {"Service": "ec2.amazonaws.com"},
                            "Action": "sts:AssumeRole",
                        }
                    ],
                },
                "managed_policy_names": [SSM_MANAGED_POLICY],
            },
            # The role lives outside the VPC; order it after the network anyway.
            depends_on=(vpc.logical_id,),
            tags=tag_set(config, f"{project}-ec2-role"),
        )
    )
    instance_profile = graph.add(
        ResourceNode(
            kind=ResourceKind.INSTANCE_PROFILE,
            logical_id=logical_id("InstanceProfile"),
            attributes={"roles": [Ref(logical_id=role.logical_id)]},
        )
    )

    instance = graph.add(
        ResourceNode(
            kind=ResourceKind.INSTANCE,
            logical_id=logical_id("Instance"),
            attributes={
                "instance_type": config.instance_type,
                "image_parameter": AMAZON_LINUX_2_IMAGE_PARAMETER,
                "availability_zone": config.availability_zone,
                "subnet_id": Ref(logical_id=subnet.logical_id),
                "security_group_ids": [instance_sg_id],
                "iam_instance_profile": Ref(logical_id=instance_profile.logical_id),
                "user_data": bootstrap_commands(config, target),
            },
            depends_on=(role.logical_id,),
            tags=tag_set(config, f"{project}-instance"),
        )
    )

    def output(name: str, value, description: str, export: bool = True) -> None:
        graph.add_output(
            OutputRecord(
                name=name,
                value=value,
                description=description,
                export_name=f"{target.stack_name}-{name}" if export else None,
            )
        )

    output("VpcId", Ref(logical_id=vpc.logical_id), "VPC ID")
    output(
        "PrivateSubnetId", Ref(logical_id=subnet.logical_id), "Private subnet ID"
    )
    output("InstanceId", Ref(logical_id=instance.logical_id), "EC2 instance ID")
    output(
        "InstanceSecurityGroupId",
        instance_sg_id,
        "Security group ID of the EC2 instance",
    )
    output(
        "VPCEndpointSecurityGroupId",
        endpoint_sg_id,
        "Security group ID of the VPC endpoints",
    )
    output(
        "SSMVPCEndpointId", Ref(logical_id=ssm_endpoint.logical_id), "SSM VPC endpoint ID"
    )
    output(
        "SSMMessagesVPCEndpointId",
        Ref(logical_id=ssm_messages_endpoint.logical_id),
        "SSM Messages VPC endpoint ID",
    )
    output(
        "EC2MessagesVPCEndpointId",
        Ref(logical_id=ec2_messages_endpoint.logical_id),
        "EC2 Messages VPC endpoint ID",
    )
    output(
        "IAMRoleArn",
        Ref(logical_id=role.logical_id, attribute="Arn"),
        "ARN of the EC2 IAM role",
    )
    output(
        "SSMSessionManagerCommand",
        Join(
            parts=(
                "aws ssm start-session --target ",
                Ref(logical_id=instance.logical_id),
            )
        ),
        "Command to connect with Systems Manager Session Manager",
        export=False,
    )
    output("ProjectTag", project, "Project name")
    output("EnvironmentTag", config.environment_tag, "Environment name")

    graph.check_rule_symmetry()

    logger.info(
        f"Built resource graph for {target.stack_name}: "
        f"{len(graph.nodes)} resources, {len(graph.outputs)} outputs"
    )
    return graph
