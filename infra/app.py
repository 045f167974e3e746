"""CDK application entry point for the VPC + EC2 infrastructure.

This module initializes the AWS CDK application and deploys one
VpcEc2Stack per environment.
"""
import os

import aws_cdk as cdk
from vpcec2 import EnvironmentConfig
from vpcec2infra.vpc_ec2_stack import VpcEc2Stack

app = cdk.App()

env = cdk.Environment(
    account=os.environ.get("CDK_DEFAULT_ACCOUNT"),
    region="us-east-1",
)

environments = {
    "CdkVpcEc2DevStack": EnvironmentConfig(
        project_tag="cdk",
        environment_tag="development",
        vpc_cidr="10.0.0.0/16",
        private_subnet_cidr="10.0.1.0/24",
        availability_zone="us-east-1a",
        instance_type="t3.micro",
        tags={"Owner": "DevTeam"},
    ),
    "CdkVpcEc2StagingStack": EnvironmentConfig(
        project_tag="cdk",
        environment_tag="staging",
        vpc_cidr="10.1.0.0/16",
        private_subnet_cidr="10.1.1.0/24",
        availability_zone="us-east-1b",
        instance_type="t3.small",
        tags={"Owner": "DevTeam"},
    ),
    # Production: 10.2.0.0/16, us-east-1c, t3.medium. Not deployed from here.
}

for stack_id, config in environments.items():
    VpcEc2Stack(app, stack_id, config=config, env=env)

app.synth()
