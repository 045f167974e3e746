import shutil


def has_node_runtime():
    # aws-cdk-lib runs on jsii, which needs node on the PATH
    return shutil.which("node") is not None
