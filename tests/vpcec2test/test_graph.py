import pytest

from vpcec2.graph import (
    Join,
    OutputRecord,
    Ref,
    ResourceGraph,
    ResourceKind,
    ResourceNode,
)


def _graph_with_groups() -> ResourceGraph:
    graph = ResourceGraph()
    graph.add(ResourceNode(kind=ResourceKind.VPC, logical_id="Vpc"))
    for name in ("EndpointSg", "InstanceSg"):
        graph.add(
            ResourceNode(
                kind=ResourceKind.SECURITY_GROUP,
                logical_id=name,
                attributes={"vpc_id": Ref(logical_id="Vpc")},
            )
        )
    return graph


def _rule(
    kind: ResourceKind, logical_id: str, group: str, peer: str, port: int = 443
) -> ResourceNode:
    peer_key = (
        "source_security_group_id"
        if kind == ResourceKind.SECURITY_GROUP_INGRESS
        else "destination_security_group_id"
    )
    return ResourceNode(
        kind=kind,
        logical_id=logical_id,
        attributes={
            "group_id": Ref(logical_id=group, attribute="GroupId"),
            peer_key: Ref(logical_id=peer, attribute="GroupId"),
            "ip_protocol": "tcp",
            "from_port": port,
            "to_port": port,
        },
    )


def test_dependencies_from_refs_and_depends_on():
    node = ResourceNode(
        kind=ResourceKind.INSTANCE,
        logical_id="Instance",
        attributes={
            "subnet_id": Ref(logical_id="Subnet"),
            "security_group_ids": [Ref(logical_id="Sg", attribute="GroupId")],
            "nested": {"value": Join(parts=("x-", Ref(logical_id="Profile")))},
        },
        depends_on=("Role",),
    )
    assert node.dependencies == ("Profile", "Role", "Sg", "Subnet")


def test_duplicate_logical_id():
    graph = ResourceGraph()
    graph.add(ResourceNode(kind=ResourceKind.VPC, logical_id="Vpc"))
    with pytest.raises(ValueError, match="Duplicate logical id 'Vpc'"):
        graph.add(ResourceNode(kind=ResourceKind.SUBNET, logical_id="Vpc"))


def test_forward_reference_rejected():
    graph = ResourceGraph()
    with pytest.raises(ValueError, match="undeclared resources: Vpc"):
        graph.add(
            ResourceNode(
                kind=ResourceKind.SUBNET,
                logical_id="Subnet",
                attributes={"vpc_id": Ref(logical_id="Vpc")},
            )
        )
    assert graph.nodes == []


def test_output_must_reference_declared_resource():
    graph = ResourceGraph()
    with pytest.raises(ValueError, match="undeclared resource 'Vpc'"):
        graph.add_output(
            OutputRecord(
                name="VpcId", value=Ref(logical_id="Vpc"), description="VPC ID"
            )
        )


def test_duplicate_output():
    graph = ResourceGraph()
    graph.add_output(OutputRecord(name="ProjectTag", value="cdk", description="x"))
    with pytest.raises(ValueError, match="Duplicate output"):
        graph.add_output(
            OutputRecord(name="ProjectTag", value="demo", description="y")
        )


def test_node_lookup():
    graph = _graph_with_groups()
    assert graph.node("Vpc").kind == ResourceKind.VPC
    with pytest.raises(KeyError):
        graph.node("Missing")


def test_network_requires_exactly_one_vpc():
    with pytest.raises(ValueError, match="found 0"):
        ResourceGraph().network
    assert _graph_with_groups().network.logical_id == "Vpc"


def test_reaches():
    graph = _graph_with_groups()
    graph.add(
        _rule(ResourceKind.SECURITY_GROUP_EGRESS, "Egress", "InstanceSg", "EndpointSg")
    )
    assert graph.reaches("Egress", "Vpc")
    assert graph.reaches("Egress", "EndpointSg")
    assert not graph.reaches("EndpointSg", "InstanceSg")
    assert not graph.reaches("Vpc", "Vpc")


def test_symmetric_rules():
    graph = _graph_with_groups()
    graph.add(
        _rule(ResourceKind.SECURITY_GROUP_INGRESS, "Ingress", "EndpointSg", "InstanceSg")
    )
    graph.add(
        _rule(ResourceKind.SECURITY_GROUP_EGRESS, "Egress", "InstanceSg", "EndpointSg")
    )
    assert graph.unpaired_rules() == []
    graph.check_rule_symmetry()


def test_egress_without_ingress():
    graph = _graph_with_groups()
    graph.add(
        _rule(ResourceKind.SECURITY_GROUP_EGRESS, "Egress", "InstanceSg", "EndpointSg")
    )
    assert [node.logical_id for node in graph.unpaired_rules()] == ["Egress"]
    with pytest.raises(ValueError, match="Egress"):
        graph.check_rule_symmetry()


def test_rules_on_different_ports_do_not_pair():
    graph = _graph_with_groups()
    graph.add(
        _rule(
            ResourceKind.SECURITY_GROUP_INGRESS,
            "Ingress",
            "EndpointSg",
            "InstanceSg",
            port=443,
        )
    )
    graph.add(
        _rule(
            ResourceKind.SECURITY_GROUP_EGRESS,
            "Egress",
            "InstanceSg",
            "EndpointSg",
            port=80,
        )
    )
    assert sorted(node.logical_id for node in graph.unpaired_rules()) == [
        "Egress",
        "Ingress",
    ]


def test_rules_pointing_the_wrong_way_do_not_pair():
    graph = _graph_with_groups()
    graph.add(
        _rule(ResourceKind.SECURITY_GROUP_INGRESS, "Ingress", "EndpointSg", "InstanceSg")
    )
    graph.add(
        _rule(ResourceKind.SECURITY_GROUP_EGRESS, "Egress", "EndpointSg", "InstanceSg")
    )
    assert len(graph.unpaired_rules()) == 2


def test_manifest():
    graph = ResourceGraph()
    graph.add(
        ResourceNode(
            kind=ResourceKind.VPC,
            logical_id="Vpc",
            attributes={"cidr_block": "10.0.0.0/16"},
            tags=(("Name", "cdk-vpc"),),
        )
    )
    graph.add(
        ResourceNode(
            kind=ResourceKind.SECURITY_GROUP,
            logical_id="Sg",
            attributes={"vpc_id": Ref(logical_id="Vpc")},
        )
    )
    graph.add_output(
        OutputRecord(
            name="Command",
            value=Join(parts=("id: ", Ref(logical_id="Sg", attribute="GroupId"))),
            description="d",
        )
    )

    manifest = graph.to_manifest()

    assert manifest["resources"] == [
        {
            "type": "AWS::EC2::VPC",
            "logical_id": "Vpc",
            "attributes": {"cidr_block": "10.0.0.0/16"},
            "tags": [{"Key": "Name", "Value": "cdk-vpc"}],
            "depends_on": [],
        },
        {
            "type": "AWS::EC2::SecurityGroup",
            "logical_id": "Sg",
            "attributes": {"vpc_id": {"Ref": "Vpc"}},
            "tags": [],
            "depends_on": ["Vpc"],
        },
    ]
    assert manifest["outputs"] == [
        {
            "name": "Command",
            "value": {"Fn::Join": ["", ["id: ", {"Fn::GetAtt": ["Sg", "GroupId"]}]]},
            "description": "d",
            "export_name": None,
        }
    ]
