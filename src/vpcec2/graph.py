"""
Resource graph model.

A ResourceGraph is an ordered list of declared resources and the named outputs
derived from them. Attribute values may reference other resources through
``Ref`` (or interpolate them with ``Join``); every reference is a dependency
edge, and the graph refuses edges to resources that have not been declared yet.
"""

from enum import Enum
from logging import getLogger
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel

logger = getLogger(__name__)


class ResourceKind(str, Enum):
    VPC = "AWS::EC2::VPC"
    SUBNET = "AWS::EC2::Subnet"
    ROUTE_TABLE = "AWS::EC2::RouteTable"
    ROUTE_TABLE_ASSOCIATION = "AWS::EC2::SubnetRouteTableAssociation"
    SECURITY_GROUP = "AWS::EC2::SecurityGroup"
    SECURITY_GROUP_INGRESS = "AWS::EC2::SecurityGroupIngress"
    SECURITY_GROUP_EGRESS = "AWS::EC2::SecurityGroupEgress"
    VPC_ENDPOINT = "AWS::EC2::VPCEndpoint"
    IAM_ROLE = "AWS::IAM::Role"
    INSTANCE_PROFILE = "AWS::IAM::InstanceProfile"
    INSTANCE = "AWS::EC2::Instance"


class Ref(BaseModel, frozen=True):
    """Runtime value of another resource.

    With no attribute this is the resource's primary reference (``Ref``),
    otherwise the named ``Fn::GetAtt`` attribute.
    """

    logical_id: str
    attribute: Optional[str] = None


class Join(BaseModel, frozen=True):
    """String built from literals and references."""

    parts: Tuple[Union[Ref, str], ...]


Value = Union[Ref, Join, str]


class ResourceNode(BaseModel, frozen=True):
    kind: ResourceKind
    logical_id: str
    attributes: Dict[str, Any] = {}
    tags: Tuple[Tuple[str, str], ...] = ()
    depends_on: Tuple[str, ...] = ()

    @property
    def dependencies(self) -> Tuple[str, ...]:
        """Logical ids this resource must be created after."""
        found = set(self.depends_on)
        for ref in iter_refs(self.attributes):
            found.add(ref.logical_id)
        return tuple(sorted(found))

    def tag(self, key: str) -> Optional[str]:
        for k, v in self.tags:
            if k == key:
                return v
        return None


class OutputRecord(BaseModel, frozen=True):
    name: str
    value: Value
    description: str
    export_name: Optional[str] = None


class ResourceGraph(BaseModel):
    nodes: List[ResourceNode] = []
    outputs: List[OutputRecord] = []

    def add(self, node: ResourceNode) -> ResourceNode:
        """Declare a resource.

        Raises:
            ValueError: if the logical id is already taken, or the resource
                depends on one that has not been declared yet.
        """
        if self._find(node.logical_id) is not None:
            raise ValueError(f"Duplicate logical id '{node.logical_id}'")
        missing = [dep for dep in node.dependencies if self._find(dep) is None]
        if missing:
            raise ValueError(
                f"Resource '{node.logical_id}' references undeclared "
                f"resources: {', '.join(missing)}"
            )
        self.nodes.append(node)
        logger.debug(
            f"Declared {node.kind.value} {node.logical_id} "
            f"(depends on: {', '.join(node.dependencies) or 'nothing'})"
        )
        return node

    def add_output(self, output: OutputRecord) -> OutputRecord:
        if any(existing.name == output.name for existing in self.outputs):
            raise ValueError(f"Duplicate output '{output.name}'")
        for ref in iter_refs(output.value):
            if self._find(ref.logical_id) is None:
                raise ValueError(
                    f"Output '{output.name}' references undeclared "
                    f"resource '{ref.logical_id}'"
                )
        self.outputs.append(output)
        logger.debug(f"Declared output {output.name}")
        return output

    def node(self, logical_id: str) -> ResourceNode:
        found = self._find(logical_id)
        if found is None:
            raise KeyError(logical_id)
        return found

    def of_kind(self, kind: ResourceKind) -> List[ResourceNode]:
        return [node for node in self.nodes if node.kind == kind]

    @property
    def logical_ids(self) -> List[str]:
        return [node.logical_id for node in self.nodes]

    @property
    def network(self) -> ResourceNode:
        vpcs = self.of_kind(ResourceKind.VPC)
        if len(vpcs) != 1:
            raise ValueError(f"Expected exactly one VPC, found {len(vpcs)}")
        return vpcs[0]

    def reaches(self, logical_id: str, target: str) -> bool:
        """Whether ``logical_id`` depends on ``target``, directly or transitively."""
        seen = set()
        stack = list(self.node(logical_id).dependencies)
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.node(current).dependencies)
        return False

    def unpaired_rules(self) -> List[ResourceNode]:
        """Security group rules with no mirror rule on the peer group.

        An egress rule from group A to group B on a port range pairs with an
        ingress rule on group B from group A on the same protocol and ports.
        """
        ingress = {
            _rule_key(node, "group_id", "source_security_group_id"): node
            for node in self.of_kind(ResourceKind.SECURITY_GROUP_INGRESS)
        }
        egress = {
            _rule_key(node, "destination_security_group_id", "group_id"): node
            for node in self.of_kind(ResourceKind.SECURITY_GROUP_EGRESS)
        }
        unpaired = [node for key, node in ingress.items() if key not in egress]
        unpaired.extend(node for key, node in egress.items() if key not in ingress)
        return unpaired

    def check_rule_symmetry(self) -> None:
        unpaired = self.unpaired_rules()
        if unpaired:
            raise ValueError(
                "Security group rules without a matching rule on the peer "
                f"group: {', '.join(node.logical_id for node in unpaired)}"
            )

    def to_manifest(self) -> Dict[str, Any]:
        """Plain-data description of the graph, references rendered
        CloudFormation style."""
        return {
            "resources": [
                {
                    "type": node.kind.value,
                    "logical_id": node.logical_id,
                    "attributes": render(node.attributes),
                    "tags": [{"Key": k, "Value": v} for k, v in node.tags],
                    "depends_on": list(node.dependencies),
                }
                for node in self.nodes
            ],
            "outputs": [
                {
                    "name": output.name,
                    "value": render(output.value),
                    "description": output.description,
                    "export_name": output.export_name,
                }
                for output in self.outputs
            ],
        }

    def _find(self, logical_id: str) -> Optional[ResourceNode]:
        for node in self.nodes:
            if node.logical_id == logical_id:
                return node
        return None


def iter_refs(value: Any) -> Iterator[Ref]:
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Join):
        for part in value.parts:
            yield from iter_refs(part)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


def render(value: Any) -> Any:
    if isinstance(value, Ref):
        if value.attribute is None:
            return {"Ref": value.logical_id}
        return {"Fn::GetAtt": [value.logical_id, value.attribute]}
    if isinstance(value, Join):
        return {"Fn::Join": ["", [render(part) for part in value.parts]]}
    if isinstance(value, dict):
        return {key: render(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render(item) for item in value]
    return value


def _rule_key(node: ResourceNode, owner: str, peer: str) -> Tuple[Any, ...]:
    attributes = node.attributes
    return (
        attributes.get(owner),
        attributes.get(peer),
        attributes.get("ip_protocol"),
        attributes.get("from_port"),
        attributes.get("to_port"),
    )
