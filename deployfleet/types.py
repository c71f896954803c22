"""Type definitions for deployfleet."""

from typing import Literal, TypedDict

Role = Literal["apache", "nginx"]
ResourceKind = Literal["key_pair", "security_group", "instance"]
KeyPairMode = Literal["existing", "generate", "import"]
Action = Literal["created", "updated", "skipped", "adopted", "failed"]


class ResourceEntry(TypedDict, total=False):
    """One logical resource recorded in the state file."""

    kind: ResourceKind
    id: str
    hash: str
    role: Role  # instances only
    adopted: bool  # security group looked up by name, never created
    name: str  # key pairs and security groups, cloud-side name
    private_key_path: str  # generated key pairs only
    vpc_id: str  # security groups only
    rules: list[dict]  # security groups only, last authorized rule set


class StateOutputs(TypedDict, total=False):
    subnet_id: str
    key_name: str
    private_key_path: str
    ssh_user: str


class StateData(TypedDict):
    """Contents of the deployfleet.state.json file."""

    version: int
    lineage: str
    resources: dict[str, ResourceEntry]
    outputs: StateOutputs
    orphans: list[str]


class ResourceResult(TypedDict, total=False):
    """Outcome of converging one logical resource."""

    name: str
    kind: ResourceKind
    action: Action
    id: str
    role: Role
    index: int
    error: str
    retryable: bool


class Outputs(TypedDict):
    subnet_id: str
    security_group_id: str
    apache_public_ips: list[str]
    nginx_public_ips: list[str]
    key_name: str
    private_key_path: str
    ssh_user: str
    apache_urls: list[str]
    nginx_urls: list[str]
