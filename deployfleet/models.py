"""Immutable value objects passed between discovery, planning and convergence."""

from dataclasses import asdict, dataclass
from typing import Literal

from .types import KeyPairMode, Role


@dataclass(frozen=True)
class DiscoveredFacts:
    vpc_id: str
    subnet_ids: tuple[str, ...]
    image_id: str
    existing_security_group_id: str | None = None


@dataclass(frozen=True)
class SecurityRule:
    direction: Literal["ingress", "egress"]
    protocol: str  # "tcp" or "-1" for all traffic
    from_port: int
    to_port: int
    cidr: str
    description: str


@dataclass(frozen=True)
class KeyPairPlan:
    name: str
    mode: KeyPairMode
    public_key: str = ""

    def spec(self) -> dict:
        # generated key material never enters the hash
        return {"name": self.name, "mode": self.mode, "public_key": self.public_key}


@dataclass(frozen=True)
class SecurityGroupPlan:
    name: str
    description: str
    vpc_id: str
    rules: tuple[SecurityRule, ...]
    tags: tuple[tuple[str, str], ...]
    existing_id: str | None = None

    def spec(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "vpc_id": self.vpc_id,
            "rules": [asdict(r) for r in self.rules],
            "tags": [list(t) for t in self.tags],
            "existing_id": self.existing_id,
        }


@dataclass(frozen=True)
class InstancePlan:
    name: str
    role: Role
    index: int
    image_id: str
    instance_type: str
    subnet_id: str
    user_data: str
    tags: tuple[tuple[str, str], ...]

    def spec(self, key_name: str, security_group_id: str) -> dict:
        return {
            "name": self.name,
            "role": self.role,
            "image_id": self.image_id,
            "instance_type": self.instance_type,
            "subnet_id": self.subnet_id,
            "user_data": self.user_data,
            "tags": [list(t) for t in self.tags],
            "key_name": key_name,
            "security_group_id": security_group_id,
        }


@dataclass(frozen=True)
class ResourcePlan:
    subnet_id: str
    key_pair: KeyPairPlan
    security_group: SecurityGroupPlan
    instances: tuple[InstancePlan, ...]
    ssh_user: str
    private_key_path: str

    def fleet(self, role: Role) -> tuple[InstancePlan, ...]:
        return tuple(i for i in self.instances if i.role == role)
