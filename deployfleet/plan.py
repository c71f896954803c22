"""Decision engine: turn config and discovered facts into a ResourcePlan.

Everything here is pure. No cloud calls, no file access.
"""

from textwrap import dedent

from .config import Config
from .models import (
    DiscoveredFacts,
    InstancePlan,
    KeyPairPlan,
    ResourcePlan,
    SecurityGroupPlan,
    SecurityRule,
)
from .types import Role

ROLES: tuple[Role, ...] = ("apache", "nginx")
SECURITY_GROUP_LOGICAL_NAME = "web-sg"
KEY_PAIR_LOGICAL_NAME = "keypair"
ANYWHERE = "0.0.0.0/0"

USER_DATA_TEMPLATE = dedent(
    """\
    #!/bin/bash
    set -euo pipefail
    export DEBIAN_FRONTEND=noninteractive
    apt-get update -y
    apt-get install -y {package}
    systemctl enable --now {package}
    echo "<h1>{name}</h1><p>{project} / {environment}</p>" > /var/www/html/index.html
    """
)

ROLE_PACKAGES = {"apache": "apache2", "nginx": "nginx"}


def select_subnet(config: Config, facts: DiscoveredFacts) -> str:
    """Explicit override wins and is not checked against the VPC.

    Otherwise the first discovered subnet in API order, or "" when the VPC
    has none. An empty subnet fails later, when instances are launched.
    """
    if config.subnet_id:
        return config.subnet_id
    return facts.subnet_ids[0] if facts.subnet_ids else ""


def decide_key_pair(config: Config) -> KeyPairPlan:
    if not config.create_key_pair:
        return KeyPairPlan(name=config.keypair_name, mode="existing")
    if config.public_key_openssh:
        return KeyPairPlan(
            name=config.keypair_name, mode="import", public_key=config.public_key_openssh
        )
    return KeyPairPlan(name=config.keypair_name, mode="generate")


def security_group_rules(admin_cidr: str) -> tuple[SecurityRule, ...]:
    return (
        SecurityRule("ingress", "tcp", 22, 22, admin_cidr, "SSH access"),
        SecurityRule("ingress", "tcp", 80, 80, ANYWHERE, "HTTP access"),
        SecurityRule("ingress", "tcp", 443, 443, ANYWHERE, "HTTPS access"),
        SecurityRule("egress", "-1", 0, 0, ANYWHERE, "All outbound traffic"),
    )


def base_tags(config: Config) -> tuple[tuple[str, str], ...]:
    return (
        ("Project", config.project_name),
        ("Environment", config.environment),
        ("ManagedBy", "deployfleet"),
    )


def security_group_name(config: Config) -> str:
    return f"{config.project_name}-{config.environment}-web-sg"


def plan_security_group(config: Config, facts: DiscoveredFacts) -> SecurityGroupPlan:
    name = (
        config.existing_security_group_name
        if facts.existing_security_group_id
        else security_group_name(config)
    )
    return SecurityGroupPlan(
        name=name,
        description=f"Web access for {config.project_name} ({config.environment})",
        vpc_id=facts.vpc_id,
        rules=security_group_rules(config.admin_cidr),
        tags=(("Name", name),) + base_tags(config),
        existing_id=facts.existing_security_group_id,
    )


def expand_fleet(
    role: Role, count: int, config: Config, image_id: str, subnet_id: str
) -> tuple[InstancePlan, ...]:
    """Produce ``count`` instance plans named ``<role>-1`` .. ``<role>-<count>``."""
    instances = []
    for index in range(1, count + 1):
        name = f"{role}-{index}"
        user_data = USER_DATA_TEMPLATE.format(
            package=ROLE_PACKAGES[role],
            name=name,
            project=config.project_name,
            environment=config.environment,
        )
        instances.append(
            InstancePlan(
                name=name,
                role=role,
                index=index,
                image_id=image_id,
                instance_type=config.instance_type,
                subnet_id=subnet_id,
                user_data=user_data,
                tags=(("Name", name),) + base_tags(config) + (("Role", role),),
            )
        )
    return tuple(instances)


def build_plan(config: Config, facts: DiscoveredFacts) -> ResourcePlan:
    subnet_id = select_subnet(config, facts)
    counts = {"apache": config.apache_count, "nginx": config.nginx_count}
    instances: tuple[InstancePlan, ...] = ()
    for role in ROLES:
        instances += expand_fleet(role, counts[role], config, facts.image_id, subnet_id)

    key_pair = decide_key_pair(config)
    return ResourcePlan(
        subnet_id=subnet_id,
        key_pair=key_pair,
        security_group=plan_security_group(config, facts),
        instances=instances,
        ssh_user=config.ssh_user,
        private_key_path=config.private_key_path if key_pair.mode == "generate" else "",
    )
