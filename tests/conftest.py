"""Shared fixtures: an in-memory cloud and a ready-made config."""

import itertools
import threading

import pytest

from deployfleet.config import Config, validate_config
from deployfleet.errors import NotFoundError
from deployfleet.retry import RetryPolicy

NO_WAIT = RetryPolicy(max_attempts=3, min_wait=0, max_wait=0)


def pytest_addoption(parser):
    parser.addoption("--vpc-id", default=None, help="VPC for integration tests")
    parser.addoption(
        "--admin-cidr", default=None, help="SSH allow-list CIDR for integration tests"
    )
    parser.addoption("--region", default="us-east-1", help="AWS region for integration tests")


class FakeCloud:
    """In-memory CloudProvider that records every call.

    ``launch_failures`` maps an instance name to an exception raised on every
    launch attempt for that instance.
    """

    def __init__(self, subnets=("subnet-a", "subnet-b"), images=("ami-123",), vpcs=("vpc-1",)):
        self.region = "us-east-1"
        self.vpcs = set(vpcs)
        self.subnets = list(subnets)
        self.images = list(images)
        self.security_groups: dict[str, dict] = {}
        self.key_pairs: dict[str, str] = {}
        self.instances: dict[str, dict] = {}
        self.launch_failures: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def _next_id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}-{next(self._ids):04d}"

    def count(self, operation: str) -> int:
        return sum(1 for c in self.calls if c[0] == operation)

    @property
    def create_calls(self) -> list[tuple]:
        creates = {"import_key_pair", "create_security_group", "run_instance"}
        return [c for c in self.calls if c[0] in creates]

    def describe_vpc(self, vpc_id):
        self._record("describe_vpc", vpc_id)
        if vpc_id not in self.vpcs:
            raise NotFoundError(f"VPC '{vpc_id}' not found")
        return {"id": vpc_id, "cidr": "10.0.0.0/16"}

    def describe_subnets(self, vpc_id):
        self._record("describe_subnets", vpc_id)
        return list(self.subnets)

    def find_latest_image(self, name_pattern, owner):
        self._record("find_latest_image", name_pattern, owner)
        if not self.images:
            raise NotFoundError(f"No AMI found matching pattern: '{name_pattern}'")
        return self.images[0]

    def find_security_group(self, vpc_id, name):
        self._record("find_security_group", vpc_id, name)
        for group_id, group in self.security_groups.items():
            if group["name"] == name and group["vpc_id"] == vpc_id:
                return group_id
        return None

    def import_key_pair(self, name, public_key, tags):
        self._record("import_key_pair", name)
        self.key_pairs[name] = public_key
        return f"key-{name}"

    def delete_key_pair(self, name):
        self._record("delete_key_pair", name)
        self.key_pairs.pop(name, None)

    def create_security_group(self, name, description, vpc_id, tags):
        self._record("create_security_group", name, vpc_id)
        group_id = self._next_id("sg")
        self.security_groups[group_id] = {"name": name, "vpc_id": vpc_id, "rules": set()}
        return group_id

    def authorize_rules(self, group_id, rules):
        self._record("authorize_rules", group_id, len(rules))
        self.security_groups[group_id]["rules"].update(rules)

    def revoke_rules(self, group_id, rules):
        self._record("revoke_rules", group_id, len(rules))
        self.security_groups[group_id]["rules"].difference_update(rules)

    def delete_security_group(self, group_id):
        self._record("delete_security_group", group_id)
        if self.security_groups.pop(group_id, None) is None:
            raise NotFoundError(f"Security group '{group_id}' not found")

    def run_instance(self, instance, *, key_name, security_group_id, client_token):
        self._record("run_instance", instance.name, client_token)
        if instance.name in self.launch_failures:
            raise self.launch_failures[instance.name]
        instance_id = self._next_id("i")
        self.instances[instance_id] = {
            "name": instance.name,
            "subnet_id": instance.subnet_id,
            "key_name": key_name,
            "security_group_id": security_group_id,
            "ip": f"198.51.100.{len(self.instances) + 1}",
            "state": "running",
        }
        return instance_id

    def describe_instances(self, instance_ids):
        self._record("describe_instances", tuple(instance_ids))
        return {
            i: {"state": self.instances[i]["state"], "public_ip": self.instances[i]["ip"]}
            for i in instance_ids
            if i in self.instances
        }

    def wait_until_running(self, instance_ids):
        self._record("wait_until_running", tuple(instance_ids))
        unknown = [i for i in instance_ids if i not in self.instances]
        if unknown:
            raise NotFoundError(f"The instance IDs '{', '.join(unknown)}' do not exist")

    def terminate_instances(self, instance_ids):
        """Like EC2, one unknown id rejects the whole call."""
        self._record("terminate_instances", tuple(instance_ids))
        unknown = [i for i in instance_ids if i not in self.instances]
        if unknown:
            raise NotFoundError(f"The instance IDs '{', '.join(unknown)}' do not exist")
        for instance_id in instance_ids:
            self.instances.pop(instance_id)


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def retry():
    return NO_WAIT


@pytest.fixture
def make_config(tmp_path):
    """Build a validated Config with test-friendly defaults."""

    def _make(**overrides) -> Config:
        values = {
            "vpc_id": "vpc-1",
            "admin_cidr": "203.0.113.7/32",
            "apache_count": 2,
            "nginx_count": 1,
            "private_key_path": str(tmp_path / "keys" / "webfleet-key.pem"),
            "state_path": str(tmp_path / "deployfleet.state.json"),
        }
        values.update(overrides)
        return validate_config(Config(**values))

    return _make


@pytest.fixture(scope="session")
def public_key() -> str:
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    key = Ed25519PrivateKey.generate().public_key()
    return key.public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode() + " test@example"


@pytest.fixture(scope="session")
def live_config(request, tmp_path_factory):
    """Config for a real AWS account; skips unless --vpc-id and --admin-cidr are given."""
    vpc_id = request.config.getoption("--vpc-id")
    admin_cidr = request.config.getoption("--admin-cidr")
    if not vpc_id or not admin_cidr:
        pytest.skip("integration tests need --vpc-id and --admin-cidr")

    from uuid import uuid4

    workdir = tmp_path_factory.mktemp("live")
    suffix = uuid4().hex[:8]
    return validate_config(
        Config(
            vpc_id=vpc_id,
            admin_cidr=admin_cidr,
            region=request.config.getoption("--region"),
            project_name=f"test-deployfleet-{suffix}",
            environment="test",
            keypair_name=f"test-deployfleet-{suffix}",
            apache_count=1,
            nginx_count=1,
            private_key_path=str(workdir / "key.pem"),
            state_path=str(workdir / "state.json"),
        )
    )
