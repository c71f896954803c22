"""Reported values of a converged environment."""

from .plan import ROLES, SECURITY_GROUP_LOGICAL_NAME
from .providers import CloudProvider
from .state import ProvisionedState
from .types import Outputs
from .utils import warn

LIVE_STATES = ("pending", "running")


def _ordinal(name: str) -> int:
    return int(name.rsplit("-", 1)[-1])


def collect_outputs(
    state: ProvisionedState, provider: CloudProvider, *, wait: bool = False
) -> Outputs:
    """Read public IPs back from the provider and assemble the outputs.

    :param wait: Wait for recorded instances to reach 'running' first
    """
    instances = state.instances()
    instance_ids = [entry["id"] for entry in instances.values()]
    found = provider.describe_instances(instance_ids)
    live = [i for i in instance_ids if found.get(i, {}).get("state") in LIVE_STATES]
    if len(live) < len(instance_ids):
        gone = sorted(set(instance_ids) - set(live))
        warn(f"{len(gone)} recorded instance(s) are not running: {', '.join(gone)}")
    if wait and live:
        provider.wait_until_running(live)
        found = provider.describe_instances(live)
    ips = {i: found[i]["public_ip"] for i in live if i in found}

    public_ips: dict[str, list[str]] = {}
    for role in ROLES:
        names = sorted(state.instances(role), key=_ordinal)
        public_ips[role] = [ips.get(instances[n]["id"], "") for n in names]

    sg_entry = state.get(SECURITY_GROUP_LOGICAL_NAME) or {}
    return {
        "subnet_id": state.outputs.get("subnet_id", ""),
        "security_group_id": sg_entry.get("id", ""),
        "apache_public_ips": public_ips["apache"],
        "nginx_public_ips": public_ips["nginx"],
        "key_name": state.outputs.get("key_name", ""),
        "private_key_path": state.outputs.get("private_key_path", ""),
        "ssh_user": state.outputs.get("ssh_user", ""),
        "apache_urls": [f"http://{ip}" for ip in public_ips["apache"] if ip],
        "nginx_urls": [f"http://{ip}" for ip in public_ips["nginx"] if ip],
    }
