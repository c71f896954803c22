"""Convergence executor: create what is missing, skip what already matches."""

import hashlib
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field

from .errors import (
    DeployFleetError,
    NotFoundError,
    PartialFleetFailure,
    ProviderError,
    ValidationError,
)
from .keys import FileKeySink, generate_key_pair
from .models import InstancePlan, KeyPairPlan, ResourcePlan, SecurityGroupPlan, SecurityRule
from .plan import KEY_PAIR_LOGICAL_NAME, SECURITY_GROUP_LOGICAL_NAME
from .providers import CloudProvider
from .retry import RetryPolicy
from .state import ProvisionedState
from .types import ResourceResult
from .utils import compute_hash, log, warn

EventHook = Callable[[ResourceResult], None]


@dataclass
class ConvergeReport:
    """Per-resource outcomes of one converge() pass."""

    results: list[ResourceResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed(self) -> list[ResourceResult]:
        return [r for r in self.results if r["action"] == "failed"]

    @property
    def created(self) -> list[ResourceResult]:
        return [r for r in self.results if r["action"] == "created"]

    def by_action(self, action: str) -> list[str]:
        return [r["name"] for r in self.results if r["action"] == action]

    def fleet_failures(self) -> list[PartialFleetFailure]:
        failures: dict[str, dict[int, str]] = {}
        for r in self.failed:
            if r["kind"] == "instance":
                failures.setdefault(r["role"], {})[r["index"]] = r.get("error", "")
        return [PartialFleetFailure(role, causes) for role, causes in failures.items()]

    def raise_for_status(self) -> None:
        """Raise for the first failure: fleet failures take precedence."""
        fleet_failures = self.fleet_failures()
        if fleet_failures:
            raise fleet_failures[0]
        for r in self.failed:
            raise ProviderError(f"{r['name']}: {r.get('error', 'failed')}")


def client_token(lineage: str, name: str, spec_hash: str) -> str:
    """Idempotency token for run_instances (max 64 ASCII characters).

    A retried launch with the same token returns the original instance
    instead of starting a second one.
    """
    return hashlib.sha256(f"{lineage}:{name}:{spec_hash}".encode()).hexdigest()[:32]


def _rules_from_entry(entry: dict) -> tuple[SecurityRule, ...]:
    return tuple(SecurityRule(**r) for r in entry.get("rules", []))


def _failure(name: str, kind: str, e: DeployFleetError, **extra) -> ResourceResult:
    return {
        "name": name,
        "kind": kind,
        "action": "failed",
        "error": str(e),
        "retryable": e.retryable,
        **extra,
    }


class Converger:
    """Runs one convergence pass for a plan against recorded state."""

    def __init__(
        self,
        plan: ResourcePlan,
        state: ProvisionedState,
        provider: CloudProvider,
        *,
        concurrency: int = 1,
        retry: RetryPolicy | None = None,
        key_sink: FileKeySink | None = None,
        on_event: EventHook | None = None,
    ):
        self.plan = plan
        self.state = state
        self.provider = provider
        self.concurrency = concurrency
        self.retry = retry or RetryPolicy()
        self.key_sink = key_sink
        self.on_event = on_event
        self.report = ConvergeReport()
        self._report_lock = threading.Lock()

    def _emit(self, result: ResourceResult) -> ResourceResult:
        with self._report_lock:
            self.report.results.append(result)
        if self.on_event:
            self.on_event(result)
        return result

    def run(self) -> ConvergeReport:
        key_result = self.converge_key_pair(self.plan.key_pair)
        sg_result = self.converge_security_group(self.plan.security_group)

        self.state.set_outputs(
            subnet_id=self.plan.subnet_id,
            key_name=self.plan.key_pair.name,
            private_key_path=self.plan.private_key_path,
            ssh_user=self.plan.ssh_user,
        )

        blocker = next(
            (r for r in (key_result, sg_result) if r and r["action"] == "failed"), None
        )
        if blocker:
            for instance in self.plan.instances:
                self._emit(
                    {
                        "name": instance.name,
                        "kind": "instance",
                        "action": "failed",
                        "role": instance.role,
                        "index": instance.index,
                        "error": f"blocked by failed dependency '{blocker['name']}'",
                        "retryable": blocker.get("retryable", False),
                    }
                )
        else:
            self.converge_instances(sg_result["id"])

        order = {name: i for i, name in enumerate(self.logical_names())}
        self.report.results.sort(key=lambda r: order.get(r["name"], len(order)))
        return self.report

    def logical_names(self) -> list[str]:
        names = []
        if self.plan.key_pair.mode != "existing":
            names.append(KEY_PAIR_LOGICAL_NAME)
        names.append(SECURITY_GROUP_LOGICAL_NAME)
        names.extend(i.name for i in self.plan.instances)
        return names

    def converge_key_pair(self, key_pair: KeyPairPlan) -> ResourceResult | None:
        """Import or generate the key pair; None when an existing one is reused."""
        if key_pair.mode == "existing":
            return None

        name = KEY_PAIR_LOGICAL_NAME
        spec_hash = compute_hash(key_pair.spec())
        entry = self.state.get(name)
        if entry and entry.get("hash") == spec_hash:
            return self._emit(
                {"name": name, "kind": "key_pair", "action": "skipped", "id": entry["id"]}
            )

        tags = {"Name": key_pair.name, "ManagedBy": "deployfleet"}
        try:
            if entry:
                old_name = entry.get("name", key_pair.name)
                warn(f"Key pair '{old_name}' changed, replacing it")
                self.retry.call(self.provider.delete_key_pair, old_name)

            if key_pair.mode == "generate":
                private_pem, public_key = generate_key_pair()
                key_id = self.retry.call(
                    self.provider.import_key_pair, key_pair.name, public_key, tags
                )
                sink = self.key_sink or FileKeySink(self.plan.private_key_path)
                try:
                    sink.persist(private_pem)
                except (OSError, DeployFleetError) as e:
                    # an unrecoverable key must not stay registered
                    self.retry.call(self.provider.delete_key_pair, key_pair.name)
                    raise ValidationError(f"Could not store private key: {e}") from e
            else:
                key_id = self.retry.call(
                    self.provider.import_key_pair, key_pair.name, key_pair.public_key, tags
                )
        except DeployFleetError as e:
            return self._emit(_failure(name, "key_pair", e))

        self.state.record(
            name,
            {
                "kind": "key_pair",
                "id": key_id,
                "hash": spec_hash,
                "name": key_pair.name,
                "private_key_path": self.plan.private_key_path,
            },
        )
        return self._emit({"name": name, "kind": "key_pair", "action": "created", "id": key_id})

    def converge_security_group(self, sg: SecurityGroupPlan) -> ResourceResult:
        name = SECURITY_GROUP_LOGICAL_NAME
        spec_hash = compute_hash(sg.spec())
        entry = self.state.get(name)
        if entry and entry.get("hash") == spec_hash:
            return self._emit(
                {"name": name, "kind": "security_group", "action": "skipped", "id": entry["id"]}
            )

        if sg.existing_id:
            self.state.record(
                name,
                {
                    "kind": "security_group",
                    "id": sg.existing_id,
                    "hash": spec_hash,
                    "adopted": True,
                    "name": sg.name,
                    "vpc_id": sg.vpc_id,
                },
            )
            log(f"Reusing existing security group '{sg.name}' ({sg.existing_id})")
            return self._emit(
                {"name": name, "kind": "security_group", "action": "adopted", "id": sg.existing_id}
            )

        try:
            if entry and not entry.get("adopted"):
                if (entry.get("name"), entry.get("vpc_id")) != (sg.name, sg.vpc_id):
                    raise ValidationError(
                        f"Security group '{entry.get('name')}' cannot be renamed or moved "
                        f"to '{sg.name}' in '{sg.vpc_id}'; run destroy first"
                    )
                group_id = entry["id"]
                action = "updated"
                # unfinished create (no hash yet) or changed rule set
                self.retry.call(self.provider.authorize_rules, group_id, sg.rules)
                stale = tuple(r for r in _rules_from_entry(entry) if r not in sg.rules)
                if stale:
                    self.retry.call(self.provider.revoke_rules, group_id, stale)
            else:
                group_id = self.retry.call(
                    self.provider.create_security_group,
                    sg.name,
                    sg.description,
                    sg.vpc_id,
                    dict(sg.tags),
                )
                action = "created"
                # recorded without a hash so a failed authorize is finished on re-run
                self.state.record(
                    name,
                    {
                        "kind": "security_group",
                        "id": group_id,
                        "hash": "",
                        "name": sg.name,
                        "vpc_id": sg.vpc_id,
                        "rules": [],
                    },
                )
                self.retry.call(self.provider.authorize_rules, group_id, sg.rules)
        except DeployFleetError as e:
            return self._emit(_failure(name, "security_group", e))

        self.state.record(
            name,
            {
                "kind": "security_group",
                "id": group_id,
                "hash": spec_hash,
                "name": sg.name,
                "vpc_id": sg.vpc_id,
                "rules": [asdict(r) for r in sg.rules],
            },
        )
        return self._emit({"name": name, "kind": "security_group", "action": action, "id": group_id})

    def converge_instance(self, instance: InstancePlan, security_group_id: str) -> ResourceResult:
        key_name = self.plan.key_pair.name
        base = {"name": instance.name, "kind": "instance", "role": instance.role, "index": instance.index}

        spec_hash = compute_hash(instance.spec(key_name, security_group_id))
        entry = self.state.get(instance.name)
        if entry and entry.get("hash") == spec_hash:
            return self._emit({**base, "action": "skipped", "id": entry["id"]})

        try:
            if not instance.subnet_id:
                raise ValidationError(
                    "No subnet selected: the VPC has no subnets and no subnet_id was given"
                )
            if entry:
                warn(f"'{instance.name}' changed, launching a replacement for '{entry['id']}'")
            instance_id = self.retry.call(
                self.provider.run_instance,
                instance,
                key_name=key_name,
                security_group_id=security_group_id,
                client_token=client_token(self.state.lineage, instance.name, spec_hash),
            )
        except DeployFleetError as e:
            return self._emit(_failure(instance.name, "instance", e, role=instance.role, index=instance.index))

        self.state.record(
            instance.name,
            {"kind": "instance", "id": instance_id, "hash": spec_hash, "role": instance.role},
        )
        return self._emit({**base, "action": "created", "id": instance_id})

    def converge_instances(self, security_group_id: str) -> None:
        if not self.plan.instances:
            return
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = [
                pool.submit(self.converge_instance, instance, security_group_id)
                for instance in self.plan.instances
            ]
            for future in as_completed(futures):
                future.result()


def converge(
    plan: ResourcePlan,
    state: ProvisionedState,
    provider: CloudProvider,
    *,
    concurrency: int = 1,
    retry: RetryPolicy | None = None,
    key_sink: FileKeySink | None = None,
    on_event: EventHook | None = None,
) -> ConvergeReport:
    """Bring the cloud in line with plan, recording every success in state.

    Resources whose recorded hash matches are skipped without a provider
    call. Failures are scoped to one resource and nothing is rolled back;
    the report says which failed and whether a re-run may fix it.
    """
    return Converger(
        plan,
        state,
        provider,
        concurrency=concurrency,
        retry=retry,
        key_sink=key_sink,
        on_event=on_event,
    ).run()


def preview(plan: ResourcePlan, state: ProvisionedState) -> list[tuple[str, str]]:
    """Dry-run actions per logical resource, without calling the provider.

    :return: (name, action) pairs; action is create, replace, update, adopt,
        skip or stale (recorded but no longer planned, never auto-deleted)
    """
    actions = []

    def _action(name: str, spec_hash: str | None, replace: str = "replace") -> str:
        entry = state.get(name)
        if entry is None:
            return "create"
        if spec_hash is not None and entry.get("hash") == spec_hash:
            return "skip"
        return replace

    if plan.key_pair.mode != "existing":
        actions.append(
            (KEY_PAIR_LOGICAL_NAME, _action(KEY_PAIR_LOGICAL_NAME, compute_hash(plan.key_pair.spec())))
        )

    sg = plan.security_group
    sg_action = _action(SECURITY_GROUP_LOGICAL_NAME, compute_hash(sg.spec()), "update")
    if sg.existing_id and sg_action != "skip":
        sg_action = "adopt"
    actions.append((SECURITY_GROUP_LOGICAL_NAME, sg_action))

    sg_entry = state.get(SECURITY_GROUP_LOGICAL_NAME)
    sg_id = sg.existing_id or (sg_entry["id"] if sg_entry and sg_action != "create" else None)
    for instance in plan.instances:
        spec_hash = None
        if sg_id:
            spec_hash = compute_hash(instance.spec(plan.key_pair.name, sg_id))
        actions.append((instance.name, _action(instance.name, spec_hash)))

    planned = {name for name, _ in actions}
    actions.extend((name, "stale") for name in state.resources if name not in planned)
    return actions


def destroy(
    state: ProvisionedState,
    provider: CloudProvider,
    *,
    key_sink: FileKeySink | None = None,
    retry: RetryPolicy | None = None,
) -> list[str]:
    """Delete everything recorded in state, instances first.

    Objects already gone on the cloud side count as deleted. Adopted
    security groups are forgotten but left in place.

    :return: Logical names (and orphan ids) that were removed
    """
    retry = retry or RetryPolicy()
    removed = []

    instances = state.instances()
    instance_ids = [e["id"] for e in instances.values()] + list(state.orphans)
    if instance_ids:
        log(f"Terminating {len(instance_ids)} instance(s)...")
        try:
            retry.call(provider.terminate_instances, instance_ids)
        except NotFoundError:
            # EC2 rejects the whole batch when any id is unknown
            found = retry.call(provider.describe_instances, instance_ids)
            remaining = [
                i for i in instance_ids if found.get(i, {}).get("state") not in (None, "terminated")
            ]
            warn(f"{len(instance_ids) - len(remaining)} instance(s) were already gone")
            if remaining:
                retry.call(provider.terminate_instances, remaining)
        for name in instances:
            state.remove(name)
            removed.append(name)
        removed.extend(state.orphans)
        state.clear_orphans(instance_ids)

    sg_entry = state.get(SECURITY_GROUP_LOGICAL_NAME)
    if sg_entry:
        if sg_entry.get("adopted"):
            log(f"Leaving reused security group '{sg_entry['id']}' in place")
        else:
            try:
                retry.call(provider.delete_security_group, sg_entry["id"])
                log(f"Deleted security group '{sg_entry['id']}'")
            except NotFoundError:
                warn(f"Security group '{sg_entry['id']}' was already gone")
        state.remove(SECURITY_GROUP_LOGICAL_NAME)
        removed.append(SECURITY_GROUP_LOGICAL_NAME)

    key_entry = state.get(KEY_PAIR_LOGICAL_NAME)
    if key_entry:
        key_name = key_entry.get("name") or state.outputs.get("key_name", "")
        if key_name:
            try:
                retry.call(provider.delete_key_pair, key_name)
                log(f"Deleted key pair '{key_name}'")
            except NotFoundError:
                warn(f"Key pair '{key_name}' was already gone")
        private_key_path = key_entry.get("private_key_path")
        if key_sink or private_key_path:
            (key_sink or FileKeySink(private_key_path)).remove()
        state.remove(KEY_PAIR_LOGICAL_NAME)
        removed.append(KEY_PAIR_LOGICAL_NAME)

    state.reset_if_empty()
    return removed
