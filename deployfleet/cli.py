#!/usr/bin/env python3
"""Provision a VPC-scoped web fleet on AWS.

Prerequisites: AWS credentials for the target account, an existing VPC.

Usage: uv run deployfleet <command> [options]

Examples:
    uv run deployfleet plan --vpc-id vpc-0abc --admin-cidr 203.0.113.7/32
    uv run deployfleet apply --vpc-id vpc-0abc --admin-cidr 203.0.113.7/32 --apache-count 2
    uv run deployfleet output --json
    uv run deployfleet destroy
"""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Annotated

import cyclopts
from cyclopts import Parameter
from rich import print, print_json
from rich.markup import escape
from rich.table import Table

from .config import Config, resolve_config
from .discovery import discover
from .errors import DeployFleetError
from .executor import converge, destroy, preview
from .outputs import collect_outputs
from .plan import build_plan
from .providers import AWSProvider
from .retry import RetryPolicy
from .state import ProvisionedState
from .types import ResourceResult
from .utils import error, log, setup_logging, warn

app = cyclopts.App(
    name="deployfleet", help="Provision apache and nginx fleets on AWS", sort_key=None
)

ACTION_STYLES = {
    "create": "green",
    "created": "green",
    "replace": "yellow",
    "update": "yellow",
    "updated": "yellow",
    "adopt": "cyan",
    "adopted": "cyan",
    "skip": "dim",
    "skipped": "dim",
    "stale": "magenta",
    "failed": "red",
}


@dataclass
class FleetOptions:
    """Options shared by every command; unset values fall back to the
    config file, then DEPLOYFLEET_* environment variables, then defaults."""

    config_file: Path | None = None
    """TOML file with ``key = value`` overrides."""

    vpc_id: str | None = None
    """Target VPC (required for plan and apply)."""

    admin_cidr: str | None = None
    """CIDR allowed to reach SSH, e.g. 203.0.113.7/32. Security-sensitive."""

    region: str | None = None
    environment: str | None = None
    project_name: str | None = None

    subnet_id: str | None = None
    """Use this subnet instead of the first one discovered in the VPC."""

    reuse_existing_security_group: bool | None = None
    """Adopt an existing group by name instead of creating one."""

    existing_security_group_name: str | None = None
    keypair_name: str | None = None

    create_key_pair: bool | None = None
    """Import or generate the key pair. When false, keypair_name must already exist."""

    public_key_openssh: str | None = None
    """Import this public key instead of generating one."""

    private_key_path: str | None = None
    ssh_user: str | None = None
    apache_count: int | None = None
    nginx_count: int | None = None
    instance_type: str | None = None
    aws_profile: str | None = None
    state_path: str | None = None

    concurrency: int | None = None
    """Instances launched in parallel (default: 1)."""

    api_timeout: int | None = None
    """Seconds before an AWS call is treated as a retryable failure."""

    max_attempts: int | None = None
    log_level: str = "INFO"

    def resolve(self, require_target: bool = True) -> Config:
        overrides = asdict(self)
        config_file = overrides.pop("config_file")
        overrides.pop("log_level")
        return resolve_config(config_file, require_target=require_target, **overrides)


def get_provider(config: Config) -> AWSProvider:
    return AWSProvider(
        region=config.region, aws_profile=config.aws_profile, timeout=config.api_timeout
    )


def _print_event(result: ResourceResult) -> None:
    action = result["action"]
    style = ACTION_STYLES.get(action, "white")
    detail = result.get("id", "")
    if action == "failed":
        kind = "retryable" if result.get("retryable") else "not retryable"
        detail = f"{escape(result.get('error', ''))} ({kind})"
    print(f"  [{style}]{action:>8}[/{style}]  {result['name']}  {detail}")


def _print_outputs(outputs: dict) -> None:
    print("[bold]Outputs:[/bold]")
    width = max(len(k) for k in outputs)
    for key, value in outputs.items():
        if isinstance(value, list):
            value = ", ".join(value) or "-"
        print(f"  {key.ljust(width)}  {value or '-'}")


def _options(opts: FleetOptions | None) -> FleetOptions:
    opts = opts or FleetOptions()
    setup_logging(opts.log_level)
    return opts


@app.command(name="plan")
def plan_command(*, opts: Annotated[FleetOptions | None, Parameter(name="*")] = None):
    """Discover the target VPC and show what apply would do."""
    opts = _options(opts)
    try:
        config = opts.resolve()
        provider = get_provider(config)
        facts = discover(provider, config)
        plan = build_plan(config, facts)
        state = ProvisionedState.load(config.state_path)
    except DeployFleetError as e:
        error(f"{type(e).__name__}: {e}")

    table = Table("RESOURCE", "ACTION", title=f"Plan for '{config.vpc_id}'")
    for name, action in preview(plan, state):
        style = ACTION_STYLES.get(action, "white")
        table.add_row(name, f"[{style}]{action}[/{style}]")
    print(table)
    print(f"  Subnet: {plan.subnet_id or '[red]none[/red]'}")
    print(f"  Key pair: '{plan.key_pair.name}' ({plan.key_pair.mode})")


@app.command(name="apply")
def apply_command(
    *,
    no_wait: bool = False,
    opts: Annotated[FleetOptions | None, Parameter(name="*")] = None,
):
    """Create missing resources and report outputs. Safe to re-run.

    :param no_wait: Do not wait for instances to reach 'running' before reading IPs
    """
    opts = _options(opts)
    try:
        config = opts.resolve()
        provider = get_provider(config)
        facts = discover(provider, config)
        plan = build_plan(config, facts)
        state = ProvisionedState.load(config.state_path)
    except DeployFleetError as e:
        error(f"{type(e).__name__}: {e}")

    log(f"Converging {len(plan.instances)} instance(s) into '{config.state_path}'...")
    report = converge(
        plan,
        state,
        provider,
        concurrency=config.concurrency,
        retry=RetryPolicy(max_attempts=config.max_attempts),
        on_event=_print_event,
    )

    try:
        _print_outputs(collect_outputs(state, provider, wait=not no_wait))
    except DeployFleetError as e:
        warn(f"Could not read outputs: {e}")

    if not report.ok:
        for failure in report.fleet_failures():
            warn(str(failure))
        error(
            f"{len(report.failed)} resource(s) failed; "
            f"{len(report.created)} created. Re-run apply to finish."
        )
    log("Apply complete")


@app.command(name="destroy")
def destroy_command(
    *,
    force: bool = False,
    opts: Annotated[FleetOptions | None, Parameter(name="*")] = None,
):
    """Delete every resource recorded in the state file.

    :param force: Skip confirmation prompt
    """
    opts = _options(opts)
    try:
        config = opts.resolve(require_target=False)
        state = ProvisionedState.load(config.state_path)
    except DeployFleetError as e:
        error(f"{type(e).__name__}: {e}")

    if not state.resources and not state.orphans:
        log(f"Nothing recorded in '{config.state_path}'")
        return

    print("[yellow]Resources to delete:[/yellow]")
    for name, entry in state.resources.items():
        print(f"  {name}: {entry.get('id')}")
    for instance_id in state.orphans:
        print(f"  (replaced): {instance_id}")

    if not force:
        confirm = input("Delete these resources? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    try:
        removed = destroy(
            state,
            get_provider(config),
            retry=RetryPolicy(max_attempts=config.max_attempts),
        )
    except DeployFleetError as e:
        error(f"{type(e).__name__}: {e}. Re-run destroy to finish.")
    log(f"Destroyed {len(removed)} resource(s)")


@app.command(name="output")
def output_command(
    *,
    json_output: Annotated[bool, Parameter(name="--json")] = False,
    opts: Annotated[FleetOptions | None, Parameter(name="*")] = None,
):
    """Show subnet, security group, key, public IPs and URLs.

    :param json_output: Print outputs as JSON
    """
    opts = _options(opts)
    try:
        config = opts.resolve(require_target=False)
        state = ProvisionedState.load(config.state_path)
        outputs = collect_outputs(state, get_provider(config))
    except DeployFleetError as e:
        error(f"{type(e).__name__}: {e}")

    if json_output:
        print_json(data=outputs)
    else:
        _print_outputs(outputs)


@app.command(name="state")
def state_command(*, opts: Annotated[FleetOptions | None, Parameter(name="*")] = None):
    """List resources recorded in the state file."""
    opts = _options(opts)
    try:
        config = opts.resolve(require_target=False)
        state = ProvisionedState.load(config.state_path)
    except DeployFleetError as e:
        error(f"{type(e).__name__}: {e}")

    if not state.resources:
        print(f"No resources recorded in '{config.state_path}'")
        return

    table = Table("RESOURCE", "KIND", "ID", "HASH", title=f"State '{config.state_path}'")
    for name, entry in state.resources.items():
        kind = entry.get("kind", "?") + (" (adopted)" if entry.get("adopted") else "")
        table.add_row(name, kind, entry.get("id", ""), (entry.get("hash") or "pending")[:12])
    print(table)
    for instance_id in state.orphans:
        print(f"  replaced, still running: {instance_id}")


if __name__ == "__main__":
    app()
