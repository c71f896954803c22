"""CLI commands driven against the in-memory cloud."""

import json

import pytest

from deployfleet import cli
from deployfleet.cli import FleetOptions
from deployfleet.errors import TransientProviderError
from deployfleet.state import ProvisionedState


@pytest.fixture
def options(tmp_path, monkeypatch, cloud):
    monkeypatch.setattr(cli, "get_provider", lambda config: cloud)
    monkeypatch.chdir(tmp_path)
    return FleetOptions(
        vpc_id="vpc-1",
        admin_cidr="203.0.113.7/32",
        create_key_pair=False,
        apache_count=2,
        nginx_count=1,
        state_path=str(tmp_path / "state.json"),
        max_attempts=1,
    )


def test_apply_then_output_json(options, cloud, capsys):
    cli.apply_command(opts=options)
    capsys.readouterr()

    cli.output_command(json_output=True, opts=FleetOptions(state_path=options.state_path))
    outputs = json.loads(capsys.readouterr().out)

    assert outputs["subnet_id"] == "subnet-a"
    assert len(outputs["apache_urls"]) == 2
    assert outputs["ssh_user"] == "ubuntu"


def test_apply_exits_nonzero_on_partial_failure(options, cloud):
    cloud.launch_failures["nginx-1"] = TransientProviderError("Throttling")

    with pytest.raises(SystemExit) as exc:
        cli.apply_command(opts=options)

    assert exc.value.code == 1
    assert len(ProvisionedState.load(options.state_path).instances()) == 2


def test_apply_with_missing_vpc_exits_before_creating(options, cloud):
    options.vpc_id = "vpc-missing"
    with pytest.raises(SystemExit):
        cli.apply_command(opts=options)
    assert cloud.create_calls == []


def test_plan_prints_actions(options, capsys):
    cli.plan_command(opts=options)
    out = capsys.readouterr().out
    assert "apache-2" in out
    assert "create" in out


def test_destroy_force(options, cloud):
    cli.apply_command(opts=options)
    cli.destroy_command(force=True, opts=FleetOptions(state_path=options.state_path))

    assert cloud.instances == {}
    assert ProvisionedState.load(options.state_path).resources == {}


def test_failure_text_with_brackets_is_printed_verbatim(capsys):
    cli._print_event(
        {
            "name": "apache-1",
            "kind": "instance",
            "action": "failed",
            "error": "InvalidParameterValue: [/dev/sdb]",
            "retryable": False,
        }
    )
    out = capsys.readouterr().out
    assert "[/dev/sdb]" in out
    assert "not retryable" in out
