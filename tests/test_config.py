"""Input resolution and validation."""

import os

import pytest

from deployfleet.config import resolve_config
from deployfleet.errors import ValidationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("AWS_REGION", "AWS_PROFILE"):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("DEPLOYFLEET_"):
            monkeypatch.delenv(name)


def test_defaults_applied():
    config = resolve_config(vpc_id="vpc-1", admin_cidr="203.0.113.7/32")
    assert config.environment == "production"
    assert config.region == "us-east-1"
    assert config.instance_type == "t3.micro"
    assert config.ssh_user == "ubuntu"
    assert config.private_key_path == "webfleet-key.pem"
    assert config.concurrency == 1


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"vpc_id": ""}, "vpc_id"),
        ({"admin_cidr": ""}, "admin_cidr"),
        ({"admin_cidr": "not-a-cidr"}, "admin_cidr"),
        ({"apache_count": -1}, "apache_count"),
        ({"nginx_count": -2}, "nginx_count"),
        ({"public_key_openssh": "ssh-rsa not-base64!"}, "public_key_openssh"),
        ({"concurrency": 0}, "concurrency"),
        ({"reuse_existing_security_group": True}, "existing_security_group_name"),
        ({"region": "mars-1"}, "region"),
    ],
)
def test_invalid_input_rejected(overrides, message):
    values = {"vpc_id": "vpc-1", "admin_cidr": "203.0.113.7/32", **overrides}
    with pytest.raises(ValidationError, match=message):
        resolve_config(**values)


def test_admin_cidr_normalized():
    config = resolve_config(vpc_id="vpc-1", admin_cidr="203.0.113.7")
    assert config.admin_cidr == "203.0.113.7/32"


def test_availability_zone_converted_to_region():
    config = resolve_config(vpc_id="vpc-1", admin_cidr="10.0.0.0/8", region="eu-west-1b")
    assert config.region == "eu-west-1"


def test_valid_public_key_means_no_generation(public_key):
    config = resolve_config(
        vpc_id="vpc-1", admin_cidr="10.0.0.0/8", public_key_openssh=f"  {public_key}\n"
    )
    assert config.public_key_openssh == public_key
    assert not config.generates_key


def test_precedence_file_then_env_then_overrides(tmp_path, monkeypatch):
    config_file = tmp_path / "fleet.toml"
    config_file.write_text(
        'vpc_id = "vpc-file"\nadmin_cidr = "10.0.0.0/8"\napache_count = 3\nnginx_count = 4\n'
    )
    monkeypatch.setenv("DEPLOYFLEET_NGINX_COUNT", "5")
    monkeypatch.setenv("DEPLOYFLEET_CREATE_KEY_PAIR", "false")

    config = resolve_config(config_file, vpc_id="vpc-cli", apache_count=None)

    assert config.vpc_id == "vpc-cli"
    assert config.apache_count == 3
    assert config.nginx_count == 5
    assert config.create_key_pair is False


def test_config_file_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / "fleet.toml"
    config_file.write_text('vpc_id = "vpc-1"\ncolour = "blue"\n')
    with pytest.raises(ValidationError, match="colour"):
        resolve_config(config_file)


def test_bad_env_value_rejected(monkeypatch):
    monkeypatch.setenv("DEPLOYFLEET_APACHE_COUNT", "many")
    with pytest.raises(ValidationError, match="apache_count"):
        resolve_config(vpc_id="vpc-1", admin_cidr="10.0.0.0/8")


def test_state_commands_do_not_need_target():
    config = resolve_config(require_target=False)
    assert config.vpc_id == ""
    assert config.state_path == "deployfleet.state.json"
