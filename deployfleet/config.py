"""Input resolution: defaults, config file, environment and CLI overrides."""

import ipaddress
import os
import re
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

from dotenv import load_dotenv

from .errors import ValidationError
from .keys import validate_public_key
from .utils import log

ENV_PREFIX = "DEPLOYFLEET_"

REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")


@dataclass(frozen=True)
class Config:
    """Normalized run configuration. Build it with resolve_config()."""

    vpc_id: str = ""
    admin_cidr: str = ""
    region: str = "us-east-1"
    environment: str = "production"
    project_name: str = "webfleet"
    subnet_id: str = ""
    reuse_existing_security_group: bool = False
    existing_security_group_name: str = ""
    keypair_name: str = "webfleet-key"
    create_key_pair: bool = True
    public_key_openssh: str = field(default="", repr=False)
    private_key_path: str = ""
    ssh_user: str = "ubuntu"
    apache_count: int = 1
    nginx_count: int = 1
    instance_type: str = "t3.micro"
    aws_profile: str | None = None
    state_path: str = "deployfleet.state.json"
    concurrency: int = 1
    api_timeout: int = 30
    max_attempts: int = 3

    @property
    def generates_key(self) -> bool:
        return self.create_key_pair and not self.public_key_openssh


FIELD_TYPES = {f.name: f.type for f in fields(Config)}


def _coerce(name: str, value):
    """Convert a raw string (env var, TOML value) to the field's type."""
    kind = FIELD_TYPES[name]
    if value is None:
        return None
    if kind is bool:
        if isinstance(value, bool):
            return value
        lowered = str(value).strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
        raise ValidationError(f"'{name}' must be a boolean, got '{value}'")
    if kind is int:
        if isinstance(value, bool):
            raise ValidationError(f"'{name}' must be an integer, got '{value}'")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"'{name}' must be an integer, got '{value}'")
    return str(value)


def load_config_file(path: str | Path) -> dict:
    """Read overrides from a TOML file of top-level ``key = value`` pairs.

    :raises ValidationError: If the file is missing, malformed or has unknown keys
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Config file not found: '{path}'")
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as e:
        raise ValidationError(f"Invalid TOML in '{path}': {e}")
    unknown = sorted(set(data) - set(FIELD_TYPES))
    if unknown:
        raise ValidationError(f"Unknown keys in '{path}': {', '.join(unknown)}")
    return {k: _coerce(k, v) for k, v in data.items()}


def load_env_overrides() -> dict:
    """Collect DEPLOYFLEET_* environment variables (and AWS_REGION/AWS_PROFILE)."""
    load_dotenv()
    values = {}
    if os.getenv("AWS_REGION"):
        values["region"] = os.environ["AWS_REGION"]
    if os.getenv("AWS_PROFILE"):
        values["aws_profile"] = os.environ["AWS_PROFILE"]
    for name in FIELD_TYPES:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = _coerce(name, raw)
    return values


def normalize_region(region: str) -> str:
    # us-east-1a -> us-east-1
    if region and region[-1].isalpha() and REGION_PATTERN.match(region[:-1]):
        normalized = region[:-1]
        log(f"Converted availability zone '{region}' to region '{normalized}'")
        return normalized
    if not REGION_PATTERN.match(region):
        raise ValidationError(f"Invalid AWS region: '{region}'")
    return region


def validate_config(config: Config, require_target: bool = True) -> Config:
    """Check invariants and fill derived defaults.

    :param require_target: Require vpc_id and admin_cidr (not needed to read state)
    :return: Normalized copy of config
    :raises ValidationError: On the first violated invariant
    """
    if require_target and not config.vpc_id.strip():
        raise ValidationError("vpc_id is required")

    admin_cidr = config.admin_cidr.strip()
    if require_target and not admin_cidr:
        raise ValidationError(
            "admin_cidr is required (CIDR allowed to reach SSH, e.g. 203.0.113.7/32)"
        )
    if admin_cidr:
        try:
            admin_cidr = str(ipaddress.IPv4Network(admin_cidr, strict=False))
        except ValueError as e:
            raise ValidationError(f"admin_cidr '{config.admin_cidr}' is not an IPv4 CIDR: {e}")

    for name in ("apache_count", "nginx_count"):
        if getattr(config, name) < 0:
            raise ValidationError(f"{name} must be >= 0, got {getattr(config, name)}")
    for name in ("concurrency", "api_timeout", "max_attempts"):
        if getattr(config, name) < 1:
            raise ValidationError(f"{name} must be >= 1, got {getattr(config, name)}")

    public_key = config.public_key_openssh.strip()
    if public_key:
        public_key = validate_public_key(public_key)

    if not config.keypair_name.strip():
        raise ValidationError("keypair_name must not be empty")

    if config.reuse_existing_security_group and not config.existing_security_group_name.strip():
        raise ValidationError(
            "existing_security_group_name is required when reuse_existing_security_group is set"
        )

    return replace(
        config,
        vpc_id=config.vpc_id.strip(),
        subnet_id=config.subnet_id.strip(),
        admin_cidr=admin_cidr,
        region=normalize_region(config.region.strip()),
        public_key_openssh=public_key,
        private_key_path=config.private_key_path or f"{config.keypair_name}.pem",
    )


def resolve_config(
    config_file: str | Path | None = None, require_target: bool = True, **overrides
) -> Config:
    """Build a validated Config.

    Precedence, lowest first: defaults, config file, environment, overrides.
    Overrides whose value is None are ignored so CLI options can default to None.

    :raises ValidationError: If any value is invalid
    """
    values: dict = {}
    if config_file:
        values.update(load_config_file(config_file))
    values.update(load_env_overrides())

    unknown = sorted(set(overrides) - set(FIELD_TYPES))
    if unknown:
        raise ValidationError(f"Unknown configuration option(s): {', '.join(unknown)}")
    values.update({k: v for k, v in overrides.items() if v is not None})

    return validate_config(Config(**values), require_target=require_target)
