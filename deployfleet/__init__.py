"""deployfleet - Provision apache and nginx EC2 fleets into an existing VPC."""

from .cli import app
from .config import Config, resolve_config
from .discovery import discover
from .errors import (
    DeployFleetError,
    NotFoundError,
    PartialFleetFailure,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from .executor import ConvergeReport, converge, destroy, preview
from .keys import FileKeySink, generate_key_pair, validate_public_key
from .models import (
    DiscoveredFacts,
    InstancePlan,
    KeyPairPlan,
    ResourcePlan,
    SecurityGroupPlan,
    SecurityRule,
)
from .outputs import collect_outputs
from .plan import build_plan, decide_key_pair, expand_fleet, select_subnet
from .providers import AWSProvider, CloudProvider
from .retry import RetryPolicy
from .state import ProvisionedState
from .utils import error, log, setup_logging, warn

__all__ = [
    "app",
    "AWSProvider",
    "CloudProvider",
    "Config",
    "resolve_config",
    "discover",
    "DiscoveredFacts",
    "build_plan",
    "select_subnet",
    "decide_key_pair",
    "expand_fleet",
    "ResourcePlan",
    "InstancePlan",
    "KeyPairPlan",
    "SecurityGroupPlan",
    "SecurityRule",
    "converge",
    "preview",
    "destroy",
    "ConvergeReport",
    "collect_outputs",
    "ProvisionedState",
    "RetryPolicy",
    "FileKeySink",
    "generate_key_pair",
    "validate_public_key",
    "DeployFleetError",
    "ValidationError",
    "NotFoundError",
    "ProviderError",
    "TransientProviderError",
    "PartialFleetFailure",
    "log",
    "warn",
    "error",
    "setup_logging",
]
