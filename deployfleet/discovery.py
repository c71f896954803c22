"""Discovery stage: read-only lookups that planning depends on."""

from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait

from .config import Config
from .errors import NotFoundError
from .models import DiscoveredFacts
from .providers import UBUNTU_IMAGE_PATTERN, UBUNTU_OWNER_ID, CloudProvider
from .retry import RetryPolicy
from .utils import log


def discover(
    provider: CloudProvider, config: Config, retry: RetryPolicy | None = None
) -> DiscoveredFacts:
    """Look up the VPC, its subnets and the newest Ubuntu image concurrently.

    The lookups are independent. The first failure cancels whatever has not
    started and is re-raised, so a partial result is never returned.

    :raises NotFoundError: If the VPC, the image or a requested reusable
        security group does not exist
    """
    retry = retry or RetryPolicy(max_attempts=config.max_attempts)
    lookups = {
        "vpc": (provider.describe_vpc, config.vpc_id),
        "subnets": (provider.describe_subnets, config.vpc_id),
        "image": (provider.find_latest_image, UBUNTU_IMAGE_PATTERN, UBUNTU_OWNER_ID),
    }
    if config.reuse_existing_security_group:
        lookups["security_group"] = (
            provider.find_security_group,
            config.vpc_id,
            config.existing_security_group_name,
        )

    log(f"Discovering VPC '{config.vpc_id}' in '{config.region}'...")
    with ThreadPoolExecutor(max_workers=len(lookups)) as pool:
        futures = {
            pool.submit(retry.call, fn, *args): key for key, (fn, *args) in lookups.items()
        }
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in pending:
            future.cancel()
        for future in done:
            if future.exception() is not None:
                raise future.exception()
        results = {futures[f]: f.result() for f in futures}

    existing_sg_id = results.get("security_group")
    if config.reuse_existing_security_group and not existing_sg_id:
        raise NotFoundError(
            f"Security group '{config.existing_security_group_name}' not found "
            f"in VPC '{config.vpc_id}'"
        )

    facts = DiscoveredFacts(
        vpc_id=results["vpc"]["id"],
        subnet_ids=tuple(results["subnets"]),
        image_id=results["image"],
        existing_security_group_id=existing_sg_id,
    )
    log(
        f"Found {len(facts.subnet_ids)} subnet(s), image '{facts.image_id}'"
        + (f", security group '{existing_sg_id}'" if existing_sg_id else "")
    )
    return facts
