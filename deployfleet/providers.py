"""Cloud provider abstraction and the boto3-backed AWS implementation."""

import configparser
import os
from datetime import datetime, timezone
from typing import Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

from .errors import NotFoundError, ProviderError, classify_exception
from .models import InstancePlan, SecurityRule
from .utils import log

UBUNTU_OWNER_ID = "099720109477"  # Canonical
UBUNTU_IMAGE_PATTERN = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"


class CloudProvider(Protocol):
    region: str

    def describe_vpc(self, vpc_id: str) -> dict: ...

    def describe_subnets(self, vpc_id: str) -> list[str]: ...

    def find_latest_image(self, name_pattern: str, owner: str) -> str: ...

    def find_security_group(self, vpc_id: str, name: str) -> str | None: ...

    def import_key_pair(self, name: str, public_key: str, tags: dict[str, str]) -> str: ...

    def delete_key_pair(self, name: str) -> None: ...

    def create_security_group(
        self, name: str, description: str, vpc_id: str, tags: dict[str, str]
    ) -> str: ...

    def authorize_rules(self, group_id: str, rules: tuple[SecurityRule, ...]) -> None: ...

    def revoke_rules(self, group_id: str, rules: tuple[SecurityRule, ...]) -> None: ...

    def delete_security_group(self, group_id: str) -> None: ...

    def run_instance(
        self,
        instance: InstancePlan,
        *,
        key_name: str,
        security_group_id: str,
        client_token: str,
    ) -> str: ...

    def describe_instances(self, instance_ids: list[str]) -> dict[str, dict]: ...

    def wait_until_running(self, instance_ids: list[str]) -> None: ...

    def terminate_instances(self, instance_ids: list[str]) -> None: ...


def _tag_list(tags: dict[str, str]) -> list[dict]:
    return [{"Key": k, "Value": v} for k, v in tags.items()] + [
        {"Key": "CreatedAt", "Value": datetime.now(timezone.utc).isoformat()}
    ]


def _ip_permission(rule: SecurityRule) -> dict:
    permission = {
        "IpProtocol": rule.protocol,
        "IpRanges": [{"CidrIp": rule.cidr, "Description": rule.description}],
    }
    if rule.protocol != "-1":
        permission["FromPort"] = rule.from_port
        permission["ToPort"] = rule.to_port
    return permission


class AWSProvider:
    """EC2 operations used by deployfleet.

    Every boto3 error is translated into the deployfleet error taxonomy.
    botocore's own retries are disabled; callers retry through RetryPolicy so
    each resource gets a bounded, visible number of attempts.
    """

    def __init__(
        self,
        region: str,
        aws_profile: str | None = None,
        timeout: int = 30,
    ):
        self.aws_config = AWSProvider.get_aws_config(profile=aws_profile)
        self.aws_config["region_name"] = region
        self.region = region
        self.boto_config = BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        self._ec2 = None

    @staticmethod
    def get_aws_config(profile: str | None = None) -> dict:
        """Load AWS configuration for boto3 session initialization.

        Reads profile names from the AWS config files. Does not validate
        credentials; call validate_auth() for that.

        :param profile: Explicit AWS profile name (overrides AWS_PROFILE env var)
        :return: Dict with profile_name key for boto3.Session(), if one applies
        """
        load_dotenv()

        aws_config = {}
        available_profiles = set()
        credentials_path = os.path.expanduser("~/.aws/credentials")
        config_path = os.path.expanduser("~/.aws/config")

        for path in [credentials_path, config_path]:
            if os.path.exists(path):
                cfg = configparser.ConfigParser()
                cfg.read(path)
                for section in cfg.sections():
                    if section.startswith("profile "):
                        available_profiles.add(section[8:])
                    else:
                        available_profiles.add(section)

        profile_name = profile or os.getenv("AWS_PROFILE")
        if profile_name:
            if profile_name in available_profiles:
                aws_config["profile_name"] = profile_name
            else:
                log(f"AWS profile '{profile_name}' not found, using default credential chain...")
                os.environ.pop("AWS_PROFILE", None)

        return aws_config

    def _get_session(self):
        """Get boto3 session using aws_config."""
        return boto3.Session(**self.aws_config)

    @property
    def ec2(self):
        # boto3 clients are thread-safe, sessions are not: build the client once
        if self._ec2 is None:
            self._ec2 = self._get_session().client("ec2", config=self.boto_config)
        return self._ec2

    def _call(self, operation: str, **kwargs) -> dict:
        try:
            return getattr(self.ec2, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise classify_exception(e) from e

    def validate_auth(self) -> None:
        try:
            sts = self._get_session().client("sts", config=self.boto_config)
            identity = sts.get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise classify_exception(e) from e
        profile = self.aws_config.get("profile_name") or identity.get("Arn", "").split("/")[-1]
        log(f"AWS: region={self.region}  profile={profile}  account={identity.get('Account')}")

    def describe_vpc(self, vpc_id: str) -> dict:
        try:
            vpcs = self._call("describe_vpcs", VpcIds=[vpc_id])["Vpcs"]
        except NotFoundError:
            vpcs = []
        if not vpcs:
            raise NotFoundError(f"VPC '{vpc_id}' not found in '{self.region}'")
        return {"id": vpcs[0]["VpcId"], "cidr": vpcs[0].get("CidrBlock", "")}

    def describe_subnets(self, vpc_id: str) -> list[str]:
        subnet_ids = []
        next_token = None
        while True:
            kwargs = {"Filters": [{"Name": "vpc-id", "Values": [vpc_id]}]}
            if next_token:
                kwargs["NextToken"] = next_token
            response = self._call("describe_subnets", **kwargs)
            subnet_ids.extend(s["SubnetId"] for s in response["Subnets"])
            next_token = response.get("NextToken")
            if not next_token:
                return subnet_ids

    def find_latest_image(self, name_pattern: str, owner: str) -> str:
        response = self._call(
            "describe_images",
            Filters=[
                {"Name": "name", "Values": [name_pattern]},
                {"Name": "virtualization-type", "Values": ["hvm"]},
                {"Name": "root-device-type", "Values": ["ebs"]},
            ],
            Owners=[owner],
        )
        if not response["Images"]:
            raise NotFoundError(f"No AMI found matching pattern: '{name_pattern}'")

        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        return images[0]["ImageId"]

    def find_security_group(self, vpc_id: str, name: str) -> str | None:
        response = self._call(
            "describe_security_groups",
            Filters=[
                {"Name": "group-name", "Values": [name]},
                {"Name": "vpc-id", "Values": [vpc_id]},
            ],
        )
        if not response["SecurityGroups"]:
            return None
        return response["SecurityGroups"][0]["GroupId"]

    def import_key_pair(self, name: str, public_key: str, tags: dict[str, str]) -> str:
        response = self._call(
            "import_key_pair",
            KeyName=name,
            PublicKeyMaterial=public_key.encode(),
            TagSpecifications=[{"ResourceType": "key-pair", "Tags": _tag_list(tags)}],
        )
        log(f"Imported key pair: '{name}'")
        return response.get("KeyPairId", name)

    def delete_key_pair(self, name: str) -> None:
        self._call("delete_key_pair", KeyName=name)

    def create_security_group(
        self, name: str, description: str, vpc_id: str, tags: dict[str, str]
    ) -> str:
        response = self._call(
            "create_security_group",
            GroupName=name,
            Description=description,
            VpcId=vpc_id,
            TagSpecifications=[{"ResourceType": "security-group", "Tags": _tag_list(tags)}],
        )
        log(f"Created security group: '{name}' ({response['GroupId']})")
        return response["GroupId"]

    def authorize_rules(self, group_id: str, rules: tuple[SecurityRule, ...]) -> None:
        """Authorize each rule, tolerating rules that already exist.

        New groups already carry an allow-all egress rule, and a re-run after a
        partial authorize finds some rules in place.
        """
        for rule in rules:
            operation = f"authorize_security_group_{rule.direction}"
            try:
                self._call(operation, GroupId=group_id, IpPermissions=[_ip_permission(rule)])
            except ProviderError as e:
                if e.code != "InvalidPermission.Duplicate":
                    raise

    def revoke_rules(self, group_id: str, rules: tuple[SecurityRule, ...]) -> None:
        for rule in rules:
            operation = f"revoke_security_group_{rule.direction}"
            try:
                self._call(operation, GroupId=group_id, IpPermissions=[_ip_permission(rule)])
            except ProviderError as e:
                if e.code != "InvalidPermission.NotFound":
                    raise

    def delete_security_group(self, group_id: str) -> None:
        self._call("delete_security_group", GroupId=group_id)

    def run_instance(
        self,
        instance: InstancePlan,
        *,
        key_name: str,
        security_group_id: str,
        client_token: str,
    ) -> str:
        response = self._call(
            "run_instances",
            ImageId=instance.image_id,
            InstanceType=instance.instance_type,
            KeyName=key_name,
            MinCount=1,
            MaxCount=1,
            ClientToken=client_token,
            UserData=instance.user_data,
            NetworkInterfaces=[
                {
                    "DeviceIndex": 0,
                    "SubnetId": instance.subnet_id,
                    "Groups": [security_group_id],
                    "AssociatePublicIpAddress": True,
                }
            ],
            TagSpecifications=[
                {"ResourceType": "instance", "Tags": _tag_list(dict(instance.tags))}
            ],
        )
        instance_id = response["Instances"][0]["InstanceId"]
        log(f"Launched '{instance.name}' ({instance.instance_type}): '{instance_id}'")
        return instance_id

    def describe_instances(self, instance_ids: list[str]) -> dict[str, dict]:
        """State and public IP of each instance that still exists.

        Looked up by ``instance-id`` filter rather than ``InstanceIds`` so an
        id deleted outside deployfleet is left out instead of failing the call.

        :return: {instance_id: {"state": ..., "public_ip": ...}}
        """
        if not instance_ids:
            return {}
        found = {}
        next_token = None
        while True:
            kwargs = {"Filters": [{"Name": "instance-id", "Values": list(instance_ids)}]}
            if next_token:
                kwargs["NextToken"] = next_token
            response = self._call("describe_instances", **kwargs)
            for reservation in response["Reservations"]:
                for instance in reservation["Instances"]:
                    found[instance["InstanceId"]] = {
                        "state": instance.get("State", {}).get("Name", ""),
                        "public_ip": instance.get("PublicIpAddress", ""),
                    }
            next_token = response.get("NextToken")
            if not next_token:
                return found

    def _wait(self, waiter_name: str, instance_ids: list[str]) -> None:
        try:
            self.ec2.get_waiter(waiter_name).wait(InstanceIds=instance_ids)
        except (ClientError, BotoCoreError) as e:
            raise classify_exception(e) from e

    def wait_until_running(self, instance_ids: list[str]) -> None:
        if instance_ids:
            log(f"Waiting for {len(instance_ids)} instance(s) to start...")
            self._wait("instance_running", instance_ids)

    def terminate_instances(self, instance_ids: list[str]) -> None:
        if not instance_ids:
            return
        self._call("terminate_instances", InstanceIds=instance_ids)
        log(f"Waiting for {len(instance_ids)} instance(s) to terminate...")
        self._wait("instance_terminated", instance_ids)
