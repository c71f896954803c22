"""AWSProvider against a mocked boto3 EC2 client."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from deployfleet.errors import NotFoundError, ProviderError, TransientProviderError
from deployfleet.models import DiscoveredFacts
from deployfleet.plan import build_plan, security_group_rules
from deployfleet.providers import UBUNTU_IMAGE_PATTERN, UBUNTU_OWNER_ID, AWSProvider


def _client_error(code: str, operation: str = "Op") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, operation)


@pytest.fixture
def ec2():
    return MagicMock()


@pytest.fixture
def provider(ec2, monkeypatch):
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    p = AWSProvider(region="us-east-1", timeout=5)
    p._ec2 = ec2
    return p


def test_timeouts_configured_and_botocore_retries_disabled(provider):
    assert provider.boto_config.connect_timeout == 5
    assert provider.boto_config.read_timeout == 5
    assert provider.boto_config.retries["total_max_attempts"] == 1


def test_describe_vpc(provider, ec2):
    ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1", "CidrBlock": "10.0.0.0/16"}]}
    assert provider.describe_vpc("vpc-1") == {"id": "vpc-1", "cidr": "10.0.0.0/16"}


def test_describe_vpc_not_found(provider, ec2):
    ec2.describe_vpcs.side_effect = _client_error("InvalidVpcID.NotFound")
    with pytest.raises(NotFoundError, match="vpc-9"):
        provider.describe_vpc("vpc-9")


def test_describe_subnets_follows_pages_in_order(provider, ec2):
    ec2.describe_subnets.side_effect = [
        {"Subnets": [{"SubnetId": "subnet-b"}, {"SubnetId": "subnet-a"}], "NextToken": "t1"},
        {"Subnets": [{"SubnetId": "subnet-c"}]},
    ]
    assert provider.describe_subnets("vpc-1") == ["subnet-b", "subnet-a", "subnet-c"]
    assert ec2.describe_subnets.call_args_list[1].kwargs["NextToken"] == "t1"


def test_find_latest_image_picks_newest(provider, ec2):
    ec2.describe_images.return_value = {
        "Images": [
            {"ImageId": "ami-old", "CreationDate": "2023-01-01T00:00:00.000Z"},
            {"ImageId": "ami-new", "CreationDate": "2024-06-01T00:00:00.000Z"},
            {"ImageId": "ami-mid", "CreationDate": "2023-09-01T00:00:00.000Z"},
        ]
    }
    assert provider.find_latest_image(UBUNTU_IMAGE_PATTERN, UBUNTU_OWNER_ID) == "ami-new"

    kwargs = ec2.describe_images.call_args.kwargs
    assert kwargs["Owners"] == ["099720109477"]
    filters = {f["Name"]: f["Values"] for f in kwargs["Filters"]}
    assert filters == {
        "name": [UBUNTU_IMAGE_PATTERN],
        "virtualization-type": ["hvm"],
        "root-device-type": ["ebs"],
    }


def test_find_latest_image_none(provider, ec2):
    ec2.describe_images.return_value = {"Images": []}
    with pytest.raises(NotFoundError):
        provider.find_latest_image(UBUNTU_IMAGE_PATTERN, UBUNTU_OWNER_ID)


def test_throttling_is_transient(provider, ec2):
    ec2.describe_images.side_effect = _client_error("RequestLimitExceeded")
    with pytest.raises(TransientProviderError):
        provider.find_latest_image(UBUNTU_IMAGE_PATTERN, UBUNTU_OWNER_ID)


def test_authorize_rules_tolerates_duplicates(provider, ec2):
    ec2.authorize_security_group_egress.side_effect = _client_error("InvalidPermission.Duplicate")
    provider.authorize_rules("sg-1", security_group_rules("203.0.113.7/32"))

    assert ec2.authorize_security_group_ingress.call_count == 3
    ssh = ec2.authorize_security_group_ingress.call_args_list[0].kwargs["IpPermissions"][0]
    assert ssh["FromPort"] == 22
    assert ssh["IpRanges"][0]["CidrIp"] == "203.0.113.7/32"
    egress = ec2.authorize_security_group_egress.call_args.kwargs["IpPermissions"][0]
    assert egress["IpProtocol"] == "-1"
    assert "FromPort" not in egress


def test_authorize_rules_raises_other_errors(provider, ec2):
    ec2.authorize_security_group_ingress.side_effect = _client_error("InvalidGroup.Malformed")
    with pytest.raises(ProviderError):
        provider.authorize_rules("sg-1", security_group_rules("203.0.113.7/32"))


def test_run_instance_uses_subnet_group_and_token(provider, ec2, make_config):
    facts = DiscoveredFacts(vpc_id="vpc-1", subnet_ids=("subnet-a",), image_id="ami-1")
    instance = build_plan(make_config(create_key_pair=False), facts).instances[0]
    ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}

    instance_id = provider.run_instance(
        instance, key_name="webfleet-key", security_group_id="sg-1", client_token="tok"
    )

    assert instance_id == "i-1"
    kwargs = ec2.run_instances.call_args.kwargs
    assert kwargs["ClientToken"] == "tok"
    assert kwargs["ImageId"] == "ami-1"
    assert kwargs["KeyName"] == "webfleet-key"
    assert kwargs["NetworkInterfaces"][0]["SubnetId"] == "subnet-a"
    assert kwargs["NetworkInterfaces"][0]["Groups"] == ["sg-1"]
    tags = {t["Key"]: t["Value"] for t in kwargs["TagSpecifications"][0]["Tags"]}
    assert tags["Name"] == "apache-1"
    assert tags["Role"] == "apache"
    assert "CreatedAt" in tags


def test_describe_instances_filters_by_id_and_pages(provider, ec2):
    ec2.describe_instances.side_effect = [
        {
            "Reservations": [
                {
                    "Instances": [
                        {
                            "InstanceId": "i-1",
                            "State": {"Name": "running"},
                            "PublicIpAddress": "198.51.100.1",
                        }
                    ]
                }
            ],
            "NextToken": "page-2",
        },
        {"Reservations": [{"Instances": [{"InstanceId": "i-2", "State": {"Name": "pending"}}]}]},
    ]

    found = provider.describe_instances(["i-1", "i-2", "i-gone"])

    assert found == {
        "i-1": {"state": "running", "public_ip": "198.51.100.1"},
        "i-2": {"state": "pending", "public_ip": ""},
    }
    first, second = ec2.describe_instances.call_args_list
    assert first.kwargs == {
        "Filters": [{"Name": "instance-id", "Values": ["i-1", "i-2", "i-gone"]}]
    }
    assert second.kwargs["NextToken"] == "page-2"
    assert provider.describe_instances([]) == {}


def test_terminate_waits(provider, ec2):
    provider.terminate_instances(["i-1"])
    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])
    ec2.get_waiter.assert_called_once_with("instance_terminated")
