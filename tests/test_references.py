"""Tests for cross-account reference resolution."""

import pytest
from botocore.exceptions import ClientError

from conftest import MANAGEMENT_ID, WORKLOAD_ID, paginated
from lz_orchestrator.errors import ReferenceNotFoundError
from lz_orchestrator.models import CredentialContext
from lz_orchestrator.references import (
    DIRECT_CONNECT_GATEWAY,
    TRANSIT_GATEWAY,
    TRANSIT_GATEWAY_ATTACHMENT,
    VPC,
    ReferenceResolver,
    organization_arn_for_root,
    pascal_case,
)
from lz_orchestrator.sharing import ResourceSharingCoordinator


def parameter(value: str) -> dict:
    return {"Parameter": {"Value": value}}


def make_resolver(
    fake_clients, account_id=WORKLOAD_ID, region="us-east-1", sharing=None
) -> ReferenceResolver:
    return ReferenceResolver(
        CredentialContext(description="target"),
        current_account_id=account_id,
        region=region,
        client_factory=fake_clients,
        sharing=sharing,
    )


class TestResolve:
    """Tests for ReferenceResolver.resolve."""

    def test_same_account_reads_locally(self, fake_clients):
        fake_clients.client("ssm").get_parameter.return_value = parameter("vpc-123")
        resolver = make_resolver(fake_clients)

        value = resolver.resolve("vpc_Main", WORKLOAD_ID, WORKLOAD_ID, "/accelerator/network/vpc/Main/id")

        assert value == "vpc-123"
        fake_clients.client("sts").assume_role.assert_not_called()
        fake_clients.client("ssm").get_parameter.assert_called_once_with(
            Name="/accelerator/network/vpc/Main/id"
        )

    def test_other_account_assumes_lookup_role(self, fake_clients):
        fake_clients.client("ssm").get_parameter.return_value = parameter("tgw-123")
        resolver = make_resolver(fake_clients)

        value = resolver.resolve(
            "transitGateway_Main",
            MANAGEMENT_ID,
            WORKLOAD_ID,
            "/accelerator/network/transitGateways/Main/id",
            role_name="AWSAccelerator-GetMainSsmParamRole-us-east-1",
        )

        assert value == "tgw-123"
        _, kwargs = fake_clients.client("sts").assume_role.call_args
        assert kwargs["RoleArn"] == (
            f"arn:aws:iam::{MANAGEMENT_ID}:role/AWSAccelerator-GetMainSsmParamRole-us-east-1"
        )

    def test_repeated_key_is_looked_up_once(self, fake_clients):
        ssm = fake_clients.client("ssm")
        ssm.get_parameter.return_value = parameter("vpc-123")
        resolver = make_resolver(fake_clients)

        for _ in range(3):
            resolver.lookup(VPC, "Main", owner_account_id=WORKLOAD_ID)

        assert ssm.get_parameter.call_count == 1
        assert len(resolver.references) == 1

    def test_separate_builds_do_not_share_cache(self, fake_clients):
        ssm = fake_clients.client("ssm")
        ssm.get_parameter.return_value = parameter("vpc-123")
        first = make_resolver(fake_clients)
        second = make_resolver(fake_clients, account_id=MANAGEMENT_ID)

        first.lookup(VPC, "Main", owner_account_id=WORKLOAD_ID)
        second.lookup(VPC, "Main", owner_account_id=WORKLOAD_ID)

        assert ssm.get_parameter.call_count == 2
        assert first.references is not second.references
        fake_clients.client("sts").assume_role.assert_called_once()

    def test_missing_parameter_raises(self, fake_clients):
        fake_clients.client("ssm").get_parameter.side_effect = ClientError(
            {"Error": {"Code": "ParameterNotFound", "Message": "missing"}},
            "GetParameter",
        )
        resolver = make_resolver(fake_clients, region="eu-west-1")

        with pytest.raises(ReferenceNotFoundError) as exc_info:
            resolver.lookup(VPC, "Missing", owner_account_id=WORKLOAD_ID)

        assert exc_info.value.key == "vpc_Missing"
        assert exc_info.value.account_id == WORKLOAD_ID
        assert "eu-west-1" in str(exc_info.value)

    def test_access_denied_raises_reference_error(self, fake_clients):
        fake_clients.client("ssm").get_parameter.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}},
            "GetParameter",
        )
        resolver = make_resolver(fake_clients)

        with pytest.raises(ReferenceNotFoundError, match="denied"):
            resolver.lookup(VPC, "Main", owner_account_id=MANAGEMENT_ID)

    def test_cross_account_without_role(self, fake_clients):
        resolver = make_resolver(fake_clients)

        with pytest.raises(ReferenceNotFoundError, match="no lookup role"):
            resolver.resolve("x", MANAGEMENT_ID, WORKLOAD_ID, "/accelerator/x")


SHARE_ARGS = {"share_name": "Main_TransitGatewayShare", "resource_type": "ec2:TransitGateway"}


class TestLookupShared:
    """Tests for identifiers shared through AWS RAM."""

    def test_consumer_reads_transit_gateway_id_from_share(self, fake_clients, landing_zone_config):
        ram = fake_clients.client("ram")
        paginators = paginated(
            ram,
            get_resource_shares=[
                {"resourceShares": [{"resourceShareArn": "arn:share", "owningAccountId": MANAGEMENT_ID}]}
            ],
            list_resources=[
                {"resources": [{"arn": "arn:aws:ec2:us-east-1:111111111111:transit-gateway/tgw-0abc"}]}
            ],
        )
        resolver = make_resolver(fake_clients, sharing=ResourceSharingCoordinator(landing_zone_config))

        first = resolver.lookup_shared(TRANSIT_GATEWAY, "Main", owner_account_id=MANAGEMENT_ID, **SHARE_ARGS)
        second = resolver.lookup_shared(TRANSIT_GATEWAY, "Main", owner_account_id=MANAGEMENT_ID, **SHARE_ARGS)

        assert first == second == "tgw-0abc"
        assert resolver.references.get("transitGateway_Main") == "tgw-0abc"
        paginators["get_resource_shares"].paginate.assert_called_once_with(
            resourceOwner="OTHER-ACCOUNTS", name="Main_TransitGatewayShare", resourceShareStatus="ACTIVE"
        )
        fake_clients.client("sts").assume_role.assert_not_called()
        fake_clients.client("ssm").get_parameter.assert_not_called()

    def test_owner_reads_its_own_parameter(self, fake_clients, landing_zone_config):
        fake_clients.client("ssm").get_parameter.return_value = parameter("tgw-0abc")
        resolver = make_resolver(
            fake_clients, account_id=MANAGEMENT_ID, sharing=ResourceSharingCoordinator(landing_zone_config)
        )

        value = resolver.lookup_shared(TRANSIT_GATEWAY, "Main", owner_account_id=MANAGEMENT_ID, **SHARE_ARGS)

        assert value == "tgw-0abc"
        fake_clients.client("ssm").get_parameter.assert_called_once_with(
            Name="/accelerator/network/transitGateways/Main/id"
        )
        fake_clients.client("ram").get_paginator.assert_not_called()

    def test_consumer_without_coordinator_raises(self, fake_clients):
        resolver = make_resolver(fake_clients)

        with pytest.raises(ReferenceNotFoundError, match="no resource sharing coordinator"):
            resolver.lookup_shared(TRANSIT_GATEWAY, "Main", owner_account_id=MANAGEMENT_ID, **SHARE_ARGS)

    def test_ram_access_denied_raises_reference_not_found(self, fake_clients, landing_zone_config):
        def denied(**kwargs):
            raise ClientError(
                {"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetResourceShares"
            )

        paginated(fake_clients.client("ram"), get_resource_shares=denied)
        resolver = make_resolver(fake_clients, sharing=ResourceSharingCoordinator(landing_zone_config))

        expected = f"transitGateway_Main not found in account {MANAGEMENT_ID}"
        with pytest.raises(ReferenceNotFoundError, match=expected):
            resolver.lookup_shared(TRANSIT_GATEWAY, "Main", owner_account_id=MANAGEMENT_ID, **SHARE_ARGS)


class TestReferenceTypes:
    def test_lookup_role_uses_resource_name_and_parameter_region(self, fake_clients):
        fake_clients.client("ssm").get_parameter.return_value = parameter("dxgw-1")
        resolver = make_resolver(fake_clients)

        resolver.lookup(
            DIRECT_CONNECT_GATEWAY, "dx-gateway", owner_account_id=MANAGEMENT_ID, parameter_region="us-west-2"
        )

        _, kwargs = fake_clients.client("sts").assume_role.call_args
        assert kwargs["RoleArn"].endswith(":role/AWSAccelerator-GetDxGatewaySsmParamRole-us-west-2")
        fake_clients.client("ssm").get_parameter.assert_called_once_with(
            Name="/accelerator/network/directConnectGateways/dx-gateway/id"
        )

    def test_transit_gateway_attachment(self):
        assert TRANSIT_GATEWAY_ATTACHMENT.path("/accelerator", "Dev", "Main") == (
            "/accelerator/network/vpc/Dev/transitGatewayAttachment/Main/id"
        )
        assert TRANSIT_GATEWAY_ATTACHMENT.role("AWSAccelerator", "us-east-1", "Dev", "Main") == (
            "AWSAccelerator-DescribeTgwAttachRole-us-east-1"
        )


class TestHelpers:
    def test_root_arn_rewritten_to_organization(self):
        arn = "arn:aws:organizations::111111111111:root/o-example/r-abcd"
        assert organization_arn_for_root(arn) == "arn:aws:organizations::111111111111:organization/o-example"

    @pytest.mark.parametrize(
        "value,expected",
        [("network-main", "NetworkMain"), ("Main", "Main"), ("dx_gw 1", "DxGw1")],
    )
    def test_pascal_case(self, value, expected):
        assert pascal_case(value) == expected
