"""AWS RAM resource shares to accounts and organizational units."""

import logging
from dataclasses import dataclass, field

from .errors import ReferenceNotFoundError
from .landing_zone import (
    ROOT_OU_NAME,
    DeploymentTargets,
    LandingZoneConfig,
    ShareTargets,
    TransitGatewayConfig,
)
from .lib.aws import paginate
from .lib.resilience import throttling_backoff
from .models import Target
from .references import TRANSIT_GATEWAY, ReferenceResolver, organization_arn_for_root
from .stages import Stage

logger = logging.getLogger(__name__)

TRANSIT_GATEWAY_RESOURCE_TYPE = "ec2:TransitGateway"


def transit_gateway_share_name(transit_gateway: TransitGatewayConfig) -> str:
    return f"{transit_gateway.name}_TransitGatewayShare"


@dataclass
class ResourceShare:
    name: str
    principals: list[str]
    resource_arns: list[str] = field(default_factory=list)
    allow_external_principals: bool = False


class ResourceSharingCoordinator:
    """Resolves share targets to principals, creates shares and reads shared ids back."""

    def __init__(self, config: LandingZoneConfig, partition: str = "aws"):
        self.config = config
        self.partition = partition

    def principals_for(self, share_targets: ShareTargets) -> list[str]:
        """OU ARNs (Root as the organization ARN) followed by account ids."""
        principals = []
        for ou in share_targets.organizational_units:
            arn = self.config.organization.get_organizational_unit_arn(ou)
            if ou == ROOT_OU_NAME:
                arn = organization_arn_for_root(arn)
            principals.append(arn)
        for account in share_targets.accounts:
            principals.append(self.config.accounts.get_account_id(account))
        return list(dict.fromkeys(principals))

    def consumer_account_ids(self, share_targets: ShareTargets) -> list[str]:
        """Every account that receives a share, OU members included."""
        return self.config.accounts.get_account_ids_from_deployment_target(
            DeploymentTargets(
                organizational_units=list(share_targets.organizational_units),
                accounts=list(share_targets.accounts),
            )
        )

    def share(
        self,
        resource_arns: list[str],
        share_targets: ShareTargets,
        name: str,
    ) -> ResourceShare:
        """
        Build one share with the union of every principal.

        Callers pass the full principal set for a resource in a single call;
        separate calls for the same resource produce separate shares.
        """
        return ResourceShare(
            name=name,
            principals=self.principals_for(share_targets),
            resource_arns=list(resource_arns),
        )

    def transit_gateway_share(
        self,
        transit_gateway: TransitGatewayConfig,
        transit_gateway_id: str,
    ) -> ResourceShare:
        owner_id = self.config.accounts.get_account_id(transit_gateway.account)
        arn = (
            f"arn:{self.partition}:ec2:{transit_gateway.region}:{owner_id}"
            f":transit-gateway/{transit_gateway_id}"
        )
        return self.share(
            [arn], transit_gateway.share_targets, transit_gateway_share_name(transit_gateway)
        )

    def apply(self, ram, share: ResourceShare) -> str | None:
        """
        Create the share, or associate new resources/principals with an existing one.

        Returns:
            The resource share ARN, or None when there is nobody to share with.
        """
        if not share.principals:
            logger.info("Resource share %s has no principals, skipping", share.name)
            return None

        existing = self._find_share(ram, share.name, "SELF")
        if existing:
            arn = existing["resourceShareArn"]
            logger.info("Updating resource share %s", share.name)
            throttling_backoff(
                lambda: ram.associate_resource_share(
                    resourceShareArn=arn,
                    resourceArns=share.resource_arns,
                    principals=share.principals,
                )
            )
            return arn

        logger.info("Creating resource share %s for %d principal(s)", share.name, len(share.principals))
        response = throttling_backoff(
            lambda: ram.create_resource_share(
                name=share.name,
                resourceArns=share.resource_arns,
                principals=share.principals,
                allowExternalPrincipals=share.allow_external_principals,
            )
        )
        return response["resourceShare"]["resourceShareArn"]

    @staticmethod
    def _find_share(
        ram,
        name: str,
        resource_owner: str,
        owner_account_id: str | None = None,
    ) -> dict | None:
        shares = paginate(
            ram,
            "get_resource_shares",
            "resourceShares",
            resourceOwner=resource_owner,
            name=name,
            resourceShareStatus="ACTIVE",
        )
        for item in shares:
            if owner_account_id is None or item.get("owningAccountId") == owner_account_id:
                return item
        return None

    def lookup_shared_resource_id(
        self,
        ram,
        share_name: str,
        owner_account_id: str,
        resource_type: str,
        region: str,
    ) -> str:
        """
        Identifier of a resource shared with the current account, e.g. a transit gateway id.

        Raises:
            ReferenceNotFoundError: No active share or no matching resource.
        """
        key = f"{resource_type}_{share_name}"
        share = self._find_share(ram, share_name, "OTHER-ACCOUNTS", owner_account_id)
        if share is None:
            raise ReferenceNotFoundError(key, owner_account_id, region, "resource share not found")

        resources = paginate(
            ram,
            "list_resources",
            "resources",
            resourceOwner="OTHER-ACCOUNTS",
            resourceShareArns=[share["resourceShareArn"]],
            resourceType=resource_type,
        )
        if resources:
            return resources[0]["arn"].split("/")[-1]
        raise ReferenceNotFoundError(key, owner_account_id, region, "no shared resources")


class SharedTransitGatewayPreflight:
    """
    Resolves transit gateways shared with a consumer account before its VPCs deploy.

    The owner of a transit gateway is skipped; it reads its own id when its
    network stacks synthesize.
    """

    stages = {Stage.NETWORK_VPC}

    def __init__(self, config: LandingZoneConfig, coordinator: ResourceSharingCoordinator):
        self.config = config
        self.coordinator = coordinator

    def shared_transit_gateways(self, target: Target) -> list[TransitGatewayConfig]:
        accounts = self.config.accounts
        return [
            tgw
            for tgw in self.config.network.transit_gateways
            if tgw.region == target.region
            and accounts.get_account_id(tgw.account) != target.account_id
            and target.account_id in self.coordinator.consumer_account_ids(tgw.share_targets)
        ]

    def __call__(self, stage: Stage, target: Target, resolver: ReferenceResolver) -> dict[str, str]:
        """Returns transit gateway ids keyed by reference key."""
        if stage not in self.stages:
            return {}

        resolved = {}
        for tgw in self.shared_transit_gateways(target):
            resolved[TRANSIT_GATEWAY.key(tgw.name)] = resolver.lookup_shared(
                TRANSIT_GATEWAY,
                tgw.name,
                owner_account_id=self.config.accounts.get_account_id(tgw.account),
                share_name=transit_gateway_share_name(tgw),
                resource_type=TRANSIT_GATEWAY_RESOURCE_TYPE,
            )
        return resolved
