"""Transit gateway route validation run before a network associations deploy."""

import logging

from .errors import ConflictingRouteConfigError
from .landing_zone import LandingZoneConfig, TransitGatewayConfig, TransitGatewayRouteEntry
from .models import Target
from .references import TRANSIT_GATEWAY_ATTACHMENT, ReferenceResolver
from .stages import Stage

logger = logging.getLogger(__name__)


def validate_transit_gateway_route(
    route: TransitGatewayRouteEntry,
    route_table_name: str,
    transit_gateway_name: str | None = None,
) -> None:
    """
    Reject route entries with mutually exclusive options.

    Raises:
        ConflictingRouteConfigError: blackhole together with an attachment, or
            not exactly one of destination CIDR / destination prefix list.
    """
    location = f"route table {route_table_name}"
    if transit_gateway_name:
        location = f"transit gateway {transit_gateway_name} {location}"

    if route.blackhole and route.attachment:
        raise ConflictingRouteConfigError(
            "Transit gateway route specifies both blackhole and attachment target. "
            f"Please choose only one. ({location}, destination {route.destination})"
        )
    if bool(route.destination_cidr_block) == bool(route.destination_prefix_list):
        raise ConflictingRouteConfigError(
            "Transit gateway route must specify exactly one of destinationCidrBlock "
            f"or destinationPrefixList ({location}, destination {route.destination})"
        )


def validate_transit_gateway(transit_gateway: TransitGatewayConfig) -> None:
    for table in transit_gateway.route_tables:
        for route in table.routes:
            validate_transit_gateway_route(route, table.name, transit_gateway.name)


class TransitGatewayRoutePreflight:
    """
    Checks the transit gateway routes owned by a target, then resolves their attachments.

    Every route is validated before the first attachment lookup, so a
    conflicting entry fails the target without any cloud call.
    """

    stages = {Stage.NETWORK_ASSOCIATIONS}

    def __init__(self, config: LandingZoneConfig):
        self.config = config

    def owned_transit_gateways(self, target: Target) -> list[TransitGatewayConfig]:
        accounts = self.config.accounts
        return [
            tgw
            for tgw in self.config.network.transit_gateways
            if tgw.region == target.region and accounts.get_account_id(tgw.account) == target.account_id
        ]

    def __call__(self, stage: Stage, target: Target, resolver: ReferenceResolver) -> dict[str, str]:
        """Returns attachment ids keyed by reference key."""
        if stage not in self.stages:
            return {}

        gateways = self.owned_transit_gateways(target)
        for tgw in gateways:
            validate_transit_gateway(tgw)

        attachments = {}
        for tgw in gateways:
            for table in tgw.route_tables:
                for route in table.routes:
                    if not route.attachment or route.attachment.type != "vpc":
                        continue
                    owner_id = self.config.accounts.get_account_id(route.attachment.account)
                    key = TRANSIT_GATEWAY_ATTACHMENT.key(route.attachment.name, tgw.name)
                    attachments[key] = resolver.lookup(
                        TRANSIT_GATEWAY_ATTACHMENT,
                        route.attachment.name,
                        tgw.name,
                        owner_account_id=owner_id,
                    )
        logger.debug("Resolved %d transit gateway attachment(s) for %s", len(attachments), target)
        return attachments
