"""
Cross-account reference lookups through SSM parameters.

Stacks deployed independently publish identifiers under the SSM prefix
(e.g. /accelerator/network/vpc/Main/id). A ReferenceResolver reads them
back for one stack build, locally when the owner is the current account
and through a per-region lookup role otherwise. Results are cached in a
ReferenceMap owned by that build.
"""

import logging
import re
from dataclasses import dataclass

from botocore.exceptions import ClientError

from .credentials import assume_role_context, role_arn
from .errors import CredentialError, ReferenceNotFoundError
from .lib.aws import get_client, get_ssm_parameter
from .lib.config import DEFAULT_PREFIX, DEFAULT_SSM_PREFIX
from .models import CredentialContext

logger = logging.getLogger(__name__)

LOOKUP_SESSION_NAME = "acceleratorReferenceLookup"


def pascal_case(value: str) -> str:
    """'network-main' -> 'NetworkMain'"""
    parts = [part for part in re.split(r"[^A-Za-z0-9]+", value) if part]
    return "".join(part[0].upper() + part[1:] for part in parts)


def organization_arn_for_root(arn: str) -> str:
    """
    Rewrite the Root OU ARN to the organization ARN.

    arn:aws:organizations::111122223333:root/o-abc/r-1234
        -> arn:aws:organizations::111122223333:organization/o-abc
    """
    return arn[: arn.rfind("/")].replace("root", "organization", 1)


@dataclass(frozen=True)
class ReferenceType:
    """
    A kind of cross-stack identifier.

    parameter_path is formatted with the reference names and appended to the
    SSM prefix. role_name is formatted with prefix, resource and region;
    the default is the per-resource SSM parameter lookup role.
    """

    name: str
    parameter_path: str
    role_name: str = "{prefix}-Get{resource}SsmParamRole-{region}"

    def key(self, *names: str) -> str:
        return "_".join([self.name, *names])

    def path(self, ssm_prefix: str, *names: str) -> str:
        return f"{ssm_prefix}{self.parameter_path.format(*names)}"

    def role(self, prefix: str, region: str, *names: str) -> str:
        resource = pascal_case(names[0]) if names else pascal_case(self.name)
        return self.role_name.format(prefix=prefix, resource=resource, region=region)


TRANSIT_GATEWAY = ReferenceType("transitGateway", "/network/transitGateways/{0}/id")
TRANSIT_GATEWAY_ROUTE_TABLE = ReferenceType(
    "transitGatewayRouteTable", "/network/transitGateways/{0}/routeTables/{1}/id"
)
VPC = ReferenceType("vpc", "/network/vpc/{0}/id")
SUBNET = ReferenceType("subnet", "/network/vpc/{0}/subnet/{1}/id")
TRANSIT_GATEWAY_ATTACHMENT = ReferenceType(
    "transitGatewayAttachment",
    "/network/vpc/{0}/transitGatewayAttachment/{1}/id",
    role_name="{prefix}-DescribeTgwAttachRole-{region}",
)
DIRECT_CONNECT_GATEWAY = ReferenceType(
    "directConnectGateway", "/network/directConnectGateways/{0}/id"
)
IPAM_POOL = ReferenceType(
    "ipamPool",
    "/network/ipam/pools/{0}/id",
    role_name="{prefix}-Ipam-GetSsmParamRole",
)


class ReferenceMap:
    """Key to resolved value cache, scoped to one stack build."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)


class ReferenceResolver:
    """Resolves references for one stack build at one target."""

    def __init__(
        self,
        context: CredentialContext,
        current_account_id: str,
        region: str,
        partition: str = "aws",
        prefix: str = DEFAULT_PREFIX,
        ssm_prefix: str = DEFAULT_SSM_PREFIX,
        client_factory=get_client,
        sharing=None,
    ):
        self.context = context
        self.current_account_id = current_account_id
        self.region = region
        self.partition = partition
        self.prefix = prefix
        self.ssm_prefix = ssm_prefix
        self.references = ReferenceMap()
        self._client_factory = client_factory
        # ResourceSharingCoordinator for identifiers shared through AWS RAM
        self.sharing = sharing

    def resolve(
        self,
        key: str,
        owner_account_id: str,
        current_account_id: str | None,
        parameter_path: str,
        parameter_region: str | None = None,
        role_name: str | None = None,
    ) -> str:
        """
        Return the value published at parameter_path by owner_account_id.

        The first lookup of a key performs one local or remote read; later
        lookups return the cached value.

        Raises:
            ReferenceNotFoundError: The parameter is missing or unreadable.
        """
        if key in self.references:
            return self.references.get(key)

        current_account_id = current_account_id or self.current_account_id
        region = parameter_region or self.region

        if owner_account_id == current_account_id:
            logger.debug("Reading %s locally in %s", parameter_path, region)
            context = self.context
        else:
            if not role_name:
                raise ReferenceNotFoundError(
                    key, owner_account_id, region, "no lookup role for cross-account read"
                )
            arn = role_arn(self.partition, owner_account_id, role_name)
            logger.debug("Reading %s from %s via %s", parameter_path, owner_account_id, arn)
            try:
                context = assume_role_context(
                    self.context, arn, LOOKUP_SESSION_NAME, region, self._client_factory
                )
            except CredentialError as e:
                raise ReferenceNotFoundError(key, owner_account_id, region, str(e)) from e

        ssm = self._client_factory(context, "ssm", region)
        try:
            value = get_ssm_parameter(ssm, parameter_path)
        except ClientError as e:
            raise ReferenceNotFoundError(key, owner_account_id, region, str(e)) from e
        if value is None:
            raise ReferenceNotFoundError(
                key, owner_account_id, region, f"parameter {parameter_path} does not exist"
            )

        self.references.set(key, value)
        return value

    def lookup(
        self,
        reference_type: ReferenceType,
        *names: str,
        owner_account_id: str,
        parameter_region: str | None = None,
    ) -> str:
        """Resolve a built-in reference type, e.g. lookup(VPC, "Main", owner_account_id=...)."""
        region = parameter_region or self.region
        return self.resolve(
            reference_type.key(*names),
            owner_account_id,
            self.current_account_id,
            reference_type.path(self.ssm_prefix, *names),
            parameter_region=region,
            role_name=reference_type.role(self.prefix, region, *names),
        )

    def lookup_shared(
        self,
        reference_type: ReferenceType,
        name: str,
        owner_account_id: str,
        share_name: str,
        resource_type: str,
    ) -> str:
        """
        Resolve an identifier owned by another account and shared with this one.

        The owner reads its own SSM parameter. A consumer account asks AWS RAM
        for the resource shared under share_name instead of assuming a role
        in the owner account.

        Raises:
            ReferenceNotFoundError: No share, no shared resource, or no coordinator.
        """
        if owner_account_id == self.current_account_id:
            return self.lookup(reference_type, name, owner_account_id=owner_account_id)

        key = reference_type.key(name)
        if key in self.references:
            return self.references.get(key)
        if self.sharing is None:
            raise ReferenceNotFoundError(
                key, owner_account_id, self.region, "no resource sharing coordinator"
            )

        logger.debug("Reading %s shared by %s through share %s", key, owner_account_id, share_name)
        ram = self._client_factory(self.context, "ram", self.region)
        try:
            value = self.sharing.lookup_shared_resource_id(
                ram, share_name, owner_account_id, resource_type, self.region
            )
        except ClientError as e:
            raise ReferenceNotFoundError(key, owner_account_id, self.region, str(e)) from e

        self.references.set(key, value)
        return value
