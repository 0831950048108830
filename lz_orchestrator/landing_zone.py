"""
In-memory landing zone configuration consumed by the orchestrator.

These objects are built by lib.yaml_parser from the configuration directory
and expose the accessor methods the target resolver, credential broker and
sharing coordinator rely on. Unknown account or OU names raise
ConfigurationError before any cloud call is made.
"""

import logging
from dataclasses import dataclass, field

from .errors import ConfigurationError
from .lib.aws import list_organization_accounts, list_organizational_units

logger = logging.getLogger(__name__)

MANAGEMENT_ACCOUNT_NAME = "Management"
LOG_ARCHIVE_ACCOUNT_NAME = "LogArchive"
AUDIT_ACCOUNT_NAME = "Audit"
ROOT_OU_NAME = "Root"


@dataclass
class DeploymentTargets:
    """Accounts and OUs a resource is deployed to."""

    organizational_units: list[str] = field(default_factory=list)
    accounts: list[str] = field(default_factory=list)
    excluded_accounts: list[str] = field(default_factory=list)
    excluded_regions: list[str] = field(default_factory=list)


@dataclass
class ShareTargets:
    """Principals a regional resource is shared with."""

    organizational_units: list[str] = field(default_factory=list)
    accounts: list[str] = field(default_factory=list)


@dataclass
class AccountConfig:
    name: str
    email: str
    organizational_unit: str
    description: str | None = None


@dataclass
class AccountsConfig:
    """Mandatory and workload accounts plus known account ids (keyed by email)."""

    mandatory_accounts: list[AccountConfig]
    workload_accounts: list[AccountConfig] = field(default_factory=list)
    account_ids: dict[str, str] = field(default_factory=dict)

    @property
    def all_accounts(self) -> list[AccountConfig]:
        """Mandatory then workload accounts, without duplicate names."""
        seen = set()
        accounts = []
        for account in [*self.mandatory_accounts, *self.workload_accounts]:
            if account.name not in seen:
                seen.add(account.name)
                accounts.append(account)
        return accounts

    def get_account(self, name: str) -> AccountConfig:
        for account in self.all_accounts:
            if account.name == name:
                return account
        raise ConfigurationError(f"Account {name} not found in accounts-config.yaml")

    def get_account_id(self, name: str) -> str:
        account = self.get_account(name)
        account_id = self.account_ids.get(account.email.lower())
        if not account_id:
            raise ConfigurationError(
                f"Account id for {name} ({account.email}) is unknown; "
                "add it to accountIds or load account ids from AWS Organizations"
            )
        return account_id

    def get_management_account(self) -> AccountConfig:
        return self.get_account(MANAGEMENT_ACCOUNT_NAME)

    def get_management_account_id(self) -> str:
        return self.get_account_id(MANAGEMENT_ACCOUNT_NAME)

    def get_log_archive_account(self) -> AccountConfig:
        return self.get_account(LOG_ARCHIVE_ACCOUNT_NAME)

    def get_log_archive_account_id(self) -> str:
        return self.get_account_id(LOG_ARCHIVE_ACCOUNT_NAME)

    def get_audit_account_id(self) -> str:
        return self.get_account_id(AUDIT_ACCOUNT_NAME)

    def get_accounts(self, single_account_mode: bool = False) -> list[AccountConfig]:
        if single_account_mode:
            return [self.mandatory_accounts[0]]
        return self.all_accounts

    def load_account_ids(
        self,
        organizations=None,
        single_account_mode: bool = False,
        organizations_enabled: bool = True,
    ) -> None:
        """
        Fill in account ids missing from accountIds.

        With AWS Organizations enabled the ids come from ListAccounts, matched
        by email. In single account mode every account maps to the
        management account id.
        """
        missing = [a for a in self.all_accounts if a.email.lower() not in self.account_ids]
        if not missing:
            return

        if single_account_mode:
            management_id = self.account_ids.get(self.get_management_account().email.lower())
            if not management_id:
                raise ConfigurationError(
                    "Single account mode requires the management account id in accountIds"
                )
            for account in missing:
                self.account_ids[account.email.lower()] = management_id
            return

        if not organizations_enabled or organizations is None:
            names = ", ".join(a.name for a in missing)
            raise ConfigurationError(f"Account ids missing for: {names}")

        for item in list_organization_accounts(organizations):
            email = item.get("Email", "").lower()
            if email and email not in self.account_ids:
                self.account_ids[email] = item["Id"]

        still_missing = [a.name for a in self.all_accounts if a.email.lower() not in self.account_ids]
        if still_missing:
            raise ConfigurationError(
                f"Accounts not found in AWS Organizations: {', '.join(still_missing)}"
            )
        logger.info("Loaded %d account ids from AWS Organizations", len(self.account_ids))

    def get_account_ids_from_deployment_target(self, targets: DeploymentTargets) -> list[str]:
        """Resolve OUs and account names to ids. 'Root' selects every account."""
        selected = set()
        for ou in targets.organizational_units:
            for account in self.all_accounts:
                if (
                    ou == ROOT_OU_NAME
                    or account.organizational_unit == ou
                    or account.organizational_unit.startswith(f"{ou}/")
                ):
                    selected.add(account.name)
        for name in targets.accounts:
            self.get_account(name)
            selected.add(name)
        for name in targets.excluded_accounts:
            selected.discard(name)

        account_ids = []
        for account in self.all_accounts:
            if account.name in selected:
                account_id = self.get_account_id(account.name)
                if account_id not in account_ids:
                    account_ids.append(account_id)
        return account_ids


@dataclass
class OrganizationalUnitId:
    id: str
    arn: str


@dataclass
class OrganizationConfig:
    """Organizational units and their resolved ids/ARNs."""

    enable: bool = True
    organizational_units: list[str] = field(default_factory=list)
    organizational_unit_ids: dict[str, OrganizationalUnitId] = field(default_factory=dict)

    def _lookup(self, name: str) -> OrganizationalUnitId:
        if name != ROOT_OU_NAME and name not in self.organizational_units:
            raise ConfigurationError(
                f"Organizational unit {name} not found in organization-config.yaml"
            )
        unit = self.organizational_unit_ids.get(name)
        if unit is None:
            raise ConfigurationError(f"Organizational unit {name} has no known id")
        return unit

    def get_organizational_unit_id(self, name: str) -> str:
        return self._lookup(name).id

    def get_organizational_unit_arn(self, name: str) -> str:
        return self._lookup(name).arn

    def load_organizational_unit_ids(self, organizations) -> None:
        """Load OU ids and ARNs (including Root) from AWS Organizations."""
        if not self.enable:
            return
        for unit in list_organizational_units(organizations):
            self.organizational_unit_ids.setdefault(
                unit["Name"], OrganizationalUnitId(id=unit["Id"], arn=unit["Arn"])
            )


@dataclass
class CdkOptions:
    centralize_buckets: bool = False
    use_management_access_role: bool = False
    custom_deployment_role: str | None = None
    force_bootstrap: bool = False
    deployment_method: str | None = None


@dataclass
class GlobalConfig:
    home_region: str
    enabled_regions: list[str]
    management_account_access_role: str
    cdk_options: CdkOptions = field(default_factory=CdkOptions)
    centralize_cdk_buckets: bool = False
    centralized_logging_region: str | None = None
    max_concurrent_stacks: int | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def logging_region(self) -> str:
        return self.centralized_logging_region or self.home_region

    @property
    def uses_custom_bootstrap_template(self) -> bool:
        return bool(
            self.centralize_cdk_buckets
            or self.cdk_options.centralize_buckets
            or self.cdk_options.use_management_access_role
            or self.cdk_options.custom_deployment_role
        )


@dataclass
class SecurityConfig:
    delegated_admin_account: str

    def get_delegated_account_name(self) -> str:
        return self.delegated_admin_account


@dataclass
class RouteAttachment:
    name: str
    account: str
    type: str = "vpc"


@dataclass
class TransitGatewayRouteEntry:
    destination_cidr_block: str | None = None
    destination_prefix_list: str | None = None
    blackhole: bool = False
    attachment: RouteAttachment | None = None

    @property
    def destination(self) -> str:
        return self.destination_cidr_block or self.destination_prefix_list or "<none>"


@dataclass
class TransitGatewayRouteTable:
    name: str
    routes: list[TransitGatewayRouteEntry] = field(default_factory=list)


@dataclass
class TransitGatewayConfig:
    name: str
    account: str
    region: str
    route_tables: list[TransitGatewayRouteTable] = field(default_factory=list)
    share_targets: ShareTargets = field(default_factory=ShareTargets)


@dataclass
class NetworkConfig:
    transit_gateways: list[TransitGatewayConfig] = field(default_factory=list)


@dataclass
class CustomStackConfig:
    name: str
    run_order: int
    regions: list[str]
    deployment_targets: DeploymentTargets


@dataclass
class ApplicationConfig:
    name: str
    deployment_targets: DeploymentTargets


@dataclass
class CustomizationsConfig:
    cloud_formation_stacks: list[CustomStackConfig] = field(default_factory=list)
    applications: list[ApplicationConfig] = field(default_factory=list)


@dataclass
class LandingZoneConfig:
    """Every configuration collaborator loaded from one directory."""

    config_dir: str
    accounts: AccountsConfig
    organization: OrganizationConfig
    global_config: GlobalConfig
    security: SecurityConfig
    network: NetworkConfig = field(default_factory=NetworkConfig)
    customizations: CustomizationsConfig | None = None
