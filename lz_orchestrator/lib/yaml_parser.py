"""YAML parsing for the landing zone configuration directory."""

from pathlib import Path

import yaml

from ..errors import ConfigurationError
from ..landing_zone import (
    AccountConfig,
    AccountsConfig,
    ApplicationConfig,
    CdkOptions,
    CustomizationsConfig,
    CustomStackConfig,
    DeploymentTargets,
    GlobalConfig,
    LandingZoneConfig,
    NetworkConfig,
    OrganizationalUnitId,
    OrganizationConfig,
    RouteAttachment,
    SecurityConfig,
    ShareTargets,
    TransitGatewayConfig,
    TransitGatewayRouteEntry,
    TransitGatewayRouteTable,
)

ACCOUNTS_FILE = "accounts-config.yaml"
GLOBAL_FILE = "global-config.yaml"
ORGANIZATION_FILE = "organization-config.yaml"
SECURITY_FILE = "security-config.yaml"
NETWORK_FILE = "network-config.yaml"
CUSTOMIZATIONS_FILE = "customizations-config.yaml"


def read_yaml(path: Path, required: bool = True) -> dict | None:
    """Read one YAML document; an empty file yields an empty dict."""
    if not path.exists():
        if required:
            raise ConfigurationError(f"{path.name} not found in {path.parent}")
        return None

    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{path.name} is not valid YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path.name} must contain a mapping at the top level")
    return data


def _require(data: dict, key: str, filename: str):
    value = data.get(key)
    if value is None or value == "" or value == []:
        raise ConfigurationError(f"{filename}: '{key}' is required")
    return value


def parse_deployment_targets(data: dict | None) -> DeploymentTargets:
    data = data or {}
    return DeploymentTargets(
        organizational_units=list(data.get("organizationalUnits") or []),
        accounts=list(data.get("accounts") or []),
        excluded_accounts=list(data.get("excludedAccounts") or []),
        excluded_regions=list(data.get("excludedRegions") or []),
    )


def parse_share_targets(data: dict | None) -> ShareTargets:
    data = data or {}
    return ShareTargets(
        organizational_units=list(data.get("organizationalUnits") or []),
        accounts=list(data.get("accounts") or []),
    )


def parse_accounts(data: dict) -> AccountsConfig:
    def account(item: dict) -> AccountConfig:
        return AccountConfig(
            name=_require(item, "name", ACCOUNTS_FILE),
            email=_require(item, "email", ACCOUNTS_FILE),
            organizational_unit=item.get("organizationalUnit") or "",
            description=item.get("description"),
        )

    mandatory = [account(item) for item in _require(data, "mandatoryAccounts", ACCOUNTS_FILE)]
    workload = [account(item) for item in data.get("workloadAccounts") or []]
    account_ids = {
        str(item["email"]).lower(): str(item["accountId"])
        for item in data.get("accountIds") or []
        if item.get("email") and item.get("accountId")
    }
    return AccountsConfig(
        mandatory_accounts=mandatory,
        workload_accounts=workload,
        account_ids=account_ids,
    )


def parse_global(data: dict) -> GlobalConfig:
    cdk = data.get("cdkOptions") or {}
    settings = data.get("acceleratorSettings") or {}
    logging_config = data.get("logging") or {}
    tags = {str(t["key"]): str(t["value"]) for t in data.get("tags") or [] if "key" in t}

    home_region = _require(data, "homeRegion", GLOBAL_FILE)
    enabled_regions = list(_require(data, "enabledRegions", GLOBAL_FILE))
    if home_region not in enabled_regions:
        raise ConfigurationError(
            f"{GLOBAL_FILE}: homeRegion {home_region} must be one of enabledRegions"
        )

    return GlobalConfig(
        home_region=home_region,
        enabled_regions=enabled_regions,
        management_account_access_role=_require(data, "managementAccountAccessRole", GLOBAL_FILE),
        cdk_options=CdkOptions(
            centralize_buckets=bool(cdk.get("centralizeBuckets", False)),
            use_management_access_role=bool(cdk.get("useManagementAccessRole", False)),
            custom_deployment_role=cdk.get("customDeploymentRole"),
            force_bootstrap=bool(cdk.get("forceBootstrap", False)),
            deployment_method=cdk.get("deploymentMethod"),
        ),
        centralize_cdk_buckets=bool((data.get("centralizeCdkBuckets") or {}).get("enable", False)),
        centralized_logging_region=logging_config.get("centralizedLoggingRegion"),
        max_concurrent_stacks=settings.get("maxConcurrentStacks"),
        tags=tags,
    )


def parse_organization(data: dict) -> OrganizationConfig:
    units = [item["name"] for item in data.get("organizationalUnits") or [] if item.get("name")]
    unit_ids = {
        item["name"]: OrganizationalUnitId(id=item["id"], arn=item["arn"])
        for item in data.get("organizationalUnitIds") or []
        if item.get("name") and item.get("id") and item.get("arn")
    }
    return OrganizationConfig(
        enable=bool(data.get("enable", True)),
        organizational_units=units,
        organizational_unit_ids=unit_ids,
    )


def parse_security(data: dict) -> SecurityConfig:
    central = _require(data, "centralSecurityServices", SECURITY_FILE)
    return SecurityConfig(
        delegated_admin_account=_require(central, "delegatedAdminAccount", SECURITY_FILE)
    )


def parse_network(data: dict) -> NetworkConfig:
    gateways = []
    for tgw in data.get("transitGateways") or []:
        route_tables = []
        for table in tgw.get("routeTables") or []:
            routes = []
            for route in table.get("routes") or []:
                attachment = route.get("attachment")
                routes.append(
                    TransitGatewayRouteEntry(
                        destination_cidr_block=route.get("destinationCidrBlock"),
                        destination_prefix_list=route.get("destinationPrefixList"),
                        blackhole=bool(route.get("blackhole", False)),
                        attachment=RouteAttachment(
                            name=attachment["name"],
                            account=attachment["account"],
                            type=attachment.get("type", "vpc"),
                        )
                        if attachment
                        else None,
                    )
                )
            route_tables.append(
                TransitGatewayRouteTable(name=_require(table, "name", NETWORK_FILE), routes=routes)
            )
        gateways.append(
            TransitGatewayConfig(
                name=_require(tgw, "name", NETWORK_FILE),
                account=_require(tgw, "account", NETWORK_FILE),
                region=_require(tgw, "region", NETWORK_FILE),
                route_tables=route_tables,
                share_targets=parse_share_targets(tgw.get("shareTargets")),
            )
        )
    return NetworkConfig(transit_gateways=gateways)


def parse_customizations(data: dict) -> CustomizationsConfig:
    customizations = data.get("customizations") or {}
    stacks = [
        CustomStackConfig(
            name=_require(item, "name", CUSTOMIZATIONS_FILE),
            run_order=int(item.get("runOrder", 1)),
            regions=list(item.get("regions") or []),
            deployment_targets=parse_deployment_targets(item.get("deploymentTargets")),
        )
        for item in customizations.get("cloudFormationStacks") or []
    ]
    applications = [
        ApplicationConfig(
            name=_require(item, "name", CUSTOMIZATIONS_FILE),
            deployment_targets=parse_deployment_targets(item.get("deploymentTargets")),
        )
        for item in data.get("applications") or []
    ]
    return CustomizationsConfig(cloud_formation_stacks=stacks, applications=applications)


def load_landing_zone_config(config_dir: Path) -> LandingZoneConfig:
    """
    Load every configuration file from config_dir.

    Args:
        config_dir: Directory holding the *-config.yaml files

    Returns:
        The parsed configuration. Account and OU ids that are not listed in
        the files are loaded later from AWS Organizations.

    Raises:
        ConfigurationError: A required file or key is missing or malformed.
    """
    config_dir = Path(config_dir)
    if not config_dir.is_dir():
        raise ConfigurationError(f"Configuration directory not found: {config_dir}")

    network = read_yaml(config_dir / NETWORK_FILE, required=False)
    customizations = read_yaml(config_dir / CUSTOMIZATIONS_FILE, required=False)

    return LandingZoneConfig(
        config_dir=str(config_dir),
        accounts=parse_accounts(read_yaml(config_dir / ACCOUNTS_FILE)),
        organization=parse_organization(read_yaml(config_dir / ORGANIZATION_FILE)),
        global_config=parse_global(read_yaml(config_dir / GLOBAL_FILE)),
        security=parse_security(read_yaml(config_dir / SECURITY_FILE)),
        network=parse_network(network) if network is not None else NetworkConfig(),
        customizations=parse_customizations(customizations) if customizations is not None else None,
    )
