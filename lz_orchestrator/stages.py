"""Stage identifiers and the static stage tables.

Every stage maps to exactly one execution topology and one or more stack
name templates. The tables are checked for completeness when the module is
imported.
"""

from enum import Enum

from .errors import ConfigurationError


class Stage(Enum):
    """A named phase of the landing zone pipeline."""

    PREPARE = "prepare"
    DIAGNOSTICS_PACK = "diagnostics-pack"
    PIPELINE = "pipeline"
    TESTER_PIPELINE = "tester-pipeline"
    ORGANIZATIONS = "organizations"
    KEY = "key"
    LOGGING = "logging"
    BOOTSTRAP = "bootstrap"
    ACCOUNTS = "accounts"
    DEPENDENCIES = "dependencies"
    SECURITY = "security"
    SECURITY_RESOURCES = "security-resources"
    RESOURCE_POLICY_ENFORCEMENT = "resource-policy-enforcement"
    OPERATIONS = "operations"
    IDENTITY_CENTER = "identity-center"
    NETWORK_PREP = "network-prep"
    NETWORK_VPC = "network-vpc"
    NETWORK_VPC_ENDPOINTS = "network-vpc-endpoints"
    NETWORK_VPC_DNS = "network-vpc-dns"
    NETWORK_ASSOCIATIONS = "network-associations"
    NETWORK_ASSOCIATIONS_GWLB = "network-associations-gwlb"
    FINALIZE = "finalize"
    SECURITY_AUDIT = "security-audit"
    CUSTOMIZATIONS = "customizations"

    @classmethod
    def parse(cls, value: "str | Stage") -> "Stage":
        """Accept 'network-vpc', 'NETWORK_VPC' or a Stage."""
        if isinstance(value, Stage):
            return value
        normalized = value.strip().lower().replace("_", "-")
        for stage in cls:
            if stage.value == normalized:
                return stage
        raise ConfigurationError(f"Unsupported stage: {value}")


class Command(Enum):
    """Deployer commands the toolchain understands."""

    BOOTSTRAP = "bootstrap"
    DEPLOY = "deploy"
    DIFF = "diff"
    SYNTH = "synth"

    @classmethod
    def parse(cls, value: "str | Command") -> "Command":
        if isinstance(value, Command):
            return value
        normalized = value.strip().lower()
        if normalized == "synthesize":
            return cls.SYNTH
        for command in cls:
            if command.value == normalized:
                return command
        raise ConfigurationError(f"Unsupported command: {value}")


class Topology(Enum):
    """How a stage fans out over accounts and regions."""

    SINGLE_TARGET = "single-target"
    MANAGEMENT_HOME_REGION = "management-home-region"
    MANAGEMENT_GLOBAL_REGION = "management-global-region"
    MANAGEMENT_PER_REGION = "management-per-region"
    AUDIT_PER_REGION = "audit-per-region"
    LOG_ARCHIVE_FIRST = "log-archive-first"
    FLEET = "fleet"
    BOOTSTRAP_FLEET = "bootstrap-fleet"

    @property
    def sequential(self) -> bool:
        """True when targets must complete one at a time, in order."""
        return self in SEQUENTIAL_TOPOLOGIES


SEQUENTIAL_TOPOLOGIES = {
    Topology.SINGLE_TARGET,
    Topology.MANAGEMENT_HOME_REGION,
    Topology.MANAGEMENT_GLOBAL_REGION,
    Topology.MANAGEMENT_PER_REGION,
    Topology.AUDIT_PER_REGION,
}

STACK_BASE_NAMES: dict[Stage, str] = {
    Stage.PREPARE: "PrepareStack",
    Stage.DIAGNOSTICS_PACK: "DiagnosticsPackStack",
    Stage.PIPELINE: "PipelineStack",
    Stage.TESTER_PIPELINE: "TesterPipelineStack",
    Stage.ORGANIZATIONS: "OrganizationsStack",
    Stage.KEY: "KeyStack",
    Stage.LOGGING: "LoggingStack",
    Stage.BOOTSTRAP: "BootstrapStack",
    Stage.ACCOUNTS: "AccountsStack",
    Stage.DEPENDENCIES: "DependenciesStack",
    Stage.SECURITY: "SecurityStack",
    Stage.SECURITY_RESOURCES: "SecurityResourcesStack",
    Stage.RESOURCE_POLICY_ENFORCEMENT: "ResourcePolicyEnforcementStack",
    Stage.OPERATIONS: "OperationsStack",
    Stage.IDENTITY_CENTER: "IdentityCenterStack",
    Stage.NETWORK_PREP: "NetworkPrepStack",
    Stage.NETWORK_VPC: "NetworkVpcStack",
    Stage.NETWORK_VPC_ENDPOINTS: "NetworkVpcEndpointsStack",
    Stage.NETWORK_VPC_DNS: "NetworkVpcDnsStack",
    Stage.NETWORK_ASSOCIATIONS: "NetworkAssociationsStack",
    Stage.NETWORK_ASSOCIATIONS_GWLB: "NetworkAssociationsGwlbStack",
    Stage.FINALIZE: "FinalizeStack",
    Stage.SECURITY_AUDIT: "SecurityAuditStack",
    Stage.CUSTOMIZATIONS: "CustomizationsStack",
}

# Stages whose deploy touches more than their own stack, or a different one
STACK_EXPANSIONS: dict[Stage, tuple[Stage, ...]] = {
    Stage.KEY: (Stage.KEY, Stage.DEPENDENCIES),
    Stage.NETWORK_VPC: (Stage.NETWORK_VPC_DNS,),
    Stage.NETWORK_ASSOCIATIONS: (Stage.NETWORK_ASSOCIATIONS, Stage.NETWORK_ASSOCIATIONS_GWLB),
}

STAGE_TOPOLOGY: dict[Stage, Topology] = {
    Stage.PIPELINE: Topology.SINGLE_TARGET,
    Stage.TESTER_PIPELINE: Topology.SINGLE_TARGET,
    Stage.DIAGNOSTICS_PACK: Topology.SINGLE_TARGET,
    Stage.PREPARE: Topology.MANAGEMENT_HOME_REGION,
    Stage.IDENTITY_CENTER: Topology.MANAGEMENT_HOME_REGION,
    Stage.ACCOUNTS: Topology.MANAGEMENT_HOME_REGION,
    Stage.FINALIZE: Topology.MANAGEMENT_GLOBAL_REGION,
    Stage.ORGANIZATIONS: Topology.MANAGEMENT_PER_REGION,
    Stage.SECURITY_AUDIT: Topology.AUDIT_PER_REGION,
    Stage.LOGGING: Topology.LOG_ARCHIVE_FIRST,
    Stage.BOOTSTRAP: Topology.BOOTSTRAP_FLEET,
    Stage.KEY: Topology.FLEET,
    Stage.DEPENDENCIES: Topology.FLEET,
    Stage.SECURITY: Topology.FLEET,
    Stage.SECURITY_RESOURCES: Topology.FLEET,
    Stage.RESOURCE_POLICY_ENFORCEMENT: Topology.FLEET,
    Stage.OPERATIONS: Topology.FLEET,
    Stage.NETWORK_PREP: Topology.FLEET,
    Stage.NETWORK_VPC: Topology.FLEET,
    Stage.NETWORK_VPC_ENDPOINTS: Topology.FLEET,
    Stage.NETWORK_VPC_DNS: Topology.FLEET,
    Stage.NETWORK_ASSOCIATIONS: Topology.FLEET,
    Stage.NETWORK_ASSOCIATIONS_GWLB: Topology.FLEET,
    Stage.CUSTOMIZATIONS: Topology.FLEET,
}

INSTALLER_STAGES = {Stage.PIPELINE, Stage.TESTER_PIPELINE, Stage.DIAGNOSTICS_PACK}

# Stages that run before the custom deployment role exists
PRE_BOOTSTRAP_STAGES = {Stage.PREPARE, Stage.ACCOUNTS, Stage.BOOTSTRAP}

# Order used when diff is requested without a stage
DIFF_STAGES = (
    Stage.ORGANIZATIONS,
    Stage.KEY,
    Stage.CUSTOMIZATIONS,
    Stage.RESOURCE_POLICY_ENFORCEMENT,
    Stage.DEPENDENCIES,
    Stage.FINALIZE,
    Stage.IDENTITY_CENTER,
    Stage.LOGGING,
    Stage.NETWORK_ASSOCIATIONS,
    Stage.NETWORK_ASSOCIATIONS_GWLB,
    Stage.NETWORK_PREP,
    Stage.NETWORK_VPC,
    Stage.NETWORK_VPC_DNS,
    Stage.NETWORK_VPC_ENDPOINTS,
    Stage.OPERATIONS,
    Stage.SECURITY,
    Stage.SECURITY_AUDIT,
    Stage.SECURITY_RESOURCES,
)

GLOBAL_REGIONS = {
    "aws": "us-east-1",
    "aws-us-gov": "us-gov-west-1",
    "aws-cn": "cn-northwest-1",
    "aws-iso": "us-iso-east-1",
    "aws-iso-b": "us-isob-east-1",
    "aws-iso-e": "eu-isoe-west-1",
    "aws-iso-f": "us-isof-south-1",
}


def validate_stage_tables() -> None:
    """Fail when a stage is missing from any of the static tables."""
    for table_name, table in (
        ("stack name", STACK_BASE_NAMES),
        ("topology", STAGE_TOPOLOGY),
    ):
        missing = [stage.name for stage in Stage if stage not in table]
        if missing:
            raise ConfigurationError(f"Stages missing a {table_name} entry: {', '.join(missing)}")
    for stage, expansion in STACK_EXPANSIONS.items():
        if not expansion:
            raise ConfigurationError(f"Stage {stage.name} expands to no stacks")


def is_config_dependent(stage: Stage | None) -> bool:
    return stage not in INSTALLER_STAGES


def is_before_bootstrap(command: Command, stage: Stage | None) -> bool:
    """True while the custom deployment role cannot be assumed yet."""
    if command is Command.BOOTSTRAP:
        return True
    return stage in PRE_BOOTSTRAP_STAGES


def get_global_region(partition: str) -> str:
    return GLOBAL_REGIONS.get(partition, "us-east-1")


def stack_base_name(stage: Stage, prefix: str) -> str:
    """e.g. AWSAccelerator-NetworkVpcStack"""
    return f"{prefix}-{STACK_BASE_NAMES[stage]}"


def stack_names_for(
    stage: Stage,
    account_id: str,
    region: str,
    prefix: str,
    qualifier: str | None = None,
) -> list[str]:
    """Concrete stack names deployed for one stage at one target."""
    if stage in INSTALLER_STAGES and qualifier:
        if stage is Stage.DIAGNOSTICS_PACK:
            return [f"{qualifier}-DiagnosticsPackStack-{account_id}-{region}"]
        return [f"{qualifier}-{stage.value}-stack-{account_id}-{region}"]

    stages = STACK_EXPANSIONS.get(stage, (stage,))
    return [f"{stack_base_name(item, prefix)}-{account_id}-{region}" for item in stages]


validate_stage_tables()
