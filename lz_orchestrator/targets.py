"""Target resolution: which (account, region) pairs a stage runs against, and in what order."""

import logging
from dataclasses import dataclass

from .errors import ConfigurationError
from .landing_zone import AccountConfig, LandingZoneConfig
from .lib.config import DEFAULT_PREFIX, validate_aws_region
from .models import ExecutionWave, Target
from .stages import STAGE_TOPOLOGY, Command, Stage, Topology, get_global_region

logger = logging.getLogger(__name__)


@dataclass
class CustomStackRunOrder:
    stack_name: str
    run_order: int
    accounts: list[str]
    regions: list[str]


def group_by_run_order(
    run_orders: list[CustomStackRunOrder],
) -> list[tuple[int, list[tuple[str, str, list[str]]]]]:
    """
    Group custom stacks by run order, merging stacks that share an (account, region).

    Returns:
        [(run_order, [(account, region, [stack-account-region, ...]), ...]), ...]
        sorted by ascending run order.
    """
    grouped: dict[int, list[tuple[str, str, list[str]]]] = {}
    for item in sorted(run_orders, key=lambda r: r.run_order):
        groups = grouped.setdefault(item.run_order, [])
        for account in item.accounts:
            for region in item.regions:
                name = f"{item.stack_name}-{account}-{region}"
                for group_account, group_region, names in groups:
                    if group_account == account and group_region == region:
                        names.append(name)
                        break
                else:
                    groups.append((account, region, [name]))
    return sorted(grouped.items())


class TargetResolver:
    """
    Produces the ordered execution plan for a stage.

    A plan is a list of ExecutionWave. Waves run one after another; targets
    inside a wave either run in order (sequential) or concurrently.
    """

    def __init__(
        self,
        config: LandingZoneConfig | None,
        partition: str = "aws",
        single_account_mode: bool = False,
        prefix: str = DEFAULT_PREFIX,
    ):
        self._config = config
        self._partition = partition
        self._single_account_mode = single_account_mode
        self._prefix = prefix

    def resolve_targets(
        self,
        stage: Stage | str,
        command: Command | str = Command.DEPLOY,
        account_id: str | None = None,
        region: str | None = None,
    ) -> list[Target]:
        """Flattened, ordered target list for a stage."""
        waves = self.plan(stage, command, account_id, region)
        return [target for wave in waves for target in wave.targets]

    def plan(
        self,
        stage: Stage | str,
        command: Command | str = Command.DEPLOY,
        account_id: str | None = None,
        region: str | None = None,
    ) -> list[ExecutionWave]:
        stage = Stage.parse(stage)
        command = Command.parse(command)

        if account_id and not region:
            raise ConfigurationError(f"Account set to {account_id}, but region is undefined")
        if account_id and region:
            validate_aws_region(region)
            logger.debug("Single stack mode for %s in %s/%s", stage.value, account_id, region)
            return [
                ExecutionWave(
                    label="single-stack",
                    targets=[Target(account_id, region, self._partition)],
                    sequential=True,
                )
            ]

        topology = Topology.BOOTSTRAP_FLEET if command is Command.BOOTSTRAP else STAGE_TOPOLOGY[stage]
        if topology is Topology.SINGLE_TARGET:
            raise ConfigurationError(
                f"Stage {stage.value} requires an explicit account and region"
            )
        if self._config is None:
            raise ConfigurationError(
                f"Configuration is required to resolve targets for stage {stage.value}"
            )

        builders = {
            Topology.MANAGEMENT_HOME_REGION: self._management_home_region,
            Topology.MANAGEMENT_GLOBAL_REGION: self._management_global_region,
            Topology.MANAGEMENT_PER_REGION: self._management_per_region,
            Topology.AUDIT_PER_REGION: self._audit_per_region,
            Topology.LOG_ARCHIVE_FIRST: self._log_archive_first,
            Topology.BOOTSTRAP_FLEET: self._bootstrap_fleet,
        }
        if topology is Topology.FLEET:
            waves = self._fleet(self._narrow_regions(region))
            if stage is Stage.CUSTOMIZATIONS:
                waves.extend(self.customization_waves(self._narrow_regions(region)))
        else:
            waves = builders[topology]()

        return self._dedupe(waves)

    @property
    def _regions(self) -> list[str]:
        return list(self._config.global_config.enabled_regions)

    def _target(self, account_id: str, region: str, **kwargs) -> Target:
        return Target(account_id, region, self._partition, **kwargs)

    def _narrow_regions(self, region: str | None) -> list[str]:
        if not region:
            return self._regions
        validate_aws_region(region)
        if region not in self._regions:
            raise ConfigurationError(f"Provided region {region} is not an enabled region")
        return [region]

    def _non_management_accounts(self) -> list[AccountConfig]:
        accounts = self._config.accounts
        if self._single_account_mode:
            # Avoid change set collisions by reducing the fleet to one account
            return [accounts.mandatory_accounts[0]]
        management_name = accounts.get_management_account().name
        return [a for a in accounts.all_accounts if a.name != management_name]

    def _management_home_region(self) -> list[ExecutionWave]:
        accounts = self._config.accounts
        return [
            ExecutionWave(
                label="management",
                targets=[
                    self._target(
                        accounts.get_management_account_id(),
                        self._config.global_config.home_region,
                    )
                ],
                sequential=True,
            )
        ]

    def _management_global_region(self) -> list[ExecutionWave]:
        accounts = self._config.accounts
        return [
            ExecutionWave(
                label="management",
                targets=[
                    self._target(
                        accounts.get_management_account_id(),
                        get_global_region(self._partition),
                    )
                ],
                sequential=True,
            )
        ]

    def _management_per_region(self) -> list[ExecutionWave]:
        management_id = self._config.accounts.get_management_account_id()
        return [
            ExecutionWave(
                label="management",
                targets=[self._target(management_id, region) for region in self._regions],
                sequential=True,
            )
        ]

    def _audit_per_region(self) -> list[ExecutionWave]:
        name = self._config.security.get_delegated_account_name()
        try:
            audit_id = self._config.accounts.get_account_id(name)
        except ConfigurationError as e:
            raise ConfigurationError(
                f"Delegated audit account {name} for stage {Stage.SECURITY_AUDIT.value} "
                f"could not be resolved: {e}"
            ) from e
        return [
            ExecutionWave(
                label="audit",
                targets=[self._target(audit_id, region) for region in self._regions],
                sequential=True,
            )
        ]

    def _log_archive_first(self) -> list[ExecutionWave]:
        accounts = self._config.accounts
        log_archive = accounts.get_log_archive_account()
        log_archive_id = accounts.get_account_id(log_archive.name)
        central_region = self._config.global_config.logging_region

        # The central logs bucket must exist before any other region or account
        # can deliver to it.
        waves = [
            ExecutionWave(
                label="log-archive-central",
                targets=[self._target(log_archive_id, central_region)],
                sequential=True,
            ),
            ExecutionWave(
                label="log-archive",
                targets=[
                    self._target(log_archive_id, region)
                    for region in self._regions
                    if region != central_region
                ],
            ),
        ]

        if self._single_account_mode:
            others = [accounts.mandatory_accounts[0]]
        else:
            others = [a for a in accounts.all_accounts if a.name != log_archive.name]
        waves.append(
            ExecutionWave(
                label="accounts",
                targets=[
                    self._target(accounts.get_account_id(account.name), region)
                    for region in self._regions
                    for account in others
                ],
            )
        )
        return waves

    def _fleet(self, regions: list[str]) -> list[ExecutionWave]:
        accounts = self._config.accounts
        management_id = accounts.get_management_account_id()
        return [
            ExecutionWave(
                label="management",
                targets=[self._target(management_id, region) for region in regions],
            ),
            ExecutionWave(
                label="accounts",
                targets=[
                    self._target(accounts.get_account_id(account.name), region)
                    for region in regions
                    for account in self._non_management_accounts()
                ],
            ),
        ]

    def _bootstrap_fleet(self) -> list[ExecutionWave]:
        accounts = self._config.accounts
        management = accounts.get_management_account()
        management_id = accounts.get_account_id(management.name)
        others = [
            a
            for a in accounts.get_accounts(self._single_account_mode)
            if a.name != management.name
        ]
        return [
            ExecutionWave(
                label="bootstrap-management",
                targets=[
                    self._target(management_id, region, trusted_account_id=management_id)
                    for region in self._regions
                ],
                sequential=True,
            ),
            ExecutionWave(
                label="bootstrap-accounts",
                targets=[
                    self._target(
                        accounts.get_account_id(account.name),
                        region,
                        trusted_account_id=management_id,
                    )
                    for region in self._regions
                    for account in others
                ],
            ),
        ]

    def customization_waves(self, regions: list[str]) -> list[ExecutionWave]:
        """Custom stacks by run order, then application stacks."""
        customizations = self._config.customizations
        if customizations is None:
            return []
        accounts = self._config.accounts

        run_orders = [
            CustomStackRunOrder(
                stack_name=stack.name,
                run_order=stack.run_order,
                accounts=accounts.get_account_ids_from_deployment_target(stack.deployment_targets),
                regions=[r for r in stack.regions if r in regions],
            )
            for stack in customizations.cloud_formation_stacks
        ]
        waves = [
            ExecutionWave(
                label=f"run-order-{run_order}",
                targets=[
                    self._target(account, region, stack_names=tuple(names))
                    for account, region, names in groups
                ],
            )
            for run_order, groups in group_by_run_order(run_orders)
        ]

        application_targets = []
        for application in customizations.applications:
            targets = application.deployment_targets
            app_accounts = accounts.get_account_ids_from_deployment_target(targets)
            app_regions = [r for r in regions if r not in targets.excluded_regions]
            for account in app_accounts:
                for region in app_regions:
                    name = f"{self._prefix}-App-{application.name}-{account}-{region}"
                    application_targets.append(self._target(account, region, stack_names=(name,)))
        if application_targets:
            waves.append(ExecutionWave(label="applications", targets=application_targets))
        return waves

    @staticmethod
    def _dedupe(waves: list[ExecutionWave]) -> list[ExecutionWave]:
        """Drop repeated targets and empty waves, keeping first occurrences."""
        seen = set()
        result = []
        for wave in waves:
            targets = []
            for target in wave.targets:
                key = (target.account_id, target.region, target.stack_names)
                if key not in seen:
                    seen.add(key)
                    targets.append(target)
            if targets:
                result.append(ExecutionWave(wave.label, targets, wave.sequential))
        return result
