"""
Stage execution across the landing zone fleet.

A stage is planned into execution waves by the TargetResolver. Waves run
one after another. Targets of a sequential wave run one at a time and the
first failure skips the rest; targets of a fan-out wave run concurrently,
capped by a semaphore, and each target's failure is isolated from its
siblings. Any failure skips every later wave.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable

from botocore.exceptions import ClientError

from .credentials import CredentialBroker
from .errors import ConfigurationError, OrchestratorError, StageExecutionError
from .landing_zone import LandingZoneConfig
from .lib.aws import get_client
from .lib.commands import CommandError
from .lib.config import OrchestratorSettings
from .models import CredentialContext, ExecutionWave, StageReport, Target, TargetResult, TargetStatus
from .references import ReferenceResolver
from .sharing import ResourceSharingCoordinator
from .stages import DIFF_STAGES, Command, Stage, is_config_dependent, stack_names_for
from .targets import TargetResolver
from .toolkit import BootstrapInspector, ToolchainInvoker

logger = logging.getLogger(__name__)

# Errors reported without a traceback; anything else is logged with one
TARGET_ERRORS = (OrchestratorError, CommandError, ClientError)

# preflight(stage, target, resolver) runs before the deployer is called; a returned
# dict of resolved identifiers is passed to the app as context
PreflightCheck = Callable[[Stage, Target, ReferenceResolver], object]


class StageOrchestrator:
    """Runs bootstrap, deploy, diff and synth for a stage over its targets."""

    def __init__(
        self,
        settings: OrchestratorSettings,
        config: LandingZoneConfig | None,
        invoker: ToolchainInvoker,
        broker: CredentialBroker | None = None,
        partition: str = "aws",
        max_concurrent: int | None = None,
        fail_fast: bool = False,
        require_approval: str = "never",
        app_path: str | None = None,
        preflight_checks: list[PreflightCheck] | None = None,
        sharing: ResourceSharingCoordinator | None = None,
        inspector: BootstrapInspector | None = None,
        client_factory=get_client,
        on_status_change: Callable[[TargetResult], None] | None = None,
    ):
        self.settings = settings
        self.config = config
        self.invoker = invoker
        self.partition = partition
        self.fail_fast = fail_fast
        self.require_approval = require_approval
        self.app_path = app_path
        self.preflight_checks = preflight_checks or []
        if sharing is None and config is not None:
            sharing = ResourceSharingCoordinator(config, partition)
        self.sharing = sharing
        self._broker = broker or CredentialBroker(settings, client_factory)
        self._client_factory = client_factory
        self._max_concurrent = max_concurrent
        self._on_status_change = on_status_change
        self._resolver = TargetResolver(
            config,
            partition=partition,
            single_account_mode=settings.enable_single_account_mode,
            prefix=settings.accelerator_prefix,
        )
        if inspector is None and config is not None:
            inspector = BootstrapInspector(config.global_config, client_factory)
        self._inspector = inspector
        self._semaphore: asyncio.Semaphore | None = None
        self._cancelled = False

    def max_concurrent(self, command: Command) -> int:
        """Concurrency cap for fan-out waves."""
        if self._max_concurrent:
            return self._max_concurrent
        if command is Command.DEPLOY and self.config is not None:
            configured = self.config.global_config.max_concurrent_stacks
            if configured:
                return configured
        return self.settings.max_concurrent_stacks

    def cancel(self) -> None:
        """Cancel targets that have not started yet."""
        self._cancelled = True

    async def run(
        self,
        command: Command | str,
        stage: Stage | str | None = None,
        account_id: str | None = None,
        region: str | None = None,
    ) -> list[StageReport]:
        """
        Run a command for one stage, or for every diff stage when diff has no stage.

        Raises:
            ConfigurationError: Invalid stage, configuration or target selection.
            CredentialError: The management account could not be reached.
            StageExecutionError: One or more targets failed.
        """
        command = Command.parse(command)
        stage = Stage.parse(stage) if stage else None

        if command is Command.BOOTSTRAP:
            stage = Stage.BOOTSTRAP
        elif command is Command.SYNTH and stage is None:
            if account_id or region:
                raise ConfigurationError("Synth for a single account or region requires a stage")
            context = await asyncio.to_thread(self._broker.management_context, self.partition)
            await asyncio.to_thread(self.invoker.synth_app, None, context)
            return []
        elif command is Command.DIFF and stage is None:
            reports = []
            for diff_stage in DIFF_STAGES:
                report = await self.run_stage(diff_stage, command, account_id, region)
                reports.append(report)
                if not report.success:
                    raise StageExecutionError(report)
            return reports
        elif stage is None:
            raise ConfigurationError(f"A stage is required for {command.value}")

        if command is Command.SYNTH and region and not account_id:
            raise ConfigurationError(f"Region {region} given without an account for synth")

        report = await self.run_stage(stage, command, account_id, region)
        if not report.success:
            raise StageExecutionError(report)
        return [report]

    async def run_stage(
        self,
        stage: Stage,
        command: Command,
        account_id: str | None = None,
        region: str | None = None,
    ) -> StageReport:
        """Run every wave of one stage and return the fleet summary."""
        if is_config_dependent(stage) and self.config is None:
            raise ConfigurationError(f"Stage {stage.value} requires a configuration directory")

        waves = self._resolver.plan(stage, command, account_id, region)
        base = await asyncio.to_thread(self._broker.management_context, self.partition)

        if self.config is not None:
            management_account_id = self.config.accounts.get_management_account_id()
            global_config = self.config.global_config
        else:
            management_account_id = self.settings.management_account_id
            global_config = None
        role_name = self._broker.assume_role_name(global_config, command, stage)

        cap = self.max_concurrent(command)
        self._semaphore = asyncio.Semaphore(cap)
        self._cancelled = False
        logger.info(
            "Running %s for stage %s over %d wave(s), max %d concurrent",
            command.value,
            stage.value,
            len(waves),
            cap,
        )

        report = StageReport(stage=stage.value, command=command)
        halted = False
        for wave in waves:
            if halted:
                report.results.extend(
                    self._finish(
                        TargetResult(t, stage, wave.label),
                        TargetStatus.SKIPPED,
                        "Skipped: earlier wave failed",
                    )
                    for t in wave.targets
                )
                continue
            results = await self._run_wave(wave, stage, command, base, management_account_id, role_name)
            report.results.extend(results)
            halted = any(r.status is TargetStatus.FAILED for r in results)

        logger.info(
            "Stage %s: %d succeeded, %d failed, %d skipped",
            stage.value,
            len(report.succeeded),
            len(report.failed),
            len(report.skipped),
        )
        return report

    async def _run_wave(
        self,
        wave: ExecutionWave,
        stage: Stage,
        command: Command,
        base: CredentialContext,
        management_account_id: str | None,
        role_name: str | None,
    ) -> list[TargetResult]:
        logger.debug("Wave %s: %d target(s)", wave.label, len(wave.targets))
        args = (stage, command, base, management_account_id, role_name, wave.label)

        if wave.sequential:
            results = []
            failed = False
            for target in wave.targets:
                if failed:
                    results.append(
                        self._finish(
                            TargetResult(target, stage, wave.label),
                            TargetStatus.SKIPPED,
                            "Skipped: earlier target failed",
                        )
                    )
                    continue
                result = await self._run_target(target, *args)
                results.append(result)
                failed = result.status is TargetStatus.FAILED
            return results

        coroutines = [self._run_target(target, *args) for target in wave.targets]
        return list(await asyncio.gather(*coroutines))

    async def _run_target(
        self,
        target: Target,
        stage: Stage,
        command: Command,
        base: CredentialContext,
        management_account_id: str | None,
        role_name: str | None,
        wave: str,
    ) -> TargetResult:
        result = TargetResult(target=target, stage=stage, wave=wave)
        self._notify(result)

        # Check if cancelled before acquiring semaphore
        if self._cancelled:
            return self._finish(result, TargetStatus.CANCELLED, "Cancelled")

        async with self._semaphore:
            # Check again after acquiring semaphore
            if self._cancelled:
                return self._finish(result, TargetStatus.CANCELLED, "Cancelled")

            result.status = TargetStatus.RUNNING
            result.started_at = datetime.now()
            self._notify(result)

            try:
                status, stack_names = await asyncio.to_thread(
                    self._execute_target,
                    target,
                    stage,
                    command,
                    base,
                    management_account_id,
                    role_name,
                )
            except Exception as e:
                if isinstance(e, TARGET_ERRORS):
                    logger.error("Stage %s failed for %s: %s", stage.value, target, e)
                    error = str(e)
                else:
                    logger.exception("Unexpected error in stage %s for %s", stage.value, target)
                    error = f"{type(e).__name__}: {e}"
                result.exception = e
                if self.fail_fast:
                    self.cancel()
                return self._finish(result, TargetStatus.FAILED, error)

            result.stack_names = stack_names
            return self._finish(result, status)

    def _execute_target(
        self,
        target: Target,
        stage: Stage,
        command: Command,
        base: CredentialContext,
        management_account_id: str | None,
        role_name: str | None,
    ) -> tuple[TargetStatus, list[str]]:
        """Blocking work for one target; runs in a worker thread."""
        context = self._broker.context_for_target(
            target, stage, management_account_id, role_name, base
        )

        if command is Command.BOOTSTRAP:
            if (
                target.account_id != management_account_id
                and self._inspector is not None
                and not self._inspector.bootstrap_required(target, context)
            ):
                return TargetStatus.SKIPPED, []
            self.invoker.bootstrap(target, context)
            return TargetStatus.SUCCESS, []

        references: dict[str, str] = {}
        if self.preflight_checks:
            resolver = ReferenceResolver(
                context,
                current_account_id=target.account_id,
                region=target.region,
                partition=self.partition,
                prefix=self.settings.accelerator_prefix,
                ssm_prefix=self.settings.ssm_prefix,
                client_factory=self._client_factory,
                sharing=self.sharing,
            )
            for check in self.preflight_checks:
                resolved = check(stage, target, resolver)
                if resolved:
                    references.update(resolved)

        stack_names = list(target.stack_names) or stack_names_for(
            stage,
            target.account_id,
            target.region,
            self.settings.accelerator_prefix,
            self.settings.accelerator_qualifier,
        )
        invocations = [
            self.invoker.build_invocation(
                name,
                stage,
                target,
                require_approval=self.require_approval,
                app_path=self.app_path,
                references=references,
            )
            for name in stack_names
        ]
        self.invoker.invoke_all(command, invocations, context)
        return TargetStatus.SUCCESS, stack_names

    def _finish(self, result: TargetResult, status: TargetStatus, error: str | None = None) -> TargetResult:
        result.status = status
        result.error = error
        result.completed_at = datetime.now()
        self._notify(result)
        return result

    def _notify(self, result: TargetResult) -> None:
        if self._on_status_change is not None:
            self._on_status_change(result)
