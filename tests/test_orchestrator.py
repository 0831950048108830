"""Tests for stage execution across the fleet."""

import asyncio
import logging
import threading
import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, NoCredentialsError

from conftest import (
    AUDIT_ID,
    LOG_ARCHIVE_ID,
    MANAGEMENT_ID,
    WORKLOAD_ID,
    build_config,
    paginated,
    sts_credentials,
)
from lz_orchestrator.errors import ConfigurationError, StageExecutionError
from lz_orchestrator.landing_zone import ShareTargets, TransitGatewayConfig
from lz_orchestrator.lib.commands import CommandResult
from lz_orchestrator.models import TargetStatus
from lz_orchestrator.orchestrator import StageOrchestrator
from lz_orchestrator.sharing import SharedTransitGatewayPreflight
from lz_orchestrator.stages import DIFF_STAGES, Command, Stage
from lz_orchestrator.toolkit import ToolchainInvoker


class FleetRunner:
    """Fake cdk runner that tracks how many calls are in flight at once."""

    def __init__(self, failing: tuple[str, ...] = (), delay: float = 0.0):
        self.failing = failing
        self.delay = delay
        self.commands: list[list[str]] = []
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, cmd, env=None, cwd=None):
        with self._lock:
            self.commands.append(cmd)
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if cmd[1] == "deploy" and any(marker in cmd[2] for marker in self.failing):
                return CommandResult(1, "", "resource creation failed")
            return CommandResult(0, "", "")
        finally:
            with self._lock:
                self.in_flight -= 1

    def stacks(self, verb: str = "deploy") -> list[str]:
        return [cmd[2] for cmd in self.commands if cmd[1] == verb]


def make_orchestrator(config, settings, fake_clients, runner, **kwargs) -> StageOrchestrator:
    invoker = ToolchainInvoker(
        "config",
        global_config=config.global_config if config else None,
        management_account_id=MANAGEMENT_ID,
        runner=runner,
    )
    return StageOrchestrator(settings, config, invoker, client_factory=fake_clients, **kwargs)


def statuses(report) -> dict[tuple[str, str], TargetStatus]:
    return {(r.target.account_id, r.target.region): r.status for r in report.results}


class TestSequentialStages:
    def test_organizations_deploys_region_by_region(self, settings, fake_clients):
        config = build_config(regions=["us-east-1", "us-west-2", "eu-west-1"])
        runner = FleetRunner()

        reports = asyncio.run(
            make_orchestrator(config, settings, fake_clients, runner).run("deploy", "organizations")
        )

        assert runner.stacks() == [
            f"AWSAccelerator-OrganizationsStack-{MANAGEMENT_ID}-us-east-1",
            f"AWSAccelerator-OrganizationsStack-{MANAGEMENT_ID}-us-west-2",
            f"AWSAccelerator-OrganizationsStack-{MANAGEMENT_ID}-eu-west-1",
        ]
        assert reports[0].success

    def test_failure_skips_remaining_regions(self, settings, fake_clients):
        config = build_config(regions=["us-east-1", "us-west-2", "eu-west-1"])
        runner = FleetRunner(failing=("us-west-2",))

        with pytest.raises(StageExecutionError) as exc_info:
            asyncio.run(make_orchestrator(config, settings, fake_clients, runner).run("deploy", "organizations"))

        result = statuses(exc_info.value.report)
        assert result[(MANAGEMENT_ID, "us-east-1")] is TargetStatus.SUCCESS
        assert result[(MANAGEMENT_ID, "us-west-2")] is TargetStatus.FAILED
        assert result[(MANAGEMENT_ID, "eu-west-1")] is TargetStatus.SKIPPED
        assert len(runner.stacks()) == 2


class TestFanOut:
    def test_concurrency_never_exceeds_cap(self, settings, fake_clients):
        config = build_config(workload_names=[f"Workload{i}" for i in range(1, 6)])
        runner = FleetRunner(delay=0.05)

        reports = asyncio.run(
            make_orchestrator(config, settings, fake_clients, runner, max_concurrent=3).run("deploy", "security")
        )

        assert len(reports[0].succeeded) == 16
        assert 1 < runner.peak <= 3

    def test_missing_reference_fails_only_its_target(self, settings, fake_clients):
        config = build_config(regions=["us-east-1"], workload_names=["Workload1", "Workload2"])

        def get_parameter(Name):
            if Name.endswith(WORKLOAD_ID):
                raise ClientError(
                    {"Error": {"Code": "ParameterNotFound", "Message": "missing"}}, "GetParameter"
                )
            return {"Parameter": {"Value": "vpc-0123"}}

        fake_clients.client("ssm").get_parameter.side_effect = get_parameter

        def require_vpc(stage, target, resolver):
            resolver.resolve(
                "vpc_Main", target.account_id, target.account_id, f"/accelerator/network/{target.account_id}"
            )

        runner = FleetRunner()
        orchestrator = make_orchestrator(
            config, settings, fake_clients, runner, preflight_checks=[require_vpc]
        )

        with pytest.raises(StageExecutionError) as exc_info:
            asyncio.run(orchestrator.run("deploy", "security"))

        report = exc_info.value.report
        (failure,) = report.failed
        assert failure.target.account_id == WORKLOAD_ID
        assert f"account {WORKLOAD_ID} region us-east-1" in failure.error
        assert len(report.succeeded) == 4
        assert not any(WORKLOAD_ID in stack for stack in runner.stacks())

    def test_failure_skips_later_waves(self, settings, fake_clients):
        config = build_config()
        runner = FleetRunner(failing=(f"{MANAGEMENT_ID}-us-east-1",))

        with pytest.raises(StageExecutionError) as exc_info:
            asyncio.run(make_orchestrator(config, settings, fake_clients, runner).run("deploy", "security"))

        report = exc_info.value.report
        result = statuses(report)
        assert result[(MANAGEMENT_ID, "us-east-1")] is TargetStatus.FAILED
        # the sibling in the same wave is isolated from the failure
        assert result[(MANAGEMENT_ID, "us-west-2")] is TargetStatus.SUCCESS
        accounts = [r for r in report.results if r.wave == "accounts"]
        assert len(accounts) == 6
        assert all(r.status is TargetStatus.SKIPPED for r in accounts)
        assert "Stage security failed for 1 target(s)" in str(exc_info.value)

    def test_fail_fast_cancels_queued_targets(self, settings, fake_clients):
        config = build_config()
        runner = FleetRunner(failing=(LOG_ARCHIVE_ID,))
        orchestrator = make_orchestrator(
            config, settings, fake_clients, runner, max_concurrent=1, fail_fast=True
        )

        with pytest.raises(StageExecutionError) as exc_info:
            asyncio.run(orchestrator.run("deploy", "security"))

        accounts = [r for r in exc_info.value.report.results if r.wave == "accounts"]
        assert [r.status for r in accounts] == [TargetStatus.FAILED] + [TargetStatus.CANCELLED] * 5
        assert accounts[1].error == "Cancelled"

    def test_status_callback(self, settings, fake_clients):
        config = build_config(regions=["us-east-1"], workload_names=[])
        seen = []
        orchestrator = make_orchestrator(
            config,
            settings,
            fake_clients,
            FleetRunner(),
            on_status_change=lambda result: seen.append((result.target.account_id, result.status)),
        )

        asyncio.run(orchestrator.run("deploy", "security"))

        assert seen[:3] == [
            (MANAGEMENT_ID, TargetStatus.PENDING),
            (MANAGEMENT_ID, TargetStatus.RUNNING),
            (MANAGEMENT_ID, TargetStatus.SUCCESS),
        ]


class TestCredentials:
    def test_assume_role_failure_invokes_nothing_for_the_account(self, settings, fake_clients):
        fake_clients.client("sts").assume_role.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "not authorized"}}, "AssumeRole"
        )
        config = build_config(regions=["us-east-1"])
        runner = FleetRunner()

        with pytest.raises(StageExecutionError) as exc_info:
            asyncio.run(make_orchestrator(config, settings, fake_clients, runner).run("deploy", "security"))

        failed = {r.target.account_id for r in exc_info.value.report.failed}
        assert failed == {LOG_ARCHIVE_ID, AUDIT_ID, WORKLOAD_ID}
        assert runner.stacks() == [f"AWSAccelerator-SecurityStack-{MANAGEMENT_ID}-us-east-1"]

    def test_workload_targets_use_assumed_credentials(self, settings, fake_clients):
        config = build_config(regions=["us-east-1"], workload_names=[])

        asyncio.run(make_orchestrator(config, settings, fake_clients, FleetRunner()).run("deploy", "security"))

        arns = {call.kwargs["RoleArn"] for call in fake_clients.client("sts").assume_role.call_args_list}
        assert arns == {
            f"arn:aws:iam::{LOG_ARCHIVE_ID}:role/AWSControlTowerExecution",
            f"arn:aws:iam::{AUDIT_ID}:role/AWSControlTowerExecution",
        }


class TestCommands:
    def test_diff_without_stage_runs_every_diff_stage(self, settings, fake_clients):
        config = build_config(regions=["us-east-1"], workload_names=[])
        runner = FleetRunner()

        reports = asyncio.run(make_orchestrator(config, settings, fake_clients, runner).run("diff"))

        assert [r.stage for r in reports] == [stage.value for stage in DIFF_STAGES]
        assert runner.stacks("deploy") == []
        assert runner.stacks("diff")

    def test_bootstrap_skips_targets_that_are_current(self, settings, fake_clients):
        config = build_config(regions=["us-east-1"])
        inspector = MagicMock()
        inspector.bootstrap_required.side_effect = lambda target, context: target.account_id == WORKLOAD_ID
        runner = FleetRunner()

        (report,) = asyncio.run(
            make_orchestrator(config, settings, fake_clients, runner, inspector=inspector).run("bootstrap")
        )

        assert report.stage == "bootstrap"
        result = statuses(report)
        assert result[(LOG_ARCHIVE_ID, "us-east-1")] is TargetStatus.SKIPPED
        assert result[(AUDIT_ID, "us-east-1")] is TargetStatus.SKIPPED
        assert [cmd[2] for cmd in runner.commands] == [
            f"aws://{MANAGEMENT_ID}/us-east-1",
            f"aws://{WORKLOAD_ID}/us-east-1",
        ]

    def test_synth_without_stage_synthesizes_the_app(self, settings, fake_clients):
        runner = FleetRunner()

        assert asyncio.run(make_orchestrator(build_config(), settings, fake_clients, runner).run("synth")) == []
        assert runner.commands[0][:2] == ["cdk", "synth"]

    def test_synth_target_without_stage(self, settings, fake_clients):
        orchestrator = make_orchestrator(build_config(), settings, fake_clients, FleetRunner())

        with pytest.raises(ConfigurationError, match="requires a stage"):
            asyncio.run(orchestrator.run("synth", account_id=WORKLOAD_ID, region="us-east-1"))

    def test_deploy_requires_stage(self, settings, fake_clients):
        orchestrator = make_orchestrator(build_config(), settings, fake_clients, FleetRunner())

        with pytest.raises(ConfigurationError, match="A stage is required"):
            asyncio.run(orchestrator.run("deploy"))

    def test_single_stack_mode(self, settings, fake_clients):
        runner = FleetRunner()
        orchestrator = make_orchestrator(build_config(), settings, fake_clients, runner)

        asyncio.run(orchestrator.run(Command.DEPLOY, Stage.OPERATIONS, WORKLOAD_ID, "us-west-2"))

        assert runner.stacks() == [f"AWSAccelerator-OperationsStack-{WORKLOAD_ID}-us-west-2"]

    def test_installer_stage_without_config(self, settings, fake_clients):
        runner = FleetRunner()
        orchestrator = make_orchestrator(None, settings, fake_clients, runner)

        asyncio.run(orchestrator.run("deploy", "pipeline", WORKLOAD_ID, "us-east-1"))

        assert runner.stacks() == [f"AWSAccelerator-PipelineStack-{WORKLOAD_ID}-us-east-1"]

    def test_config_stage_without_config(self, settings, fake_clients):
        orchestrator = make_orchestrator(None, settings, fake_clients, FleetRunner())

        with pytest.raises(ConfigurationError, match="requires a configuration directory"):
            asyncio.run(orchestrator.run("deploy", "security"))


class TestMaxConcurrent:
    def test_precedence(self, settings, fake_clients):
        config = build_config(max_concurrent_stacks=7)

        orchestrator = make_orchestrator(config, settings, fake_clients, FleetRunner())
        assert orchestrator.max_concurrent(Command.DEPLOY) == 7
        assert orchestrator.max_concurrent(Command.DIFF) == settings.max_concurrent_stacks

        explicit = make_orchestrator(config, settings, fake_clients, FleetRunner(), max_concurrent=2)
        assert explicit.max_concurrent(Command.DEPLOY) == 2


class TestUnexpectedErrors:
    def test_missing_credentials_fail_only_their_target(self, settings, fake_clients):
        config = build_config(regions=["us-east-1"])

        def assume_role(RoleArn, RoleSessionName):
            if WORKLOAD_ID in RoleArn:
                raise NoCredentialsError()
            return sts_credentials()

        fake_clients.client("sts").assume_role.side_effect = assume_role
        runner = FleetRunner()

        with pytest.raises(StageExecutionError) as exc_info:
            asyncio.run(make_orchestrator(config, settings, fake_clients, runner).run("deploy", "security"))

        report = exc_info.value.report
        (failure,) = report.failed
        assert failure.target.account_id == WORKLOAD_ID
        assert "Unable to locate credentials" in failure.error
        assert len(report.succeeded) == 3
        assert f"{WORKLOAD_ID}/us-east-1" in str(exc_info.value)

    def test_unexpected_error_is_recorded_against_its_target(self, settings, fake_clients, caplog):
        config = build_config(regions=["us-east-1"])

        def broken_check(stage, target, resolver):
            if target.account_id == AUDIT_ID:
                raise KeyError("vpcId")

        orchestrator = make_orchestrator(
            config, settings, fake_clients, FleetRunner(), preflight_checks=[broken_check]
        )

        with caplog.at_level(logging.ERROR):
            with pytest.raises(StageExecutionError) as exc_info:
                asyncio.run(orchestrator.run("deploy", "security"))

        (failure,) = exc_info.value.report.failed
        assert failure.target.account_id == AUDIT_ID
        assert failure.error == "KeyError: 'vpcId'"
        assert isinstance(failure.exception, KeyError)
        assert f"Unexpected error in stage security for {AUDIT_ID}/us-east-1" in caplog.text


class TestPreflightReferences:
    def test_shared_transit_gateway_id_reaches_consumer_stacks(self, settings, fake_clients):
        config = build_config(regions=["us-east-1"])
        config.network.transit_gateways = [
            TransitGatewayConfig(
                "Main",
                "Management",
                "us-east-1",
                share_targets=ShareTargets(organizational_units=["Workloads"]),
            )
        ]
        paginated(
            fake_clients.client("ram"),
            get_resource_shares=[
                {"resourceShares": [{"resourceShareArn": "arn:share", "owningAccountId": MANAGEMENT_ID}]}
            ],
            list_resources=[
                {"resources": [{"arn": "arn:aws:ec2:us-east-1:111111111111:transit-gateway/tgw-0abc"}]}
            ],
        )
        runner = FleetRunner()
        orchestrator = make_orchestrator(config, settings, fake_clients, runner)
        orchestrator.preflight_checks = [SharedTransitGatewayPreflight(config, orchestrator.sharing)]

        asyncio.run(orchestrator.run("deploy", "network-vpc"))

        deploys = {cmd[2]: cmd for cmd in runner.commands if cmd[1] == "deploy"}
        consumer = [cmd for stack, cmd in deploys.items() if WORKLOAD_ID in stack]
        assert consumer
        assert all("transitGateway_Main=tgw-0abc" in cmd for cmd in consumer)
        owner = [cmd for stack, cmd in deploys.items() if MANAGEMENT_ID in stack]
        assert owner
        assert not any("transitGateway_Main=tgw-0abc" in cmd for cmd in owner)
