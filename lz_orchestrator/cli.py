"""Run landing zone stages across accounts and regions."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from .credentials import CredentialBroker
from .errors import OrchestratorError, StageExecutionError
from .landing_zone import LandingZoneConfig
from .lib.aws import get_client
from .lib.commands import CommandError, check_required_commands
from .lib.config import OrchestratorSettings, get_settings
from .lib.console import (
    configure_logging,
    console,
    print_config,
    print_error,
    print_final_success,
    print_header,
    print_stage_report,
    print_step,
    print_success,
    print_warning,
)
from .lib.yaml_parser import load_landing_zone_config
from .models import TargetResult, TargetStatus
from .orchestrator import StageOrchestrator
from .routes import TransitGatewayRoutePreflight
from .sharing import ResourceSharingCoordinator, SharedTransitGatewayPreflight
from .stages import Command, Stage, get_global_region, is_config_dependent
from .toolkit import DEFAULT_APP, ToolchainInvoker

app = typer.Typer(help="Deploy landing zone stages across AWS accounts and regions")


def report_status(result: TargetResult) -> None:
    """Print one line per finished target."""
    label = f"{result.target} ({result.wave})"
    if result.status is TargetStatus.SUCCESS:
        print_success(f"{label} {result.duration_display}")
    elif result.status is TargetStatus.FAILED:
        print_error(f"{label}: {result.error}")
    elif result.status in (TargetStatus.SKIPPED, TargetStatus.CANCELLED):
        print_warning(f"{label}: {result.status.value}")


def load_config(
    config_dir: Path,
    settings: OrchestratorSettings,
    broker: CredentialBroker,
    partition: str,
) -> LandingZoneConfig:
    """Parse the configuration directory and fill in ids from AWS Organizations."""
    config = load_landing_zone_config(config_dir)
    accounts = config.accounts
    missing_accounts = any(a.email.lower() not in accounts.account_ids for a in accounts.all_accounts)
    missing_units = config.organization.enable and not config.organization.organizational_unit_ids

    if missing_accounts or missing_units:
        organizations = None
        if config.organization.enable and not settings.enable_single_account_mode:
            organizations = get_client(
                broker.management_context(partition), "organizations", get_global_region(partition)
            )
        accounts.load_account_ids(
            organizations,
            single_account_mode=settings.enable_single_account_mode,
            organizations_enabled=config.organization.enable,
        )
        if missing_units and organizations is not None:
            config.organization.load_organizational_unit_ids(organizations)
    return config


@app.command()
def run(
    command: Annotated[
        str,
        typer.Option("--command", "-c", help="bootstrap, deploy, diff or synth"),
    ] = "deploy",
    stage: Annotated[
        str | None,
        typer.Option("--stage", "-s", help="Stage to run, e.g. network-vpc"),
    ] = None,
    account: Annotated[
        str | None,
        typer.Option("--account", help="Single target account id (requires --region)"),
    ] = None,
    region: Annotated[
        str | None,
        typer.Option("--region", help="Single target region, or narrow fleet stages to one region"),
    ] = None,
    partition: Annotated[
        str,
        typer.Option("--partition", help="AWS partition"),
    ] = "aws",
    config_dir: Annotated[
        Path,
        typer.Option("--config-dir", help="Directory holding the *-config.yaml files"),
    ] = Path("config"),
    require_approval: Annotated[
        str,
        typer.Option("--require-approval", help="cdk approval policy: never, any-change or broadening"),
    ] = "never",
    app_command: Annotated[
        str,
        typer.Option("--app", help="cdk app command, or assembly path for tester-pipeline"),
    ] = DEFAULT_APP,
    use_existing_roles: Annotated[
        bool,
        typer.Option("--use-existing-roles", help="Use pre-existing IAM roles"),
    ] = False,
    bootstrap_bucket_name: Annotated[
        str | None,
        typer.Option("--bootstrap-bucket-name", help="Toolkit bucket name passed to cdk bootstrap"),
    ] = None,
    bootstrap_kms_key_id: Annotated[
        str | None,
        typer.Option("--bootstrap-kms-key-id", help="KMS key id for the toolkit bucket"),
    ] = None,
    fail_fast: Annotated[
        bool,
        typer.Option("--fail-fast", help="Cancel queued targets after the first failure"),
    ] = False,
    max_concurrent: Annotated[
        int | None,
        typer.Option("--max-concurrent", min=1, help="Maximum targets in flight per wave"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """
    Run a deployer command for a stage over every target it resolves to.

    Waves run in order. Targets within a fan-out wave run concurrently,
    up to the configured maximum.
    """
    configure_logging(verbose)
    try:
        settings = get_settings()
        if not settings.skip_prerequisites:
            check_required_commands()

        parsed_command = Command.parse(command)
        parsed_stage = Stage.parse(stage) if stage else None

        print_header("Landing Zone Orchestration")
        print_config(
            command=parsed_command.value,
            stage=parsed_stage.value if parsed_stage else None,
            partition=partition,
            config_dir=str(config_dir),
            account=account,
            region=region,
            max_concurrent=max_concurrent,
            profile=settings.aws_profile,
        )

        broker = CredentialBroker(settings)
        config = None
        if parsed_stage is None or is_config_dependent(parsed_stage):
            print_step("1/2", "Loading configuration...")
            config = load_config(config_dir, settings, broker, partition)
            print_success(f"Loaded {len(config.accounts.all_accounts)} accounts from {config_dir}")

        invoker = ToolchainInvoker(
            config_dir=str(config_dir),
            partition=partition,
            prefix=settings.accelerator_prefix,
            global_config=config.global_config if config else None,
            management_account_id=(
                config.accounts.get_management_account_id() if config else settings.management_account_id
            ),
            app=app_command,
            use_existing_roles=use_existing_roles,
            permission_boundary=settings.permission_boundary,
            bootstrap_bucket_name=bootstrap_bucket_name,
            bootstrap_kms_key_id=bootstrap_kms_key_id,
        )
        sharing = None
        preflight_checks = None
        if config is not None:
            sharing = ResourceSharingCoordinator(config, partition)
            preflight_checks = [
                TransitGatewayRoutePreflight(config),
                SharedTransitGatewayPreflight(config, sharing),
            ]
        orchestrator = StageOrchestrator(
            settings,
            config,
            invoker,
            broker=broker,
            partition=partition,
            max_concurrent=max_concurrent,
            fail_fast=fail_fast,
            require_approval=require_approval,
            app_path=app_command if parsed_stage is Stage.TESTER_PIPELINE else None,
            preflight_checks=preflight_checks,
            sharing=sharing,
            on_status_change=report_status,
        )

        print_step("2/2", f"Running {parsed_command.value}...")
        reports = asyncio.run(orchestrator.run(parsed_command, parsed_stage, account, region))
        for report in reports:
            print_stage_report(report)

        print_final_success()

    except StageExecutionError as e:
        print_stage_report(e.report)
        print_error(str(e).splitlines()[0])
        raise typer.Exit(1)
    except OrchestratorError as e:
        print_error(str(e))
        raise typer.Exit(1)
    except CommandError:
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Orchestration cancelled.[/yellow]")
        raise typer.Exit(130)


def main() -> None:
    """Entry point for the orchestrator CLI."""
    app()


if __name__ == "__main__":
    main()
