"""Subprocess execution for the external deployer (cdk)."""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .console import print_error

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """External command execution error."""

    pass


@dataclass
class CommandResult:
    """Result of a subprocess command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def check_command_exists(cmd: str) -> bool:
    """Check if a command is available in PATH."""
    return shutil.which(cmd) is not None


def check_required_commands() -> None:
    """Check that the cdk CLI is available."""
    if not check_command_exists("cdk"):
        print_error("AWS CDK CLI not found.")
        print_error("")
        print_error("   Install it globally with:")
        print_error("")
        print_error("      npm install -g aws-cdk")
        print_error("")
        print_error("   or set ACCELERATOR_SKIP_PREREQUISITES=true to skip this check.")
        print_error("")
        raise CommandError("cdk not found")


def run_command(
    cmd: list[str],
    env: dict[str, str] | None = None,
    cwd: Path | None = None,
    capture_output: bool = True,
) -> CommandResult:
    """Run a subprocess command."""
    full_env = {**os.environ, **(env or {})}

    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            env=full_env,
            cwd=cwd,
            capture_output=capture_output,
            text=True,
        )
    except FileNotFoundError as e:
        raise CommandError(f"{cmd[0]} not found") from e

    return CommandResult(
        returncode=result.returncode,
        stdout=result.stdout if capture_output else "",
        stderr=result.stderr if capture_output else "",
    )


def context_args(context: dict[str, str]) -> list[str]:
    args = []
    for key, value in context.items():
        args.extend(["--context", f"{key}={value}"])
    return args


def build_cdk_bootstrap(
    environment: str,
    qualifier: str,
    toolkit_stack_name: str,
    execution_policy_arn: str,
    trusted_account_id: str | None = None,
    template: str | None = None,
    permissions_boundary: str | None = None,
    bucket_name: str | None = None,
    kms_key_id: str | None = None,
) -> list[str]:
    """
    Bootstrap the deployment toolkit in one aws://account/region environment.

    Parameters left unset keep the values of an existing toolkit stack.
    """
    cmd = [
        "cdk",
        "bootstrap",
        environment,
        "--qualifier",
        qualifier,
        "--toolkit-stack-name",
        toolkit_stack_name,
        "--cloudformation-execution-policies",
        execution_policy_arn,
        "--termination-protection",
    ]
    if trusted_account_id:
        cmd.extend(["--trust", trusted_account_id])
    if template:
        cmd.extend(["--template", template])
    if permissions_boundary:
        cmd.extend(["--custom-permissions-boundary", permissions_boundary])
    if bucket_name:
        cmd.extend(["--toolkit-bucket-name", bucket_name])
    if kms_key_id:
        cmd.extend(["--bootstrap-kms-key-id", kms_key_id])
    return cmd


def build_cdk_deploy(
    stack: str,
    app: str,
    context: dict[str, str],
    require_approval: str = "never",
    role_arn: str | None = None,
    change_set_name: str | None = None,
    tags: dict[str, str] | None = None,
) -> list[str]:
    """Deploy one stack from a synthesized cloud assembly."""
    cmd = ["cdk", "deploy", stack, "--app", app, "--require-approval", require_approval]
    if change_set_name:
        cmd.extend(["--method", "change-set", "--change-set-name", change_set_name])
    else:
        cmd.extend(["--method", "direct"])
    if role_arn:
        cmd.extend(["--role-arn", role_arn])
    for key, value in (tags or {}).items():
        cmd.extend(["--tags", f"{key}={value}"])
    cmd.extend(context_args(context))
    return cmd


def build_cdk_diff(stack: str, app: str, context: dict[str, str]) -> list[str]:
    return ["cdk", "diff", stack, "--app", app, *context_args(context)]


def build_cdk_synth(
    stack: str | None,
    app: str,
    context: dict[str, str],
    output: str | None = None,
) -> list[str]:
    """Synthesize one stack, or the whole app when stack is None."""
    cmd = ["cdk", "synth"]
    if stack:
        cmd.append(stack)
    cmd.extend(["--app", app, "--quiet"])
    if output:
        cmd.extend(["--output", output])
    cmd.extend(context_args(context))
    return cmd
