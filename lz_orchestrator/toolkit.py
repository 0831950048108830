"""
Deployer invocation for bootstrap, deploy, diff and synth.

The deployer is the cdk CLI. Each call runs as a subprocess whose
environment carries only the credentials of the target it acts on.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from .errors import CredentialError, DeploymentError
from .landing_zone import GlobalConfig
from .lib.aws import bucket_exists, get_client, get_ssm_parameter, role_exists
from .lib.commands import (
    CommandResult,
    build_cdk_bootstrap,
    build_cdk_deploy,
    build_cdk_diff,
    build_cdk_synth,
    run_command,
)
from .lib.config import DEFAULT_PREFIX
from .models import CredentialContext, StackInvocation, Target
from .stages import Command, Stage, stack_base_name

logger = logging.getLogger(__name__)

BOOTSTRAP_QUALIFIER = "accel"
BOOTSTRAP_VERSION_PARAMETER = "/cdk-bootstrap/accel/version"
MIN_BOOTSTRAP_VERSION = 21
DEFAULT_APP = "npx ts-node --prefer-ts-exts bin/app.ts"
ASSEMBLY_ROOT = "cdk.out"

EXPIRED_TOKEN_MARKERS = ("ExpiredToken", "ExpiredTokenException")

# Stages whose stacks are synthesized into another stage's assembly
SHARED_ASSEMBLIES = {
    Stage.NETWORK_VPC: Stage.NETWORK_VPC_DNS,
    Stage.NETWORK_VPC_ENDPOINTS: Stage.NETWORK_VPC_DNS,
    Stage.NETWORK_ASSOCIATIONS_GWLB: Stage.NETWORK_ASSOCIATIONS,
    Stage.CUSTOMIZATIONS: Stage.CUSTOMIZATIONS,
}


def toolkit_stack_name(prefix: str) -> str:
    return f"{prefix}-CDKToolkit"


def deployment_role_name(
    stage: Stage | None,
    account_id: str,
    management_account_id: str | None,
    global_config: GlobalConfig | None,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    if stage in (Stage.ACCOUNTS, Stage.PREPARE) and account_id == management_account_id:
        return f"{prefix}-Management-Deployment-Role"
    if global_config and global_config.cdk_options.custom_deployment_role:
        return global_config.cdk_options.custom_deployment_role
    return f"{prefix}-Deployment-Role"


def change_set_name(stack_name: str, deployment_method: str | None) -> str | None:
    """Change-set name for the change-set method; None means direct deployment."""
    if deployment_method == "change-set":
        return f"{stack_name}-change-set"
    return None


def assembly_directory(
    stage: Stage | None,
    stack_name: str,
    target: Target,
    prefix: str = DEFAULT_PREFIX,
    app_path: str | None = None,
) -> str:
    """Cloud assembly directory a stack is synthesized to and deployed from."""
    if stage is Stage.TESTER_PIPELINE:
        if not app_path:
            raise DeploymentError(
                f"App path for {stack_name} is undefined",
                stack_name=stack_name,
                account_id=target.account_id,
                region=target.region,
            )
        return app_path
    if stage in SHARED_ASSEMBLIES:
        base = stack_base_name(SHARED_ASSEMBLIES[stage], prefix)
        return f"{ASSEMBLY_ROOT}/{base}-{target.account_id}-{target.region}"
    return f"{ASSEMBLY_ROOT}/{stack_name}"


@dataclass
class _Assembly:
    ready: threading.Event = field(default_factory=threading.Event)
    error: BaseException | None = None


def _has_expired_token(result: CommandResult) -> bool:
    return any(marker in result.output for marker in EXPIRED_TOKEN_MARKERS)


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class BootstrapInspector:
    """Decides whether a workload target needs (re-)bootstrapping."""

    def __init__(self, global_config: GlobalConfig, client_factory=get_client):
        self.global_config = global_config
        self._client_factory = client_factory

    def bootstrap_required(self, target: Target, context: CredentialContext) -> bool:
        cdk_options = self.global_config.cdk_options
        if cdk_options.force_bootstrap:
            return True

        centralized = self.global_config.centralize_cdk_buckets or cdk_options.centralize_buckets
        if not centralized:
            s3 = self._client_factory(context, "s3", target.region)
            bucket = f"cdk-accel-assets-{target.account_id}-{target.region}"
            if not bucket_exists(s3, bucket):
                logger.info("CDK asset bucket not found for %s, bootstrapping", target)
                return True

        role_name = cdk_options.custom_deployment_role
        if role_name and target.region == self.global_config.home_region:
            iam = self._client_factory(context, "iam", target.region)
            if not role_exists(iam, role_name):
                logger.info("Custom deployment role %s missing in %s, bootstrapping", role_name, target)
                return True

        ssm = self._client_factory(context, "ssm", target.region)
        version = get_ssm_parameter(ssm, BOOTSTRAP_VERSION_PARAMETER)
        if version and version.strip().isdigit() and int(version) >= MIN_BOOTSTRAP_VERSION:
            logger.info("Skipping bootstrap for %s (version %s)", target, version)
            return False
        return True


class ToolchainInvoker:
    """Runs the cdk CLI for one target at a time."""

    def __init__(
        self,
        config_dir: str,
        partition: str = "aws",
        prefix: str = DEFAULT_PREFIX,
        global_config: GlobalConfig | None = None,
        management_account_id: str | None = None,
        app: str = DEFAULT_APP,
        cwd: Path | None = None,
        use_existing_roles: bool = False,
        permission_boundary: str | None = None,
        bootstrap_bucket_name: str | None = None,
        bootstrap_kms_key_id: str | None = None,
        max_parallel_stacks: int = 4,
        runner=run_command,
    ):
        self.config_dir = config_dir
        self.partition = partition
        self.prefix = prefix
        self.global_config = global_config
        self.management_account_id = management_account_id
        self.app = app
        self.cwd = cwd
        self.use_existing_roles = use_existing_roles
        self.permission_boundary = permission_boundary
        self.bootstrap_bucket_name = bootstrap_bucket_name
        self.bootstrap_kms_key_id = bootstrap_kms_key_id
        self.max_parallel_stacks = max_parallel_stacks
        self._run = runner
        self._assemblies: dict[str, _Assembly] = {}
        self._lock = threading.Lock()

    def app_context(
        self,
        stage: Stage | None,
        target: Target | None = None,
        references: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Context values the app reads to select what it synthesizes."""
        context = {"config-dir": self.config_dir, "partition": self.partition}
        if stage is not None:
            context["stage"] = stage.value
        if target is not None:
            context["account"] = target.account_id
            context["region"] = target.region
        context["use-existing-roles"] = "true" if self.use_existing_roles else "false"
        if self.permission_boundary:
            context["permission-boundary"] = self.permission_boundary
        if references:
            context.update(references)
        return context

    def build_invocation(
        self,
        stack_name: str,
        stage: Stage | None,
        target: Target,
        require_approval: str = "never",
        app_path: str | None = None,
        references: dict[str, str] | None = None,
    ) -> StackInvocation:
        """Resolve role, change set and tags for one stack at one target."""
        role_arn = None
        method = None
        tags = {}
        if self.global_config is not None:
            role = deployment_role_name(
                stage, target.account_id, self.management_account_id, self.global_config, self.prefix
            )
            role_arn = f"arn:{self.partition}:iam::{target.account_id}:role/{role}"
            method = self.global_config.cdk_options.deployment_method
            tags = dict(self.global_config.tags)
        return StackInvocation(
            stack_name=stack_name,
            stage=stage,
            target=target,
            config_dir=self.config_dir,
            require_approval=require_approval,
            tags=tags,
            role_arn=role_arn,
            change_set_name=change_set_name(stack_name, method),
            app_path=app_path,
            references=dict(references or {}),
        )

    def invoke(self, command: Command, invocation: StackInvocation, context: CredentialContext) -> None:
        if command is Command.BOOTSTRAP:
            self.bootstrap(invocation.target, context)
        elif command is Command.DEPLOY:
            self.deploy(invocation, context)
        elif command is Command.DIFF:
            self.diff(invocation, context)
        else:
            self.synth(invocation, context)

    def invoke_all(
        self,
        command: Command,
        invocations: list[StackInvocation],
        context: CredentialContext,
    ) -> None:
        """
        Run every stack of one target.

        Deploys of several stacks run concurrently; the first failure is
        raised after the others have finished.
        """
        if command is not Command.DEPLOY or len(invocations) < 2:
            for invocation in invocations:
                self.invoke(command, invocation, context)
            return

        errors = []
        workers = min(self.max_parallel_stacks, len(invocations))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {
                executor.submit(self.deploy, invocation, context): invocation.stack_name
                for invocation in invocations
            }
            for future in as_completed(future_map):
                try:
                    future.result()
                except (DeploymentError, CredentialError) as e:
                    errors.append(e)
        if errors:
            raise errors[0]

    def bootstrap(self, target: Target, context: CredentialContext) -> None:
        """
        Bootstrap the deployment toolkit at one target.

        Raises:
            CredentialError: The target's credentials expired.
            DeploymentError: Any other bootstrap failure.
        """
        template = None
        if self.global_config is not None and self.global_config.uses_custom_bootstrap_template:
            name = f"{stack_base_name(Stage.BOOTSTRAP, self.prefix)}-{target.account_id}-{target.region}"
            template = f"./{ASSEMBLY_ROOT}/{name}/{name}.template.json"

        trusted = target.trusted_account_id
        cmd = build_cdk_bootstrap(
            target.environment,
            qualifier=BOOTSTRAP_QUALIFIER,
            toolkit_stack_name=toolkit_stack_name(self.prefix),
            execution_policy_arn=f"arn:{self.partition}:iam::aws:policy/AdministratorAccess",
            trusted_account_id=trusted if trusted and trusted != target.account_id else None,
            template=template,
            permissions_boundary=self.permission_boundary,
            bucket_name=self.bootstrap_bucket_name,
            kms_key_id=self.bootstrap_kms_key_id,
        )
        logger.info("Executing cdk bootstrap for %s", target.environment)
        result = self._run(cmd, env=self._environment(context, template), cwd=self.cwd)
        if result.success:
            return
        if _has_expired_token(result):
            raise CredentialError(
                f"Credentials expired for account {target.account_id} in region {target.region} "
                f"running command {Command.BOOTSTRAP.value}"
            )
        logger.error("Bootstrap failed for %s:\n%s", target, _tail(result.output))
        raise DeploymentError(
            f"Bootstrap for account {target.account_id} in region {target.region} failed.",
            account_id=target.account_id,
            region=target.region,
        )

    def deploy(self, invocation: StackInvocation, context: CredentialContext) -> None:
        target = invocation.target
        app = assembly_directory(
            invocation.stage, invocation.stack_name, target, self.prefix, invocation.app_path
        )
        if invocation.stage is not Stage.TESTER_PIPELINE:
            self._synthesize_once(invocation, app, context)

        cmd = build_cdk_deploy(
            invocation.stack_name,
            app=app,
            context=self.app_context(invocation.stage, target, invocation.references),
            require_approval=invocation.require_approval,
            role_arn=invocation.role_arn,
            change_set_name=invocation.change_set_name,
            tags=invocation.tags,
        )
        logger.info("Deploying %s to %s", invocation.stack_name, target)
        self._check(Command.DEPLOY, invocation, self._run(cmd, env=self._environment(context), cwd=self.cwd))

    def diff(self, invocation: StackInvocation, context: CredentialContext) -> None:
        cmd = build_cdk_diff(
            invocation.stack_name,
            app=invocation.app_path or self.app,
            context=self.app_context(invocation.stage, invocation.target, invocation.references),
        )
        logger.info("Diffing %s at %s", invocation.stack_name, invocation.target)
        result = self._run(cmd, env=self._environment(context), cwd=self.cwd)
        self._check(Command.DIFF, invocation, result)
        if result.stdout:
            logger.info("%s", result.stdout.strip())

    def synth(
        self,
        invocation: StackInvocation,
        context: CredentialContext,
        output: str | None = None,
    ) -> None:
        cmd = build_cdk_synth(
            invocation.stack_name,
            app=invocation.app_path or self.app,
            context=self.app_context(invocation.stage, invocation.target, invocation.references),
            output=output,
        )
        logger.info("Synthesizing %s for %s", invocation.stack_name, invocation.target)
        self._check(Command.SYNTH, invocation, self._run(cmd, env=self._environment(context), cwd=self.cwd))

    def synth_app(self, stage: Stage | None, context: CredentialContext) -> None:
        """Synthesize the whole app without selecting a target."""
        cmd = build_cdk_synth(None, app=self.app, context=self.app_context(stage))
        logger.info("Synthesizing app%s", f" for stage {stage.value}" if stage else "")
        result = self._run(cmd, env=self._environment(context), cwd=self.cwd)
        if not result.success:
            logger.error("Synth failed:\n%s", _tail(result.output))
            raise DeploymentError(f"Synth of stage {stage.value if stage else 'all'} failed.")

    def _synthesize_once(self, invocation: StackInvocation, app: str, context: CredentialContext) -> None:
        """Synthesize app once; concurrent callers wait for the first synth to finish."""
        with self._lock:
            assembly = self._assemblies.get(app)
            owner = assembly is None
            if owner:
                assembly = self._assemblies[app] = _Assembly()

        if not owner:
            assembly.ready.wait()
            if assembly.error is not None:
                target = invocation.target
                raise DeploymentError(
                    f"Cloud assembly {app} failed to synthesize; {invocation.stack_name} not deployed "
                    f"for account {target.account_id} in region {target.region}",
                    stack_name=invocation.stack_name,
                    account_id=target.account_id,
                    region=target.region,
                )
            return

        try:
            self.synth(invocation, context, output=app)
        except Exception as e:
            assembly.error = e
            # Later callers start a fresh synth
            with self._lock:
                self._assemblies.pop(app, None)
            raise
        finally:
            assembly.ready.set()

    def _environment(self, context: CredentialContext, template: str | None = None) -> dict[str, str]:
        env = context.environment()
        if template:
            env["CDK_NEW_BOOTSTRAP"] = "1"
        return env

    def _check(self, command: Command, invocation: StackInvocation, result: CommandResult) -> None:
        if result.success:
            return
        target = invocation.target
        if _has_expired_token(result):
            raise CredentialError(
                f"Credentials expired for account {target.account_id} in region {target.region} "
                f"running command {command.value}"
            )
        logger.error(
            "cdk %s of %s failed for %s (stage %s):\n%s",
            command.value,
            invocation.stack_name,
            target,
            invocation.stage.value if invocation.stage else "-",
            _tail(result.output),
        )
        raise DeploymentError(
            f"cdk {command.value} of {invocation.stack_name} failed for account "
            f"{target.account_id} in region {target.region}",
            stack_name=invocation.stack_name,
            account_id=target.account_id,
            region=target.region,
        )
