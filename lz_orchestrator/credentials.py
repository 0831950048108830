"""
Credential selection for management-account crossing and per-target access.

Assumed credentials are returned as CredentialContext values and passed down
explicitly; nothing here writes to os.environ.
"""

import json
import logging
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConfigurationError, CredentialError
from .landing_zone import GlobalConfig
from .lib.aws import get_account_id, get_client, session_for
from .lib.config import OrchestratorSettings
from .lib.resilience import throttling_backoff
from .models import CredentialContext, CredentialSet, Target
from .stages import INSTALLER_STAGES, Command, Stage, get_global_region, is_before_bootstrap

logger = logging.getLogger(__name__)

MANAGEMENT_SESSION_NAME = "acceleratorAssumeRoleSession"
EXTERNAL_SESSION_NAME = "cdk-toolkit-session"
TARGET_SESSION_NAME = "lza-session"


def role_arn(partition: str, account_id: str, role_name: str) -> str:
    return f"arn:{partition}:iam::{account_id}:role/{role_name}"


def assume_role_context(
    base: CredentialContext,
    arn: str,
    session_name: str,
    region: str | None,
    client_factory=get_client,
) -> CredentialContext:
    """
    Assume a role from the base context.

    Raises:
        CredentialError: STS rejected the call or no base credentials were found.
    """
    sts = client_factory(base, "sts", region)
    try:
        response = throttling_backoff(
            lambda: sts.assume_role(RoleArn=arn, RoleSessionName=session_name)
        )
    except (ClientError, BotoCoreError) as e:
        raise CredentialError(f"Failed to assume role {arn}: {e}") from e
    return CredentialContext(
        credentials=CredentialSet.from_sts(response["Credentials"]),
        description=arn,
    )


def load_credentials_file(path: str) -> CredentialSet:
    """Read an AccessKeyId/SecretAccessKey/SessionToken JSON document."""
    try:
        data = json.loads(Path(path).read_text())
        return CredentialSet.from_sts(data)
    except (OSError, ValueError, KeyError) as e:
        raise ConfigurationError(f"Invalid credentials file {path}: {e}") from e


class CredentialBroker:
    """Builds the credential context each target invocation runs with."""

    def __init__(self, settings: OrchestratorSettings, client_factory=get_client):
        self.settings = settings
        self._client_factory = client_factory
        self._base: CredentialContext | None = None
        self._management: dict[str, CredentialContext] = {}

    def base_context(self) -> CredentialContext:
        """Ambient credentials, or the debug credentials file when CREDENTIALS_PATH exists."""
        if self._base is None:
            path = self.settings.credentials_path
            if path and Path(path).exists():
                logger.info("Detected debugging environment, loading credentials from %s", path)
                self._base = CredentialContext(
                    credentials=load_credentials_file(path),
                    description="credentials file",
                )
            else:
                self._base = CredentialContext(profile=self.settings.aws_profile)
        return self._base

    def current_account_id(self) -> str:
        if self.settings.account_id:
            return self.settings.account_id
        return get_account_id(session_for(self.base_context()))

    def get_management_credentials(self, partition: str) -> CredentialSet | None:
        """
        Credentials for the management account, or None to use the base context.

        None is returned when MANAGEMENT_ACCOUNT_ID/MANAGEMENT_ACCOUNT_ROLE_NAME
        are unset, or when the executing account already is the management
        account.

        Raises:
            CredentialError: The assume-role call failed.
        """
        settings = self.settings
        if not settings.is_external_deployment:
            return None
        if self.current_account_id() == settings.management_account_id:
            logger.debug("Already running in management account %s", settings.management_account_id)
            return None

        arn = role_arn(partition, settings.management_account_id, settings.management_account_role_name)
        logger.info("Assuming management account role %s", arn)
        context = assume_role_context(
            self.base_context(),
            arn,
            MANAGEMENT_SESSION_NAME,
            settings.region,
            self._client_factory,
        )
        return context.credentials

    def management_context(self, partition: str) -> CredentialContext:
        """Base context for the run, crossed into the management account when required."""
        if partition not in self._management:
            credentials = self.get_management_credentials(partition)
            if credentials is None:
                self._management[partition] = self.base_context()
            else:
                self._management[partition] = CredentialContext(
                    credentials=credentials, description="management account"
                )
        return self._management[partition]

    def assume_role(
        self,
        arn: str,
        session_name: str,
        base: CredentialContext | None = None,
        region: str | None = None,
    ) -> CredentialContext:
        return assume_role_context(
            base or self.base_context(), arn, session_name, region, self._client_factory
        )

    @staticmethod
    def assume_role_name(
        global_config: GlobalConfig | None,
        command: Command,
        stage: Stage | None,
    ) -> str | None:
        """Role used to reach workload accounts for this command and stage."""
        if global_config is None:
            return None
        custom_role = global_config.cdk_options.custom_deployment_role
        if custom_role and not is_before_bootstrap(command, stage):
            return custom_role
        return global_config.management_account_access_role

    def context_for_target(
        self,
        target: Target,
        stage: Stage | None,
        management_account_id: str | None,
        assume_role_name: str | None,
        base: CredentialContext | None = None,
    ) -> CredentialContext:
        """Credentials for one target, assumed from base when the target is another account."""
        base = base or self.base_context()
        region = target.region or get_global_region(target.partition)
        external = self.settings.is_external_deployment

        if external and stage in INSTALLER_STAGES:
            logger.debug("Using current credentials for installer stage %s", stage.value)
            return base
        if external and target.account_id == management_account_id:
            logger.debug("Using management credentials for external deployment to %s", target)
            return base
        if external and assume_role_name:
            logger.debug(
                "Using chained credentials %s -> %s with role %s",
                management_account_id,
                target.account_id,
                assume_role_name,
            )
            return self.assume_role(
                role_arn(target.partition, target.account_id, assume_role_name),
                EXTERNAL_SESSION_NAME,
                base,
                region,
            )
        if target.account_id == management_account_id or not assume_role_name:
            return base

        logger.debug("Using temporary credentials for %s with role %s", target, assume_role_name)
        return self.assume_role(
            role_arn(target.partition, target.account_id, assume_role_name),
            TARGET_SESSION_NAME,
            base,
            region,
        )
