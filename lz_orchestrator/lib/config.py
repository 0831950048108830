"""Runtime settings loaded from the environment and an optional .env file."""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values

from ..errors import ConfigurationError
from .console import print_error

DEFAULT_PREFIX = "AWSAccelerator"
DEFAULT_MAX_CONCURRENT_STACKS = 20
DEFAULT_SSM_PREFIX = "/accelerator"

REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-[0-9]+$"
ACCOUNT_ID_PATTERN = r"^[0-9]{12}$"


@dataclass
class OrchestratorSettings:
    """Validated process-level settings."""

    accelerator_prefix: str = DEFAULT_PREFIX
    accelerator_qualifier: str | None = None
    management_account_id: str | None = None
    management_account_role_name: str | None = None
    account_id: str | None = None
    region: str | None = None
    enable_single_account_mode: bool = False
    skip_prerequisites: bool = False
    max_concurrent_stacks: int = DEFAULT_MAX_CONCURRENT_STACKS
    permission_boundary: str | None = None
    credentials_path: str | None = None
    aws_profile: str | None = None
    ssm_prefix: str = DEFAULT_SSM_PREFIX

    @property
    def is_external_deployment(self) -> bool:
        """True when deploying from a pipeline outside the management account."""
        return bool(self.management_account_id and self.management_account_role_name)


def load_env_file(env_path: Path = Path(".env")) -> dict[str, str]:
    """Load values from a .env file using python-dotenv; missing file yields nothing."""
    if not env_path.exists():
        return {}
    return {key: value for key, value in dotenv_values(env_path).items() if value is not None}


def validate_aws_region(region: str) -> None:
    """Validate AWS region format (e.g., us-east-1, us-gov-west-1)."""
    if not re.match(REGION_PATTERN, region):
        raise ConfigurationError(
            f"Invalid AWS region format: {region} (expected format: us-east-1)"
        )


def validate_account_id(name: str, account_id: str) -> None:
    """Validate a 12-digit AWS account id."""
    if not re.match(ACCOUNT_ID_PATTERN, account_id):
        raise ConfigurationError(f"Invalid {name}: {account_id} (expected 12 digits)")


def parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def get_settings(
    environ: Mapping[str, str] | None = None,
    env_path: Path = Path(".env"),
) -> OrchestratorSettings:
    """Load and validate settings. Process environment overrides the .env file."""
    env = {**load_env_file(env_path), **(os.environ if environ is None else environ)}

    def get(key: str) -> str | None:
        value = env.get(key)
        return value.strip() if value and value.strip() else None

    errors = []

    region = get("AWS_REGION") or get("AWS_DEFAULT_REGION")
    if region:
        try:
            validate_aws_region(region)
        except ConfigurationError as e:
            errors.append(str(e))

    for key in ("MANAGEMENT_ACCOUNT_ID", "ACCOUNT_ID"):
        value = get(key)
        if value:
            try:
                validate_account_id(key, value)
            except ConfigurationError as e:
                errors.append(str(e))

    management_account_id = get("MANAGEMENT_ACCOUNT_ID")
    management_account_role_name = get("MANAGEMENT_ACCOUNT_ROLE_NAME")
    if bool(management_account_id) != bool(management_account_role_name):
        errors.append(
            "MANAGEMENT_ACCOUNT_ID and MANAGEMENT_ACCOUNT_ROLE_NAME must be set together"
        )

    max_concurrent_stacks = DEFAULT_MAX_CONCURRENT_STACKS
    raw_max = get("MAX_CONCURRENT_STACKS")
    if raw_max:
        try:
            max_concurrent_stacks = int(raw_max)
            if max_concurrent_stacks < 1:
                raise ValueError
        except ValueError:
            errors.append(f"Invalid MAX_CONCURRENT_STACKS: {raw_max} (expected a positive integer)")

    if errors:
        for error in errors:
            print_error(error)
        raise ConfigurationError("Configuration validation failed")

    return OrchestratorSettings(
        accelerator_prefix=get("ACCELERATOR_PREFIX") or DEFAULT_PREFIX,
        accelerator_qualifier=get("ACCELERATOR_QUALIFIER"),
        management_account_id=management_account_id,
        management_account_role_name=management_account_role_name,
        account_id=get("ACCOUNT_ID"),
        region=region,
        enable_single_account_mode=parse_bool(get("ACCELERATOR_ENABLE_SINGLE_ACCOUNT_MODE")),
        skip_prerequisites=parse_bool(get("ACCELERATOR_SKIP_PREREQUISITES")),
        max_concurrent_stacks=max_concurrent_stacks,
        permission_boundary=get("ACCELERATOR_PERMISSION_BOUNDARY"),
        credentials_path=get("CREDENTIALS_PATH"),
        aws_profile=get("AWS_PROFILE"),
        ssm_prefix=get("ACCELERATOR_SSM_PREFIX") or DEFAULT_SSM_PREFIX,
    )
