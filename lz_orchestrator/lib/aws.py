"""AWS client helpers for boto3 operations."""

import logging

import boto3
from botocore.exceptions import ClientError

from ..models import CredentialContext
from .resilience import throttling_backoff

logger = logging.getLogger(__name__)


def get_session(profile: str | None = None) -> boto3.Session:
    """Create boto3 session with optional profile."""
    if profile:
        return boto3.Session(profile_name=profile)
    return boto3.Session()


def session_for(context: CredentialContext | None) -> boto3.Session:
    """Create a boto3 session bound to an explicit credential context."""
    if context is None:
        return get_session()
    if context.credentials is None:
        return get_session(context.profile)
    return boto3.Session(
        aws_access_key_id=context.credentials.access_key_id,
        aws_secret_access_key=context.credentials.secret_access_key,
        aws_session_token=context.credentials.session_token,
    )


def get_client(context: CredentialContext | None, service: str, region: str | None):
    """Create a service client for the given credential context and region."""
    return session_for(context).client(service, region_name=region)


def get_account_id(session: boto3.Session) -> str:
    """Get the AWS account ID."""
    sts = session.client("sts")
    return throttling_backoff(lambda: sts.get_caller_identity())["Account"]


def get_ssm_parameter(ssm, name: str) -> str | None:
    """Read an SSM parameter value; None when it does not exist."""
    try:
        response = throttling_backoff(lambda: ssm.get_parameter(Name=name))
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ParameterNotFound":
            logger.info("Value not found for SSM Parameter: %s", name)
            return None
        raise
    return response.get("Parameter", {}).get("Value")


def bucket_exists(s3, bucket: str) -> bool:
    """Check if an S3 bucket exists and is reachable."""
    try:
        throttling_backoff(lambda: s3.head_bucket(Bucket=bucket))
        return True
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in ("404", "403", "NoSuchBucket", "NotFound", "Forbidden"):
            return False
        raise


def role_exists(iam, role_name: str) -> bool:
    """Check if an IAM role exists."""
    try:
        throttling_backoff(lambda: iam.get_role(RoleName=role_name))
        return True
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "NoSuchEntity":
            return False
        raise


def paginate(client, operation: str, key: str, **kwargs) -> list[dict]:
    """Collect one result key across every page of a paginated operation."""
    paginator = client.get_paginator(operation)
    pages = throttling_backoff(lambda: list(paginator.paginate(**kwargs)))
    return [item for page in pages for item in page.get(key, [])]


def list_organization_accounts(organizations) -> list[dict]:
    """List every account in the organization."""
    return paginate(organizations, "list_accounts", "Accounts")


def list_organizational_units(organizations) -> list[dict]:
    """
    Walk the organization tree.

    Returns:
        One dict per OU with Name (slash-joined path below the root), Id and Arn.
        The root itself is included as 'Root'.
    """
    roots = paginate(organizations, "list_roots", "Roots")
    if not roots:
        return []
    root = roots[0]
    units = [{"Name": "Root", "Id": root["Id"], "Arn": root["Arn"]}]

    pending = [(root["Id"], "")]
    while pending:
        parent_id, parent_path = pending.pop(0)
        children = paginate(
            organizations,
            "list_organizational_units_for_parent",
            "OrganizationalUnits",
            ParentId=parent_id,
        )
        for unit in children:
            path = f"{parent_path}/{unit['Name']}" if parent_path else unit["Name"]
            units.append({"Name": path, "Id": unit["Id"], "Arn": unit["Arn"]})
            pending.append((unit["Id"], path))
    return units
