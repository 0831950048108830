"""Pytest fixtures for orchestrator tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from lz_orchestrator.landing_zone import (
    AccountConfig,
    AccountsConfig,
    GlobalConfig,
    LandingZoneConfig,
    NetworkConfig,
    OrganizationalUnitId,
    OrganizationConfig,
    SecurityConfig,
)
from lz_orchestrator.lib.config import OrchestratorSettings

MANAGEMENT_ID = "111111111111"
LOG_ARCHIVE_ID = "222222222222"
AUDIT_ID = "333333333333"
WORKLOAD_ID = "444444444444"

ORCHESTRATOR_ENV_VARS = (
    "ACCELERATOR_PREFIX",
    "ACCELERATOR_QUALIFIER",
    "MANAGEMENT_ACCOUNT_ID",
    "MANAGEMENT_ACCOUNT_ROLE_NAME",
    "ACCOUNT_ID",
    "AWS_DEFAULT_REGION",
    "ACCELERATOR_ENABLE_SINGLE_ACCOUNT_MODE",
    "ACCELERATOR_SKIP_PREREQUISITES",
    "MAX_CONCURRENT_STACKS",
    "ACCELERATOR_PERMISSION_BOUNDARY",
    "CREDENTIALS_PATH",
    "AWS_PROFILE",
    "ACCELERATOR_SSM_PREFIX",
)


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """Start every test from a known environment."""
    for name in ORCHESTRATOR_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AWS_REGION", "us-east-1")


def sts_credentials(key_id: str = "ASIATEST") -> dict:
    """AssumeRole response body with a token valid for an hour."""
    return {
        "Credentials": {
            "AccessKeyId": key_id,
            "SecretAccessKey": "secret",
            "SessionToken": "token",
            "Expiration": datetime.now(timezone.utc) + timedelta(hours=1),
        }
    }


class FakeClients:
    """Client factory handing out one MagicMock per service and recording each request."""

    def __init__(self):
        self.clients: dict[str, MagicMock] = {}
        self.calls: list[tuple] = []
        self.client("sts").assume_role.return_value = sts_credentials()

    def client(self, service: str) -> MagicMock:
        if service not in self.clients:
            self.clients[service] = MagicMock(name=service)
        return self.clients[service]

    def __call__(self, context, service, region):
        self.calls.append((service, region, context))
        return self.client(service)


def paginated(client: MagicMock, **pages) -> dict[str, MagicMock]:
    """
    Serve client.get_paginator(operation).paginate(...) from canned pages.

    Each value is a list of page dicts, or a callable taking the paginate
    keyword arguments and returning one.
    """
    paginators = {}
    for operation, source in pages.items():
        paginator = MagicMock(name=operation)
        if callable(source):
            paginator.paginate.side_effect = source
        else:
            paginator.paginate.return_value = source
        paginators[operation] = paginator
    client.get_paginator.side_effect = paginators.__getitem__
    return paginators


@pytest.fixture
def fake_clients():
    return FakeClients()


def build_config(
    regions: list[str] | None = None,
    workload_names: list[str] | None = None,
    delegated_admin: str = "Audit",
    **global_overrides,
) -> LandingZoneConfig:
    regions = regions or ["us-east-1", "us-west-2"]
    workload_names = ["Workload1"] if workload_names is None else workload_names

    mandatory = [
        AccountConfig("Management", "management@example.com", "Root"),
        AccountConfig("LogArchive", "log-archive@example.com", "Security"),
        AccountConfig("Audit", "audit@example.com", "Security"),
    ]
    workloads = [
        AccountConfig(name, f"{name.lower()}@example.com", "Workloads/Dev") for name in workload_names
    ]
    account_ids = {
        "management@example.com": MANAGEMENT_ID,
        "log-archive@example.com": LOG_ARCHIVE_ID,
        "audit@example.com": AUDIT_ID,
    }
    for index, name in enumerate(workload_names):
        account_ids[f"{name.lower()}@example.com"] = (
            WORKLOAD_ID if index == 0 else f"5{index:011d}"
        )

    global_settings = {
        "home_region": regions[0],
        "enabled_regions": regions,
        "management_account_access_role": "AWSControlTowerExecution",
    }
    global_settings.update(global_overrides)

    return LandingZoneConfig(
        config_dir="config",
        accounts=AccountsConfig(mandatory, workloads, account_ids),
        organization=OrganizationConfig(
            organizational_units=["Security", "Workloads", "Workloads/Dev"],
            organizational_unit_ids={
                "Root": OrganizationalUnitId(
                    "r-abcd", "arn:aws:organizations::111111111111:root/o-example/r-abcd"
                ),
                "Security": OrganizationalUnitId(
                    "ou-abcd-sec", "arn:aws:organizations::111111111111:ou/o-example/ou-abcd-sec"
                ),
                "Workloads": OrganizationalUnitId(
                    "ou-abcd-wkl", "arn:aws:organizations::111111111111:ou/o-example/ou-abcd-wkl"
                ),
            },
        ),
        global_config=GlobalConfig(**global_settings),
        security=SecurityConfig(delegated_admin_account=delegated_admin),
        network=NetworkConfig(),
    )


@pytest.fixture
def landing_zone_config():
    return build_config()


@pytest.fixture
def settings():
    return OrchestratorSettings(account_id=MANAGEMENT_ID, region="us-east-1")
