"""Exception taxonomy for stage orchestration."""


class OrchestratorError(Exception):
    """Base class for orchestration failures."""

    pass


class ConfigurationError(OrchestratorError):
    """Malformed or missing declarative configuration, raised before any cloud call."""

    pass


class CredentialError(OrchestratorError):
    """Assume-role failure while crossing into another account."""

    pass


class TransientCloudError(OrchestratorError):
    """Throttling or 5xx-class error that outlived the retry budget."""

    pass


class ConflictingRouteConfigError(OrchestratorError):
    """Mutually exclusive route options were supplied together."""

    pass


class ReferenceNotFoundError(OrchestratorError):
    """A cross-stack identifier could not be resolved locally or remotely."""

    def __init__(self, key: str, account_id: str, region: str, reason: str | None = None):
        self.key = key
        self.account_id = account_id
        self.region = region
        message = f"Reference {key} not found in account {account_id} region {region}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DeploymentError(OrchestratorError):
    """The deployer rejected or failed a bootstrap, deploy, diff or synth call."""

    def __init__(
        self,
        message: str,
        stack_name: str | None = None,
        account_id: str | None = None,
        region: str | None = None,
    ):
        self.stack_name = stack_name
        self.account_id = account_id
        self.region = region
        super().__init__(message)


class StageExecutionError(OrchestratorError):
    """One or more targets of a stage failed."""

    def __init__(self, report):
        self.report = report
        failures = report.failed
        lines = [f"Stage {report.stage} failed for {len(failures)} target(s):"]
        for result in failures:
            lines.append(f"  {result.target.account_id}/{result.target.region}: {result.error}")
        super().__init__("\n".join(lines))
