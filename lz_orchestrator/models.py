"""Data models shared across the orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .stages import Command, Stage


@dataclass(frozen=True)
class Target:
    """One (account, region) pair a stage must run against."""

    account_id: str
    region: str
    partition: str = "aws"
    # Bootstrap trust-policy account, threaded through for bootstrap only
    trusted_account_id: str | None = None
    # Explicit stack names, used by customization run orders
    stack_names: tuple[str, ...] = ()

    @property
    def environment(self) -> str:
        return f"aws://{self.account_id}/{self.region}"

    def __str__(self) -> str:
        return f"{self.account_id}/{self.region}"


@dataclass
class ExecutionWave:
    """Targets dispatched together. Waves of a stage run strictly in order."""

    label: str
    targets: list[Target]
    sequential: bool = False


@dataclass(frozen=True)
class CredentialSet:
    """Temporary credentials returned by an assume-role call."""

    access_key_id: str
    secret_access_key: str
    session_token: str | None = None
    expiration: datetime | None = None

    @classmethod
    def from_sts(cls, credentials: dict) -> "CredentialSet":
        """Build from the Credentials block of an STS AssumeRole response."""
        return cls(
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials.get("SessionToken"),
            expiration=credentials.get("Expiration"),
        )

    @property
    def expired(self) -> bool:
        if self.expiration is None:
            return False
        now = datetime.now(self.expiration.tzinfo) if self.expiration.tzinfo else datetime.now()
        return self.expiration <= now


@dataclass(frozen=True)
class CredentialContext:
    """
    Credentials for one target invocation.

    Passed explicitly to every AWS client and deployer call instead of being
    written into process-wide environment variables. credentials=None means
    the ambient provider chain (optionally through a named profile).
    """

    credentials: CredentialSet | None = None
    profile: str | None = None
    description: str = "ambient"

    @property
    def is_ambient(self) -> bool:
        return self.credentials is None

    def environment(self) -> dict[str, str]:
        """Environment entries for a child process using these credentials."""
        if self.credentials is None:
            return {"AWS_PROFILE": self.profile} if self.profile else {}
        env = {
            "AWS_ACCESS_KEY_ID": self.credentials.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.credentials.secret_access_key,
        }
        if self.credentials.session_token:
            env["AWS_SESSION_TOKEN"] = self.credentials.session_token
        return env


@dataclass
class StackInvocation:
    """One deployer call for a resolved stack at one target."""

    stack_name: str
    stage: Stage | None
    target: Target
    config_dir: str
    require_approval: str = "never"
    tags: dict[str, str] = field(default_factory=dict)
    role_arn: str | None = None
    change_set_name: str | None = None
    app_path: str | None = None
    # Identifiers resolved before the run, passed to the app as context
    references: dict[str, str] = field(default_factory=dict)


class TargetStatus(Enum):
    """Outcome of a target within a stage run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class TargetResult:
    """Result of running one stage against one target."""

    target: Target
    stage: Stage | None
    wave: str
    status: TargetStatus = TargetStatus.PENDING
    stack_names: list[str] = field(default_factory=list)
    error: str | None = None
    exception: BaseException | None = field(default=None, repr=False)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Calculate duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def duration_display(self) -> str:
        """Format duration for display."""
        duration = self.duration_seconds
        if duration is None:
            return "-"
        return f"{duration:.1f}s"


@dataclass
class StageReport:
    """Fleet-level summary of one stage run."""

    stage: str
    command: Command
    results: list[TargetResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[TargetResult]:
        return [r for r in self.results if r.status is TargetStatus.SUCCESS]

    @property
    def failed(self) -> list[TargetResult]:
        return [r for r in self.results if r.status is TargetStatus.FAILED]

    @property
    def skipped(self) -> list[TargetResult]:
        return [
            r for r in self.results if r.status in (TargetStatus.SKIPPED, TargetStatus.CANCELLED)
        ]

    @property
    def success(self) -> bool:
        return not self.failed
