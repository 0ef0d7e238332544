"""Shared domain models for NoteSetup."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Tuple
from urllib.parse import quote


class InstallationStage(Enum):
    """Externally observable setup stages, in canonical order."""

    NOT_STARTED = "NotStarted"
    CHECKING_RUNTIME = "CheckingRuntime"
    RUNTIME_NOT_INSTALLED = "RuntimeNotInstalled"
    RUNTIME_INSTALLING = "RuntimeInstalling"
    RUNTIME_INSTALL_FAILED = "RuntimeInstallFailed"
    RUNTIME_INSTALLED = "RuntimeInstalled"
    PREPARING_WORKLOAD = "PreparingWorkload"
    STARTING_WORKLOAD = "StartingWorkload"
    WORKLOAD_STARTED = "WorkloadStarted"
    WORKLOAD_SETUP_FAILED = "WorkloadSetupFailed"
    SETUP_COMPLETE = "SetupComplete"

    @property
    def order(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def is_failure(self) -> bool:
        return self in (
            InstallationStage.RUNTIME_INSTALL_FAILED,
            InstallationStage.WORKLOAD_SETUP_FAILED,
        )


STAGE_ORDER: Tuple[InstallationStage, ...] = tuple(InstallationStage)


@dataclass(frozen=True)
class CredentialRequest:
    request_id: str


@dataclass(frozen=True)
class CommandStep:
    """One privileged shell step of the Docker install plan."""

    command: str
    description: str
    tolerates_failure: bool = False


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single spawned process."""

    exit_code: Optional[int]
    stdout_lines: Tuple[str, ...] = ()
    stderr_lines: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)


@dataclass(frozen=True)
class WorkloadConfig:
    """Everything needed to render the database container definition."""

    image: str
    container_name: str
    ports: Mapping[int, int]
    volume_name: str
    environment: Mapping[str, str]
    credentials_source: str

    REQUIRED_ENVIRONMENT = (
        "MYSQL_ROOT_PASSWORD",
        "MYSQL_DATABASE",
        "MYSQL_USER",
        "MYSQL_PASSWORD",
    )

    def missing_fields(self) -> Tuple[str, ...]:
        missing = []
        for name in ("image", "container_name", "volume_name", "credentials_source"):
            if not str(getattr(self, name) or "").strip():
                missing.append(name)
        if not self.ports:
            missing.append("ports")
        for key in self.REQUIRED_ENVIRONMENT:
            if not str(self.environment.get(key) or "").strip():
                missing.append(key)
        return tuple(missing)


@dataclass(frozen=True)
class ConnectionParams:
    user: str
    password: str = field(repr=False)
    database: str
    host: str
    port: int

    @property
    def url(self) -> str:
        return (
            f"mysql://{quote(self.user, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def masked_url(self) -> str:
        return f"mysql://{self.user}:***@{self.host}:{self.port}/{self.database}"


@dataclass(frozen=True)
class DatabaseHandle:
    """Ready-to-use database descriptor handed to the data-access layer."""

    params: ConnectionParams
    compose_file: Path

    @property
    def url(self) -> str:
        return self.params.url


@dataclass(frozen=True)
class SetupOutcome:
    handle: DatabaseHandle
    runtime_installed: bool
    workload_launched: bool
