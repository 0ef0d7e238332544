"""Domain errors for NoteSetup."""

from typing import Iterable, Optional

from notesetup.errors_catalog import actionable_error


class SetupError(RuntimeError):
    """Raised when the setup cannot continue safely."""

    code = "setup_error"


class ConfigError(SetupError):
    """Settings file is missing, unreadable or malformed."""

    code = "config_error"


class DownloadError(SetupError):
    code = "download_error"


class SetupInProgress(SetupError):
    """Another setup run is already active on this orchestrator."""

    code = "setup_in_progress"

    def __init__(self):
        super().__init__("A setup run is already in progress.")


class SetupCancelled(SetupError):
    code = "setup_cancelled"

    def __init__(self, message: str = "Setup was cancelled."):
        super().__init__(message)


class UnsupportedPlatform(SetupError):
    code = "unsupported_platform"

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(actionable_error(self.code, platform=platform))


class UnsupportedVersion(SetupError):
    code = "unsupported_version"

    def __init__(self, version: str, supported: Iterable[str]):
        self.version = version
        self.supported = tuple(supported)
        super().__init__(
            actionable_error(self.code, version=version or "<unknown>", supported=", ".join(self.supported))
        )


class MissingDependency(SetupError):
    code = "missing_dependency"

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(actionable_error(self.code, tool=tool))


class PortInUse(SetupError):
    code = "port_in_use"

    def __init__(self, port: int):
        self.port = port
        super().__init__(actionable_error(self.code, port=port))


class CredentialError(SetupError):
    """Base for failures of the credential round-trip."""

    code = "credential_error"


class CredentialTimeout(CredentialError):
    code = "credential_timeout"

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(actionable_error(self.code, timeout=timeout))


class CredentialChannelClosed(CredentialError):
    code = "credential_channel_closed"

    def __init__(self):
        super().__init__(actionable_error(self.code))


class ProcessSpawnError(SetupError):
    code = "process_spawn_error"

    def __init__(self, program: str, reason: object):
        self.program = program
        super().__init__(f"Could not start `{program}`: {reason}")


class CommandTimeout(SetupError):
    code = "command_timeout"

    def __init__(self, program: str, timeout: float):
        self.program = program
        self.timeout = timeout
        super().__init__(f"Command `{program}` timed out after {timeout}s.")


class InstallError(SetupError):
    """Base for Docker installation failures."""

    code = "install_error"


class RuntimeNotRunning(InstallError):
    code = "runtime_not_running"

    def __init__(self):
        super().__init__(actionable_error(self.code))


class CommandFailed(InstallError):
    code = "command_failed"

    def __init__(self, description: str, exit_code: Optional[int]):
        self.description = description
        self.exit_code = exit_code
        super().__init__(
            actionable_error(
                self.code,
                description=description,
                exit_code="none" if exit_code is None else exit_code,
            )
        )


class VerificationFailed(InstallError):
    code = "verification_failed"

    def __init__(self, detail: str = ""):
        self.detail = detail
        message = actionable_error(self.code)
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)


class WorkloadError(SetupError):
    """Base for database container failures."""

    code = "workload_error"


class ConfigIncomplete(WorkloadError):
    code = "config_incomplete"

    def __init__(self, fields: Iterable[str], source: str = "the settings file"):
        self.fields = tuple(fields)
        super().__init__(actionable_error(self.code, fields=", ".join(self.fields), source=source))


class ReadinessTimeout(WorkloadError):
    code = "readiness_timeout"

    def __init__(self, attempts: int, container: str = "<container>"):
        self.attempts = attempts
        super().__init__(actionable_error(self.code, attempts=attempts, container=container))


class ConnectivityVerificationFailed(WorkloadError):
    code = "connectivity_failed"

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        super().__init__(actionable_error(self.code, host=host, port=port))
