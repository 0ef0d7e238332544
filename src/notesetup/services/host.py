"""Host preflight checks: platform, release, tools, port and Docker presence."""

import logging
import platform
import shutil
from typing import Callable, Iterable, Optional, Sequence, Tuple

from packaging import version

from notesetup.errors import (
    MissingDependency,
    PortInUse,
    ProcessSpawnError,
    SetupError,
    UnsupportedPlatform,
    UnsupportedVersion,
)
from notesetup.services.command_runner import CommandRunner

SUPPORTED_VERSIONS = ("20.04", "22.04", "24.04")
REQUIRED_TOOLS = ("lsb_release", "ss", "bash", "sudo")

# Tried in order; the first one that exits 0 means Docker is usable.
RUNTIME_PROBES: Tuple[str, ...] = (
    "docker --version",
    "sudo -n docker --version",
    "sg docker -c 'docker --version'",
)


class HostInspector:
    """Answers the questions the orchestrator asks before touching anything."""

    def __init__(
        self,
        runner: CommandRunner,
        logger: Optional[logging.Logger] = None,
        system: Callable[[], str] = platform.system,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.runner = runner
        self.logger = logger or logging.getLogger(__name__)
        self.system = system
        self.which = which

    PLATFORM = "Linux"

    def ensure_supported_platform(self) -> str:
        detected = self.system() or "Unknown"
        if detected != self.PLATFORM:
            raise UnsupportedPlatform(detected)
        return detected

    async def preflight(self, settings):
        """Platform, release, tools and guarded port, in that order."""
        self.ensure_supported_platform()
        await self.ensure_supported_version(settings.supported_versions)
        self.ensure_tools(settings.required_tools)
        await self.ensure_port_free(settings.guarded_port)

    async def get_release_version(self) -> str:
        result = await self.runner.run("lsb_release", ["-r", "-s"])
        return result.stdout.strip()

    async def ensure_supported_version(self, supported: Sequence[str] = SUPPORTED_VERSIONS) -> str:
        try:
            release = await self.get_release_version()
        except ProcessSpawnError as exc:
            raise MissingDependency("lsb_release") from exc
        if not self.is_version_supported(release, supported):
            raise UnsupportedVersion(release, supported)
        self.logger.info("Ubuntu %s is supported.", release)
        return release

    @staticmethod
    def is_version_supported(release: str, supported: Iterable[str]) -> bool:
        try:
            parsed = version.parse(release.strip())
        except version.InvalidVersion:
            return False
        for candidate in supported:
            try:
                if version.parse(str(candidate)) == parsed:
                    return True
            except version.InvalidVersion:
                continue
        return False

    def ensure_tools(self, tools: Sequence[str] = REQUIRED_TOOLS):
        for tool in tools:
            if not self.which(tool):
                raise MissingDependency(tool)
            self.logger.debug("Found required tool: %s", tool)

    async def is_port_free(self, port: int) -> bool:
        result = await self.runner.run("ss", ["-tuln"])
        if not result.succeeded:
            raise SetupError(f"Could not list listening sockets: {result.stderr.strip()}")

        suffix = f":{port}"
        for line in result.stdout_lines[1:]:
            columns = line.split()
            # Netid State Recv-Q Send-Q Local-Address:Port Peer-Address:Port
            if len(columns) >= 5 and columns[4].endswith(suffix):
                return False
        return True

    async def ensure_port_free(self, port: int):
        if not await self.is_port_free(port):
            raise PortInUse(port)

    async def is_runtime_usable(self, probes: Sequence[str] = RUNTIME_PROBES, cancel_event=None) -> bool:
        for probe in probes:
            try:
                result = await self.runner.run(
                    "sh",
                    ["-c", probe],
                    tolerates_failure=True,
                    cancel_event=cancel_event,
                )
            except ProcessSpawnError:
                continue
            if result.succeeded:
                self.logger.info("Docker is available (%s).", probe)
                return True
        return False
