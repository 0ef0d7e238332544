"""Windows host checks and Docker Desktop installation."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple

from notesetup.errors import (
    MissingDependency,
    ProcessSpawnError,
    RuntimeNotRunning,
    SetupError,
    UnsupportedVersion,
    VerificationFailed,
)
from notesetup.services.command_runner import CommandRunner, cancellable_sleep
from notesetup.services.download import DownloadService
from notesetup.services.host import HostInspector
from notesetup.services.stage_tracker import INSTALL_LOG

DOCKER_DESKTOP_URL = "https://desktop.docker.com/win/main/amd64/Docker%20Desktop%20Installer.exe"

# Docker Desktop needs Hyper-V or WSL 2 features absent from Home editions.
SUPPORTED_EDITIONS: Tuple[str, ...] = ("Pro", "Enterprise", "Education")
WINDOWS_REQUIRED_TOOLS: Tuple[str, ...] = ("powershell", "netstat")

_EDITION_QUERY = "(Get-CimInstance -ClassName Win32_OperatingSystem).Caption"

_INSTALL_SCRIPT = r"""$ErrorActionPreference = 'Stop'
$installerPath = '{installer_path}'

function Wait-DockerService {{
    for ($attempt = 1; $attempt -le {service_attempts}; $attempt++) {{
        $service = Get-Service -Name 'com.docker.service' -ErrorAction SilentlyContinue
        if ($service -and $service.Status -eq 'Running') {{ return $true }}
        Write-Host "Waiting for Docker service... ($attempt/{service_attempts})"
        Start-Sleep -Seconds 10
    }}
    return $false
}}

try {{
    Write-Host 'Installing Docker Desktop...'
    $process = Start-Process -FilePath $installerPath -ArgumentList 'install --quiet --accept-license' -Wait -PassThru -Verb RunAs
    if ($process.ExitCode -ne 0) {{ throw "Installer exited with code $($process.ExitCode)" }}
    Start-Process -FilePath "$env:ProgramFiles\Docker\Docker\Docker Desktop.exe"
    if (-not (Wait-DockerService)) {{ throw 'Docker service did not start after installation.' }}
    Write-Host 'Docker Desktop installed.'
    exit 0
}} catch {{
    Write-Error "Installation failed: $_"
    exit 1
}} finally {{
    if (Test-Path $installerPath) {{ Remove-Item -Force $installerPath }}
}}
"""


class WindowsHostInspector(HostInspector):
    """Preflight checks for Windows desktops running Docker Desktop."""

    PLATFORM = "Windows"

    async def preflight(self, settings):
        self.ensure_supported_platform()
        await self.ensure_supported_edition()
        self.ensure_tools(WINDOWS_REQUIRED_TOOLS)
        await self.ensure_port_free(settings.guarded_port)

    async def get_release_version(self) -> str:
        result = await self.runner.run("powershell", ["-NoProfile", "-Command", _EDITION_QUERY])
        return result.stdout.strip()

    async def ensure_supported_edition(self, editions: Sequence[str] = SUPPORTED_EDITIONS) -> str:
        try:
            caption = await self.get_release_version()
        except ProcessSpawnError as exc:
            raise MissingDependency("powershell") from exc
        lowered = caption.lower()
        if not any(edition.lower() in lowered for edition in editions):
            raise UnsupportedVersion(caption, editions)
        self.logger.info("%s supports Docker Desktop.", caption)
        return caption

    async def is_port_free(self, port: int) -> bool:
        result = await self.runner.run("netstat", ["-an"])
        if not result.succeeded:
            raise SetupError(f"Could not list listening sockets: {result.stderr.strip()}")

        suffix = f":{port}"
        for line in result.stdout_lines:
            columns = line.split()
            # Proto Local-Address Foreign-Address State
            if len(columns) >= 4 and columns[0] == "TCP" and columns[3] == "LISTENING" and columns[1].endswith(suffix):
                return False
        return True

    async def is_runtime_usable(self, cancel_event=None) -> bool:
        """False when Docker is missing; raises when it is installed but stopped."""
        try:
            version = await self.runner.run("docker", ["--version"], tolerates_failure=True, cancel_event=cancel_event)
        except ProcessSpawnError:
            return False
        if not version.succeeded:
            return False

        info = await self.runner.run("docker", ["info"], tolerates_failure=True, cancel_event=cancel_event)
        if not info.succeeded:
            raise RuntimeNotRunning()
        self.logger.info("Docker Desktop is available.")
        return True


class DesktopInstaller:
    """Downloads and runs the Docker Desktop installer through an elevated PowerShell script."""

    # Elevation goes through the UAC prompt, not a password.
    needs_credential = False

    SERVICE_WAIT_ATTEMPTS = 12

    def __init__(
        self,
        runner: CommandRunner,
        download_service: DownloadService,
        data_dir: Path,
        logger: Optional[logging.Logger] = None,
        installer_url: str = DOCKER_DESKTOP_URL,
        installer_sha256: Optional[str] = None,
        availability_attempts: int = 6,
        availability_interval: float = 10.0,
    ):
        self.runner = runner
        self.tracker = runner.tracker
        self.download_service = download_service
        self.data_dir = Path(data_dir)
        self.logger = logger or logging.getLogger(__name__)
        self.installer_url = installer_url
        self.installer_sha256 = installer_sha256
        self.availability_attempts = max(1, int(availability_attempts))
        self.availability_interval = float(availability_interval)

    @property
    def install_dir(self) -> Path:
        return self.data_dir / "install"

    async def install_runtime(self, password: Optional[str] = None, cancel_event: Optional[asyncio.Event] = None):
        installer_path = await self.prepare_installer()
        await self.install(installer_path, cancel_event=cancel_event)
        await self.wait_until_available(cancel_event=cancel_event)

    async def prepare_installer(self) -> Path:
        dest = self.install_dir / "DockerDesktopInstaller.exe"
        await asyncio.to_thread(
            self.download_service.download_file,
            self.installer_url,
            str(dest),
            "Downloading Docker Desktop installer",
            self.installer_sha256,
        )
        return dest

    def render_script(self, installer_path: Path) -> str:
        quoted = str(installer_path).replace("'", "''")
        return _INSTALL_SCRIPT.format(installer_path=quoted, service_attempts=self.SERVICE_WAIT_ATTEMPTS)

    async def install(self, installer_path: Path, cancel_event: Optional[asyncio.Event] = None):
        script_path = self.install_dir / "docker_install.ps1"
        script_path.parent.mkdir(parents=True, exist_ok=True)
        script_path.write_text(self.render_script(installer_path), encoding="utf-8")

        self.tracker.log(INSTALL_LOG, "▶ Installing Docker Desktop...")
        try:
            result = await self.runner.run(
                "powershell",
                ["-ExecutionPolicy", "Bypass", "-NoProfile", "-File", str(script_path)],
                stream=True,
                topic=INSTALL_LOG,
                cancel_event=cancel_event,
            )
        finally:
            script_path.unlink(missing_ok=True)

        if not result.succeeded:
            self.tracker.log(INSTALL_LOG, "✖ Installing Docker Desktop failed", "stderr")
        self.runner.require_success(result, "Installing Docker Desktop")

    async def wait_until_available(self, cancel_event: Optional[asyncio.Event] = None) -> int:
        for attempt in range(1, self.availability_attempts + 1):
            try:
                result = await self.runner.run("docker", ["info"], tolerates_failure=True, cancel_event=cancel_event)
                available = result.succeeded
            except ProcessSpawnError:
                available = False

            if available:
                self.tracker.log(INSTALL_LOG, "✓ Docker Desktop installed successfully")
                return attempt

            self.tracker.log(
                INSTALL_LOG,
                f"Waiting for Docker to become available... ({attempt}/{self.availability_attempts})",
            )
            if attempt < self.availability_attempts:
                await self._sleep(self.availability_interval, cancel_event)

        raise VerificationFailed("Docker Desktop was installed but is not responding. Start it manually and retry.")

    @staticmethod
    async def _sleep(seconds: float, cancel_event: Optional[asyncio.Event]):
        await cancellable_sleep(seconds, cancel_event, "Docker Desktop")
