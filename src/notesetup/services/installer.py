"""Privileged Docker installation for NoteSetup."""

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from notesetup.errors import CommandFailed, ProcessSpawnError, VerificationFailed
from notesetup.models import CommandStep
from notesetup.services.command_runner import CommandRunner
from notesetup.services.download import DownloadService
from notesetup.services.stage_tracker import INSTALL_LOG

DOCKER_SCRIPT_URL = "https://get.docker.com"


def default_plan(script_path: str) -> List[CommandStep]:
    """The fixed clean-slate install plan for Ubuntu hosts."""
    script = shlex.quote(str(script_path))
    return [
        CommandStep(
            "sudo -S apt-get remove --purge -y docker docker-engine docker.io containerd runc",
            "Removing old Docker packages",
            tolerates_failure=True,
        ),
        CommandStep("sudo -S apt-get autoremove -y", "Cleaning up unused dependencies", tolerates_failure=True),
        CommandStep("sudo -S rm -rf /var/lib/docker", "Removing Docker data", tolerates_failure=True),
        CommandStep("sudo -S rm -rf /var/lib/containerd", "Removing containerd data", tolerates_failure=True),
        CommandStep("sudo -S rm -rf /etc/docker", "Removing Docker config", tolerates_failure=True),
        CommandStep("sudo -S apt-get update", "Updating package list"),
        CommandStep(f"sudo -S sh {script}", "Installing Docker engine"),
        CommandStep('sudo -S usermod -aG docker "$USER"', "Configuring user permissions"),
        CommandStep("sudo -S systemctl enable --now docker", "Enabling Docker service"),
        CommandStep(
            "sudo -S chmod 666 /var/run/docker.sock",
            "Setting Docker socket permissions",
            tolerates_failure=True,
        ),
    ]


class DependencyInstaller:
    """Runs the install plan step by step and verifies Docker afterwards."""

    VERIFY_COMMAND = ("docker", "info")
    needs_credential = True

    def __init__(
        self,
        runner: CommandRunner,
        download_service: DownloadService,
        data_dir: Path,
        logger: Optional[logging.Logger] = None,
        script_url: str = DOCKER_SCRIPT_URL,
        script_sha256: Optional[str] = None,
        verify_command: Sequence[str] = VERIFY_COMMAND,
        plan: Callable[[str], List[CommandStep]] = default_plan,
    ):
        self.runner = runner
        self.tracker = runner.tracker
        self.download_service = download_service
        self.data_dir = Path(data_dir)
        self.logger = logger or logging.getLogger(__name__)
        self.script_url = script_url
        self.script_sha256 = script_sha256
        self.verify_command = tuple(verify_command)
        self.plan = plan

    async def install_runtime(self, password: Optional[str], cancel_event: Optional[asyncio.Event] = None):
        script_path = await self.prepare_script()
        await self.install(self.plan(str(script_path)), password, cancel_event=cancel_event)

    async def prepare_script(self) -> Path:
        dest = self.data_dir / "install" / "get-docker.sh"
        await asyncio.to_thread(
            self.download_service.download_file,
            self.script_url,
            str(dest),
            "Downloading Docker install script",
            self.script_sha256,
        )
        return dest

    async def install(
        self,
        steps: Sequence[CommandStep],
        password: str,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        for step in steps:
            self.tracker.log(INSTALL_LOG, f"▶ {step.description}...")
            self.logger.info("Install step: %s", step.description)

            result = await self.runner.run(
                "bash",
                ["-c", step.command],
                stream=True,
                tolerates_failure=step.tolerates_failure,
                topic=INSTALL_LOG,
                input_text=f"{password}\n",
                cancel_event=cancel_event,
            )

            if step.tolerates_failure or result.succeeded:
                continue

            self.tracker.log(INSTALL_LOG, f"✖ {step.description} failed", "stderr")
            raise CommandFailed(step.description, result.exit_code)

        await self.verify(cancel_event=cancel_event)

    async def verify(self, cancel_event: Optional[asyncio.Event] = None):
        program, *args = self.verify_command
        try:
            result = await self.runner.run(program, args, cancel_event=cancel_event)
        except ProcessSpawnError as exc:
            raise VerificationFailed(str(exc)) from exc
        if not result.succeeded:
            detail = result.stderr.strip()
            self.tracker.log(INSTALL_LOG, f"✖ Verification failed: {detail}", "stderr")
            raise VerificationFailed(detail)

        self.tracker.log(INSTALL_LOG, "✓ Docker installed successfully")
