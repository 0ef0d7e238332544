import asyncio
import logging
import platform
import threading
from pathlib import Path
from typing import Callable, Optional

import requests

from .errors import ConnectivityVerificationFailed, SetupCancelled, SetupError, SetupInProgress
from .models import ConnectionParams, DatabaseHandle, InstallationStage, SetupOutcome
from .services.command_runner import CommandRunner
from .services.config_loader import Settings
from .services.credential_broker import CredentialBroker
from .services.download import DownloadService
from .services.host import HostInspector
from .services.installer import DependencyInstaller
from .services.stage_tracker import StageTracker
from .services.windows import DesktopInstaller, WindowsHostInspector
from .services.workload import WorkloadManager

logger = logging.getLogger("notesetup")

_RUNTIME_PHASE = "runtime"
_WORKLOAD_PHASE = "workload"

_FAILURE_STAGES = {
    _RUNTIME_PHASE: InstallationStage.RUNTIME_INSTALL_FAILED,
    _WORKLOAD_PHASE: InstallationStage.WORKLOAD_SETUP_FAILED,
}


class SetupOrchestrator:
    """Brings a desktop host from nothing to a running MySQL container.

    One instance runs at most one setup at a time; overlapping calls to
    :meth:`run` are rejected with :class:`SetupInProgress`. The returned
    :class:`SetupOutcome` carries the database handle, nothing is stored
    globally.

    The host checks and the Docker installer are picked from
    ``system()``: Windows gets Docker Desktop, every other system goes
    through the Ubuntu path, whose platform check rejects non-Linux hosts.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        tracker: Optional[StageTracker] = None,
        broker: Optional[CredentialBroker] = None,
        runner: Optional[CommandRunner] = None,
        host: Optional[HostInspector] = None,
        installer=None,
        workload: Optional[WorkloadManager] = None,
        download_service: Optional[DownloadService] = None,
        system: Callable[[], str] = platform.system,
    ):
        self.settings = settings or Settings()
        self.tracker = tracker or StageTracker()
        self.broker = broker or CredentialBroker(
            self.tracker,
            default_timeout=self.settings.credential_timeout_seconds,
        )
        self.runner = runner or CommandRunner(self.tracker)
        download_service = download_service or DownloadService(self.tracker, logger, requests_module=requests)

        self.platform = system()
        if self.platform == WindowsHostInspector.PLATFORM:
            self.host = host or WindowsHostInspector(self.runner, system=system)
            self.installer = installer or DesktopInstaller(
                self.runner,
                download_service,
                data_dir=self.settings.data_dir,
                installer_url=self.settings.docker_desktop_url,
                installer_sha256=self.settings.docker_desktop_sha256,
            )
        else:
            self.host = host or HostInspector(self.runner, system=system)
            self.installer = installer or DependencyInstaller(
                self.runner,
                download_service,
                data_dir=self.settings.data_dir,
                script_url=self.settings.docker_script_url,
                script_sha256=self.settings.docker_script_sha256,
            )
        self.workload = workload or WorkloadManager(
            self.runner,
            data_dir=self.settings.data_dir,
            readiness_attempts=self.settings.readiness_attempts,
            readiness_interval=self.settings.readiness_interval_seconds,
        )

        self._run_lock = threading.Lock()
        self._phase: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    async def run(self, cancel_event: Optional[asyncio.Event] = None) -> SetupOutcome:
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Rejecting setup request: a run is already in progress.")
            raise SetupInProgress()
        try:
            return await self._run(cancel_event)
        finally:
            self._run_lock.release()

    async def _run(self, cancel_event: Optional[asyncio.Event]) -> SetupOutcome:
        self._phase = None
        self.tracker.begin_run()
        logger.info("Starting environment setup...")

        try:
            await self.host.preflight(self.settings)
            self._check_cancelled(cancel_event)

            self._phase = _RUNTIME_PHASE
            self.tracker.publish(InstallationStage.CHECKING_RUNTIME)
            runtime_installed = await self.ensure_runtime(cancel_event)

            self._phase = _WORKLOAD_PHASE
            self.tracker.publish(InstallationStage.PREPARING_WORKLOAD)
            params = self.settings.connection_params()
            config = self.settings.workload_config()
            compose_file = self.workload.prepare(config)
            self._check_cancelled(cancel_event)

            self.tracker.publish(InstallationStage.STARTING_WORKLOAD)
            launched = await self.workload.start(config, params, cancel_event=cancel_event)
            self.tracker.publish(InstallationStage.WORKLOAD_STARTED)

            await self.verify_connectivity(params)
            handle = DatabaseHandle(params=params, compose_file=Path(compose_file))
            self.tracker.publish(InstallationStage.SETUP_COMPLETE)
            logger.info("Setup complete. Database available at %s", params.masked_url)
            return SetupOutcome(
                handle=handle,
                runtime_installed=runtime_installed,
                workload_launched=launched,
            )
        except SetupError as exc:
            self._fail(exc)
            raise
        except asyncio.CancelledError:
            self._fail(SetupCancelled())
            raise
        except Exception as exc:
            logger.exception("Unexpected error during setup")
            self._fail(exc)
            raise

    async def ensure_runtime(self, cancel_event: Optional[asyncio.Event] = None) -> bool:
        """Makes Docker usable; returns True when it had to be installed."""
        if await self.host.is_runtime_usable(cancel_event=cancel_event):
            logger.info("Docker already installed.")
            self.tracker.publish(InstallationStage.RUNTIME_INSTALLED)
            return False

        logger.info("Docker not installed, attempting to install.")
        self.tracker.publish(InstallationStage.RUNTIME_NOT_INSTALLED)
        password = None
        if self.installer.needs_credential:
            password = await self.broker.request(timeout=self.settings.credential_timeout_seconds)
        self._check_cancelled(cancel_event)

        self.tracker.publish(InstallationStage.RUNTIME_INSTALLING)
        await self.installer.install_runtime(password, cancel_event=cancel_event)

        logger.info("Docker installation completed.")
        self.tracker.publish(InstallationStage.RUNTIME_INSTALLED)
        return True

    async def verify_connectivity(self, params: ConnectionParams):
        timeout = self.settings.connect_timeout_seconds
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(params.host, params.port), timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.error("Could not reach %s:%s: %s", params.host, params.port, exc)
            raise ConnectivityVerificationFailed(params.host, params.port) from exc

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise SetupCancelled()

    def _fail(self, exc: BaseException):
        failure_stage = _FAILURE_STAGES.get(self._phase)
        current = self.tracker.current_stage
        if failure_stage is not None and not (current and current.is_failure):
            self.tracker.publish(failure_stage)

        logger.error(str(exc))
        self.tracker.notify(
            {
                "type": "setup-error",
                "code": getattr(exc, "code", "unexpected_error"),
                "message": str(exc),
            }
        )
