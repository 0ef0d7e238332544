"""Database container lifecycle for NoteSetup."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import yaml

from notesetup.errors import ConfigIncomplete, ProcessSpawnError, ReadinessTimeout, SetupError
from notesetup.models import ConnectionParams, WorkloadConfig
from notesetup.services.command_runner import CommandRunner, cancellable_sleep
from notesetup.services.stage_tracker import WORKLOAD_LOG

DEFAULT_READINESS_ATTEMPTS = 10
DEFAULT_READINESS_INTERVAL = 3.0


class WorkloadManager:
    """Renders, starts and probes the single MySQL container."""

    COMPOSE_SERVICE = "mysql"

    def __init__(
        self,
        runner: CommandRunner,
        data_dir: Path,
        logger: Optional[logging.Logger] = None,
        readiness_attempts: int = DEFAULT_READINESS_ATTEMPTS,
        readiness_interval: float = DEFAULT_READINESS_INTERVAL,
    ):
        self.runner = runner
        self.tracker = runner.tracker
        self.data_dir = Path(data_dir)
        self.logger = logger or logging.getLogger(__name__)
        self.readiness_attempts = max(1, int(readiness_attempts))
        self.readiness_interval = float(readiness_interval)
        self._compose_cmd: Optional[List[str]] = None

    @property
    def compose_file(self) -> Path:
        return self.data_dir / "docker" / "docker-compose.yml"

    def render(self, config: WorkloadConfig) -> str:
        missing = config.missing_fields()
        if missing:
            raise ConfigIncomplete(missing, source=config.credentials_source or "the settings file")

        env = dict(config.environment)
        service = {
            "image": config.image,
            "container_name": config.container_name,
            "environment": env,
            "ports": [f"{host}:{container}" for host, container in sorted(config.ports.items())],
            "volumes": [f"{config.volume_name}:/var/lib/mysql"],
            "healthcheck": {
                "test": [
                    "CMD",
                    "mysqladmin",
                    "ping",
                    "-h",
                    "localhost",
                    "-u",
                    env["MYSQL_USER"],
                    f"-p{env['MYSQL_PASSWORD']}",
                ],
                "interval": "5s",
                "timeout": "5s",
                "retries": 10,
            },
            "command": ["--default-authentication-plugin=mysql_native_password"],
            "restart": "unless-stopped",
        }
        document = {
            "services": {self.COMPOSE_SERVICE: service},
            "volumes": {config.volume_name: {"name": config.volume_name, "external": True}},
        }
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)

    def persist(self, content: str) -> Path:
        path = self.compose_file
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
            file_obj.write(content)
        self.logger.info("Compose file written to %s", path)
        return path

    def prepare(self, config: WorkloadConfig) -> Path:
        return self.persist(self.render(config))

    async def get_docker_compose_cmd(self) -> List[str]:
        if self._compose_cmd is not None:
            return self._compose_cmd

        for candidate in (["docker", "compose"], ["docker-compose"]):
            program, *args = candidate
            try:
                result = await self.runner.run(program, [*args, "version"], tolerates_failure=True)
            except ProcessSpawnError:
                continue
            if result.succeeded:
                self._compose_cmd = candidate
                return candidate

        raise SetupError(
            "Docker Compose is not available. Install Docker Compose v2 (`docker compose`) "
            "or v1 (`docker-compose`) and try again."
        )

    async def is_running(self, container_name: str) -> bool:
        result = await self.runner.run(
            "docker",
            [
                "ps",
                "-a",
                "--filter",
                f"name={container_name}",
                "--format",
                "{{.Names}}\t{{.Status}}",
            ],
            tolerates_failure=True,
        )
        if not result.succeeded:
            return False
        for line in result.stdout_lines:
            name, _, status = line.partition("\t")
            if name.strip() == container_name and status.strip().startswith("Up"):
                return True
        return False

    async def ensure_volume(self, volume_name: str, cancel_event=None) -> bool:
        """Creates the named data volume unless it exists; returns True when created."""
        listing = await self.runner.run(
            "docker",
            ["volume", "ls", "--filter", f"name={volume_name}", "--format", "{{.Name}}"],
            tolerates_failure=True,
            cancel_event=cancel_event,
        )
        if listing.succeeded and volume_name in (line.strip() for line in listing.stdout_lines):
            self.logger.debug("Volume %s already exists.", volume_name)
            return False

        self.tracker.log(WORKLOAD_LOG, f"Creating data volume {volume_name}...")
        result = await self.runner.run(
            "docker",
            ["volume", "create", volume_name],
            topic=WORKLOAD_LOG,
            cancel_event=cancel_event,
        )
        self.runner.require_success(result, "Creating MySQL data volume")
        return True

    async def launch(self, config: WorkloadConfig, compose_file: Path, cancel_event=None):
        await self.ensure_volume(config.volume_name, cancel_event=cancel_event)

        self.tracker.log(WORKLOAD_LOG, f"Pulling {config.image}...")
        pull = await self.runner.run(
            "docker",
            ["pull", config.image],
            stream=True,
            tolerates_failure=True,
            topic=WORKLOAD_LOG,
            cancel_event=cancel_event,
        )
        if not pull.succeeded:
            self.logger.warning("Could not pull %s, relying on a local copy.", config.image)

        self.tracker.log(WORKLOAD_LOG, "Starting MySQL container...")
        program, *args = await self.get_docker_compose_cmd()
        result = await self.runner.run(
            program,
            [*args, "-f", str(compose_file), "up", "-d"],
            stream=True,
            topic=WORKLOAD_LOG,
            cancel_event=cancel_event,
        )
        self.runner.require_success(result, "Starting MySQL container")

    async def probe_ready(self, config: WorkloadConfig, params: ConnectionParams, cancel_event=None) -> bool:
        try:
            result = await self.runner.run(
                "docker",
                [
                    "exec",
                    "-e",
                    "MYSQL_PWD",
                    config.container_name,
                    "mysql",
                    "-u",
                    params.user,
                    "-e",
                    f"USE `{params.database}`; SELECT 1",
                ],
                tolerates_failure=True,
                env={"MYSQL_PWD": params.password},
                cancel_event=cancel_event,
            )
        except ProcessSpawnError as exc:
            self.tracker.log(WORKLOAD_LOG, f"Command error: {exc}", "stderr")
            return False

        if result.succeeded:
            return True
        self.tracker.log(WORKLOAD_LOG, f"Connection failed: {result.stderr.strip()}", "stderr")
        return False

    async def wait_until_ready(self, config: WorkloadConfig, params: ConnectionParams, cancel_event=None) -> int:
        """Polls readiness at a fixed interval; returns the successful attempt number."""
        self.tracker.log(WORKLOAD_LOG, "Verifying MySQL connectivity...")

        for attempt in range(1, self.readiness_attempts + 1):
            if await self.probe_ready(config, params, cancel_event=cancel_event):
                self.tracker.log(WORKLOAD_LOG, "✓ Successfully connected to MySQL")
                return attempt

            self.logger.debug("Readiness attempt %s/%s failed", attempt, self.readiness_attempts)
            if attempt < self.readiness_attempts:
                await self._sleep(self.readiness_interval, cancel_event)

        raise ReadinessTimeout(self.readiness_attempts, container=config.container_name)

    async def start(self, config: WorkloadConfig, params: ConnectionParams, cancel_event=None) -> bool:
        """Ensures the container is up and ready; returns True when it had to be launched."""
        launched = False
        if await self.is_running(config.container_name):
            self.tracker.log(WORKLOAD_LOG, f"Container {config.container_name} is already running.")
        else:
            await self.launch(config, self.compose_file, cancel_event=cancel_event)
            launched = True

        await self.wait_until_ready(config, params, cancel_event=cancel_event)
        return launched

    @staticmethod
    async def _sleep(seconds: float, cancel_event: Optional[asyncio.Event]):
        await cancellable_sleep(seconds, cancel_event, "the database")
