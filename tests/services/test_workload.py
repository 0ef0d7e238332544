import asyncio

import pytest
import yaml

from notesetup.errors import CommandFailed, ConfigIncomplete, ReadinessTimeout, SetupCancelled, SetupError
from notesetup.models import ConnectionParams, WorkloadConfig
from notesetup.services.workload import WorkloadManager

ENVIRONMENT = {
    "MYSQL_ROOT_PASSWORD": "rootpass",
    "MYSQL_DATABASE": "app_db",
    "MYSQL_USER": "notes",
    "MYSQL_PASSWORD": "notes_password",
}


def _config(**overrides):
    values = {
        "image": "mysql:8.0",
        "container_name": "docker-mysql-1",
        "ports": {3307: 3306},
        "volume_name": "mysql_data",
        "environment": dict(ENVIRONMENT),
        "credentials_source": "settings.yml",
    }
    values.update(overrides)
    return WorkloadConfig(**values)


PARAMS = ConnectionParams(
    user="notes",
    password="notes_password",
    database="app_db",
    host="127.0.0.1",
    port=3307,
)


def _manager(runner, tmp_path, attempts=3):
    return WorkloadManager(runner, tmp_path, readiness_attempts=attempts, readiness_interval=0)


def _docker_host(running=False, ready_after=1):
    """Scripted responses for a host with Docker already installed."""
    state = {"probes": 0}

    def handler(call):
        cmd = call["cmd"]
        if cmd[:2] == ["docker", "ps"]:
            if running:
                return 0, "docker-mysql-1\tUp 3 minutes (healthy)\n"
            return 0, ""
        if cmd[:2] == ["docker", "exec"]:
            state["probes"] += 1
            return 0 if state["probes"] >= ready_after else 1
        return 0

    return handler, state


def test_render_produces_compose_document(fake_runner, tmp_path):
    manager = _manager(fake_runner(lambda call: 0), tmp_path)

    document = yaml.safe_load(manager.render(_config()))

    service = document["services"]["mysql"]
    assert service["image"] == "mysql:8.0"
    assert service["container_name"] == "docker-mysql-1"
    assert service["ports"] == ["3307:3306"]
    assert service["volumes"] == ["mysql_data:/var/lib/mysql"]
    assert service["environment"] == ENVIRONMENT
    assert service["restart"] == "unless-stopped"
    assert service["healthcheck"]["test"][:3] == ["CMD", "mysqladmin", "ping"]
    assert "mysql_data" in document["volumes"]


def test_render_rejects_missing_credentials(fake_runner, tmp_path):
    environment = dict(ENVIRONMENT, MYSQL_PASSWORD="")
    manager = _manager(fake_runner(lambda call: 0), tmp_path)

    with pytest.raises(ConfigIncomplete, match="MYSQL_PASSWORD") as exc_info:
        manager.render(_config(environment=environment))

    assert exc_info.value.fields == ("MYSQL_PASSWORD",)
    assert not manager.compose_file.exists()


def test_prepare_overwrites_existing_compose_file(fake_runner, tmp_path):
    manager = _manager(fake_runner(lambda call: 0), tmp_path)
    manager.compose_file.parent.mkdir(parents=True)
    manager.compose_file.write_text("stale: true\n", encoding="utf-8")

    path = manager.prepare(_config())

    assert path == tmp_path / "docker" / "docker-compose.yml"
    assert "stale" not in path.read_text(encoding="utf-8")
    assert yaml.safe_load(path.read_text(encoding="utf-8"))["services"]["mysql"]["image"] == "mysql:8.0"


@pytest.mark.parametrize(
    "listing,expected",
    [
        ("docker-mysql-1\tUp 2 hours\n", True),
        ("docker-mysql-1\tExited (1) 3 minutes ago\n", False),
        ("docker-mysql-10\tUp 2 hours\n", False),
        ("", False),
    ],
)
def test_is_running_matches_exact_name_and_up_status(fake_runner, tmp_path, listing, expected):
    def handler(call):
        return 0, listing

    manager = _manager(fake_runner(handler), tmp_path)

    assert asyncio.run(manager.is_running("docker-mysql-1")) is expected


def test_compose_command_falls_back_to_v1(fake_runner, tmp_path):
    def handler(call):
        if call["cmd"][:2] == ["docker", "compose"]:
            return 1
        return 0

    runner = fake_runner(handler)
    manager = _manager(runner, tmp_path)

    first = asyncio.run(manager.get_docker_compose_cmd())
    second = asyncio.run(manager.get_docker_compose_cmd())

    assert first == second == ["docker-compose"]
    assert runner.commands() == ["docker compose version", "docker-compose version"]


def test_compose_command_missing_raises(fake_runner, tmp_path):
    manager = _manager(fake_runner(lambda call: 1), tmp_path)

    with pytest.raises(SetupError, match="Docker Compose is not available"):
        asyncio.run(manager.get_docker_compose_cmd())


def test_start_skips_launch_when_container_already_running(fake_runner, tmp_path):
    handler, _ = _docker_host(running=True)
    runner = fake_runner(handler)
    manager = _manager(runner, tmp_path)

    launched = asyncio.run(manager.start(_config(), PARAMS))

    assert launched is False
    assert not any(command.endswith("up -d") for command in runner.commands())
    assert not any(command.startswith("docker pull") for command in runner.commands())


def test_start_pulls_and_launches_when_not_running(fake_runner, tmp_path):
    handler, _ = _docker_host(running=False)
    runner = fake_runner(handler)
    manager = _manager(runner, tmp_path)

    launched = asyncio.run(manager.start(_config(), PARAMS))

    commands = runner.commands()
    compose_file = str(tmp_path / "docker" / "docker-compose.yml")
    assert launched is True
    assert "docker pull mysql:8.0" in commands
    assert f"docker compose -f {compose_file} up -d" in commands
    assert commands.index("docker pull mysql:8.0") < commands.index(f"docker compose -f {compose_file} up -d")


def test_start_fails_when_compose_up_fails(fake_runner, tmp_path):
    def handler(call):
        if call["cmd"][-2:] == ["up", "-d"]:
            return 1
        if call["cmd"][:2] == ["docker", "ps"]:
            return 0, ""
        return 0

    with pytest.raises(CommandFailed, match="Starting MySQL container"):
        asyncio.run(_manager(fake_runner(handler), tmp_path).start(_config(), PARAMS))


def test_probe_passes_password_through_environment(fake_runner, tmp_path):
    runner = fake_runner(lambda call: 0)

    assert asyncio.run(_manager(runner, tmp_path).probe_ready(_config(), PARAMS)) is True

    call = runner.calls[0]
    assert call["env"] == {"MYSQL_PWD": "notes_password"}
    assert "notes_password" not in " ".join(call["cmd"])
    assert call["cmd"][-1] == "USE `app_db`; SELECT 1"


def test_readiness_timeout_after_exact_number_of_attempts(fake_runner, tmp_path, monkeypatch):
    sleeps = []

    async def fake_sleep(seconds, cancel_event):
        sleeps.append(seconds)

    monkeypatch.setattr(WorkloadManager, "_sleep", staticmethod(fake_sleep))
    handler, state = _docker_host(running=True, ready_after=99)
    manager = WorkloadManager(fake_runner(handler), tmp_path, readiness_attempts=4, readiness_interval=3)

    with pytest.raises(ReadinessTimeout) as exc_info:
        asyncio.run(manager.wait_until_ready(_config(), PARAMS))

    assert exc_info.value.attempts == 4
    assert state["probes"] == 4
    assert sleeps == [3.0, 3.0, 3.0]


def test_readiness_stops_polling_after_first_success(fake_runner, tmp_path, monkeypatch):
    async def fake_sleep(seconds, cancel_event):
        return None

    monkeypatch.setattr(WorkloadManager, "_sleep", staticmethod(fake_sleep))
    handler, state = _docker_host(running=True, ready_after=2)
    manager = _manager(fake_runner(handler), tmp_path, attempts=5)

    attempt = asyncio.run(manager.wait_until_ready(_config(), PARAMS))

    assert attempt == 2
    assert state["probes"] == 2


def test_cancel_interrupts_readiness_sleep(fake_runner, tmp_path):
    async def scenario():
        handler, _ = _docker_host(running=True, ready_after=99)
        manager = WorkloadManager(fake_runner(handler), tmp_path, readiness_attempts=5, readiness_interval=30)
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel_event.set)
        await manager.wait_until_ready(_config(), PARAMS, cancel_event=cancel_event)

    with pytest.raises(SetupCancelled):
        asyncio.run(asyncio.wait_for(scenario(), 5))


def test_render_declares_the_data_volume_external(fake_runner, tmp_path):
    document = yaml.safe_load(_manager(fake_runner(lambda call: 0), tmp_path).render(_config()))

    assert document["volumes"] == {"mysql_data": {"name": "mysql_data", "external": True}}


def test_ensure_volume_reuses_existing_volume(fake_runner, tmp_path):
    runner = fake_runner(lambda call: (0, "mysql_data_old\nmysql_data\n"))

    created = asyncio.run(_manager(runner, tmp_path).ensure_volume("mysql_data"))

    assert created is False
    assert runner.commands() == ["docker volume ls --filter name=mysql_data --format {{.Name}}"]


def test_ensure_volume_creates_missing_volume(fake_runner, tmp_path):
    runner = fake_runner(lambda call: (0, "mysql_data_old\n"))

    created = asyncio.run(_manager(runner, tmp_path).ensure_volume("mysql_data"))

    assert created is True
    assert runner.commands()[-1] == "docker volume create mysql_data"


def test_ensure_volume_failure_names_the_step(fake_runner, tmp_path):
    def handler(call):
        if call["cmd"][:3] == ["docker", "volume", "create"]:
            return 1
        return 0, ""

    with pytest.raises(CommandFailed, match="Creating MySQL data volume"):
        asyncio.run(_manager(fake_runner(handler), tmp_path).ensure_volume("mysql_data"))


def test_launch_creates_volume_before_pull_and_up(fake_runner, tmp_path):
    handler, _ = _docker_host(running=False)
    runner = fake_runner(handler)
    manager = _manager(runner, tmp_path)
    compose_file = manager.prepare(_config())

    asyncio.run(manager.launch(_config(), compose_file))

    commands = runner.commands()
    up = f"docker compose -f {compose_file} up -d"
    assert commands.index("docker volume create mysql_data") < commands.index("docker pull mysql:8.0")
    assert commands.index("docker pull mysql:8.0") < commands.index(up)
