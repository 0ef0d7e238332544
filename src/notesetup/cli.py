import asyncio
import logging
import os
import threading

import click
from rich.console import Console
from rich.logging import RichHandler

from .core import SetupOrchestrator
from .errors import SetupError
from .services.config_loader import SETTINGS_FILE_NAME, ConfigLoader, Settings, default_data_dir

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)

_STAGE_STYLES = {
    "RuntimeInstallFailed": "bold red",
    "WorkloadSetupFailed": "bold red",
    "SetupComplete": "bold green",
}


def _prompt_password(broker, request_id: str):
    try:
        secret = click.prompt("Administrator (sudo) password", hide_input=True, err=True)
    except (click.Abort, EOFError):
        return
    broker.respond_threadsafe(request_id, secret)


async def _observe(subscription, broker, verbose: bool):
    async for event in subscription:
        kind = event.get("type")
        if kind == "stage":
            stage = event["stage"]
            style = _STAGE_STYLES.get(stage, "blue")
            console.print(f"[{style}]» {stage}[/{style}]")
        elif kind == "log":
            if event["stream"] == "stderr":
                console.print(event["line"], style="red", markup=False, highlight=False)
            elif verbose or event["topic"] == "install-log":
                console.print(event["line"], style="dim", markup=False, highlight=False)
        elif kind == "credential-request":
            threading.Thread(
                target=_prompt_password,
                args=(broker, event["request_id"]),
                name="password-prompt",
                daemon=True,
            ).start()


async def _run_setup(orchestrator: SetupOrchestrator, verbose: bool):
    subscription = orchestrator.tracker.subscribe()
    observer = asyncio.create_task(_observe(subscription, orchestrator.broker, verbose))
    try:
        return await orchestrator.run()
    finally:
        orchestrator.tracker.close()
        await observer


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML settings file. Defaults to <data-dir>/{SETTINGS_FILE_NAME} if present.",
)
@click.option(
    "--data-dir",
    required=False,
    type=click.Path(file_okay=False),
    help="Directory for the compose file and installer downloads.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--credential-timeout",
    required=False,
    type=float,
    default=None,
    help="Seconds to wait for the administrator password (default: 120).",
)
def main(config, data_dir, verbose, log_file, credential_timeout):
    """Install Docker if needed and start the local MySQL container."""
    logger = logging.getLogger("notesetup")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(data_dir or default_data_dir(), SETTINGS_FILE_NAME)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        values = config_loader.load_with_environment(resolved_config)
        if data_dir is not None:
            values["data_dir"] = data_dir
        if credential_timeout is not None:
            values["credential_timeout_seconds"] = credential_timeout
        settings = Settings.from_mapping(values, source=resolved_config or "built-in defaults")
    except SetupError as exc:
        raise click.ClickException(str(exc)) from exc

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    orchestrator = SetupOrchestrator(settings=settings)
    try:
        outcome = asyncio.run(_run_setup(orchestrator, bool(verbose)))
    except KeyboardInterrupt:
        console.print("[bold red]Setup cancelled by user.[/bold red]")
        raise SystemExit(1)
    except SetupError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise SystemExit(1)

    console.print(f"[green]Database ready:[/green] {outcome.handle.params.masked_url}")
    console.print(f"[dim]Compose file: {outcome.handle.compose_file}[/dim]")
    raise SystemExit(0)


if __name__ == "__main__":
    main()
