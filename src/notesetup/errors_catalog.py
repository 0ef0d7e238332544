"""Actionable error catalog for NoteSetup."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "unsupported_platform": {
        "what": "Unsupported platform: {platform}.",
        "next": "Automatic setup runs on Ubuntu Linux and Windows only. Install Docker and MySQL manually.",
    },
    "unsupported_version": {
        "what": "Unsupported operating system release: {version}.",
        "next": "Use one of the supported releases: {supported}.",
    },
    "missing_dependency": {
        "what": "Required tool `{tool}` was not found on PATH.",
        "next": "Install it with `sudo apt-get install` and run setup again.",
    },
    "port_in_use": {
        "what": "Port {port} is already in use.",
        "next": "Stop the service listening on {port} (often a local MySQL) and retry.",
    },
    "credential_timeout": {
        "what": "No administrator password was provided within {timeout:.0f} seconds.",
        "next": "Run setup again and enter your password when prompted.",
    },
    "credential_channel_closed": {
        "what": "The password prompt was closed before a password was provided.",
        "next": "Keep the application window open until setup finishes.",
    },
    "runtime_not_running": {
        "what": "Docker Desktop is installed but its engine is not running.",
        "next": "Start Docker Desktop, wait until it reports the engine is running, then retry.",
    },
    "command_failed": {
        "what": "Docker installation failed at step: {description} (exit code {exit_code}).",
        "next": "Check the install log above, fix the reported problem and retry.",
    },
    "verification_failed": {
        "what": "Docker was installed but `docker info` did not succeed.",
        "next": "Log out and back in so the `docker` group applies, then retry.",
    },
    "config_incomplete": {
        "what": "Database settings are incomplete. Missing: {fields}.",
        "next": "Fill in the missing keys in {source} or remove them to use defaults.",
    },
    "readiness_timeout": {
        "what": "Database did not accept connections after {attempts} attempts.",
        "next": "Inspect `docker logs {container}` and available disk space.",
    },
    "connectivity_failed": {
        "what": "Database container is ready but {host}:{port} is not reachable.",
        "next": "Check the port mapping in the compose file and local firewall rules.",
    },
}


def actionable_error(code: str, **kwargs) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
