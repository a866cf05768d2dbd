"""Daemon settings and the persisted repository allow-list."""

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_relay.credentials import get_default_home_dir


DEFAULT_SERVER_URL = "http://localhost:3000"


class DaemonSettings(BaseSettings):
    """Configuration settings for agent-relay-daemon."""

    server_url: str = Field(default=DEFAULT_SERVER_URL, description="Relay server URL")
    home_dir: str = Field(
        default_factory=get_default_home_dir, description="State and config directory"
    )
    idle_timeout: float = Field(
        default=300.0, description="Seconds without activity before a session ends"
    )
    harnesses: List[str] = Field(
        default_factory=list, description="Enabled adapter ids; empty enables all"
    )
    watch_paths: List[str] = Field(
        default_factory=list, description="Extra roots to watch for session files"
    )
    spawn_enabled: bool = Field(
        default=True, description="Accept start_session requests from the server"
    )

    model_config = SettingsConfigDict(env_prefix="AGENT_RELAY_")

    def merge_with_cli_args(self, args: dict) -> "DaemonSettings":
        """Merge CLI arguments with settings, CLI takes precedence."""
        cli_overrides = {}

        if args.get("--server"):
            cli_overrides["server_url"] = args["--server"]
        if args.get("--home-dir"):
            cli_overrides["home_dir"] = args["--home-dir"]
        if args.get("--idle-timeout"):
            cli_overrides["idle_timeout"] = float(args["--idle-timeout"])
        if args.get("--harness"):
            cli_overrides["harnesses"] = list(args["--harness"])
        if args.get("--watch"):
            cli_overrides["watch_paths"] = list(args["--watch"])
        if args.get("--no-spawn"):
            cli_overrides["spawn_enabled"] = False

        return self.model_copy(update=cli_overrides)


class ServerConfig(BaseModel):
    allowed_repos: List[str] = Field(default_factory=list)


class RelayConfig(BaseModel):
    """Contents of <home_dir>/config.json."""

    servers: Dict[str, ServerConfig] = Field(default_factory=dict)


def config_path(home_dir: str) -> Path:
    return Path(home_dir).expanduser() / "config.json"


def load_config(home_dir: str) -> RelayConfig:
    """Load the config file; a missing or broken file is an empty config."""
    path = config_path(home_dir)
    try:
        with open(path, "r") as f:
            data = json.load(f)
        return RelayConfig.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError):
        return RelayConfig()


def save_config(home_dir: str, config: RelayConfig) -> None:
    path = config_path(home_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2))


def _server_key(server_url: str) -> str:
    return server_url.rstrip("/")


def get_allowed_repos(home_dir: str, server_url: str) -> List[str]:
    server = load_config(home_dir).servers.get(_server_key(server_url))
    return list(server.allowed_repos) if server else []


def is_repo_allowed(home_dir: str, server_url: str, repo_id: Optional[str]) -> bool:
    """Whether a repository identifier is on the allow-list for a server."""
    if not repo_id:
        return False
    return repo_id in get_allowed_repos(home_dir, server_url)


def add_allowed_repo(home_dir: str, server_url: str, repo_id: str) -> bool:
    """Add a repository to a server's allow-list. Returns False if already there."""
    config = load_config(home_dir)
    server = config.servers.setdefault(_server_key(server_url), ServerConfig())
    if repo_id in server.allowed_repos:
        return False
    server.allowed_repos.append(repo_id)
    save_config(home_dir, config)
    return True


def remove_allowed_repo(home_dir: str, server_url: str, repo_id: str) -> bool:
    """Remove a repository from a server's allow-list. Returns True if it was there."""
    config = load_config(home_dir)
    server = config.servers.get(_server_key(server_url))
    if server is None or repo_id not in server.allowed_repos:
        return False
    server.allowed_repos.remove(repo_id)
    save_config(home_dir, config)
    return True
