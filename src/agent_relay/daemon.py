"""agent-relay-daemon

Stream local coding-agent sessions to a relay server and run remote ones.

Usage:
    agent-relay-daemon start [--server=<url>] [--home-dir=<dir>] [--idle-timeout=<seconds>] [--harness=<id>]... [--watch=<path>]... [--no-spawn]
    agent-relay-daemon stop [--home-dir=<dir>]
    agent-relay-daemon status [--home-dir=<dir>]
    agent-relay-daemon repo allow <path> [--server=<url>] [--home-dir=<dir>]
    agent-relay-daemon -h | --help
    agent-relay-daemon --version

Commands:
    start                        Run the daemon in the foreground
    stop                         Stop the running daemon
    status                       Show the running daemon's sessions
    repo allow                   Allow sessions in the repository at <path> to be streamed

Options:
    -h --help                    Show this screen.
    --version                    Show version.
    --server=<url>               Relay server URL.
    --home-dir=<dir>             State and config directory (default: ~/.agent-relay).
    --idle-timeout=<seconds>     End local sessions idle for this long.
    --harness=<id>               Only watch sessions of this harness (repeatable).
    --watch=<path>               Extra directory to watch for session files (repeatable).
    --no-spawn                   Do not accept remotely started sessions.

Environment Variables:
    AGENT_RELAY_SERVER_URL       Server URL (overridden by --server)
    AGENT_RELAY_HOME_DIR         State directory (overridden by --home-dir)
    AGENT_RELAY_IDLE_TIMEOUT     Idle timeout in seconds (overridden by --idle-timeout)
    AGENT_RELAY_SPAWN_ENABLED    Accept remotely started sessions (default true)
"""

import asyncio
import os
import sys
import time
import tomllib
from pathlib import Path

from docopt import docopt  # type: ignore

from agent_relay.config import DaemonSettings, add_allowed_repo
from agent_relay.credentials import load_identity
from agent_relay.daemon_state import (
    DaemonError,
    read_status_file,
    running_pid,
    stop_running_daemon,
)
from agent_relay.git import get_repo_identifier
from agent_relay.relay_daemon import RelayDaemon


def _get_project_version() -> str:
    """Get version from pyproject.toml."""
    try:
        project_root = Path(__file__).parent.parent.parent
        with open(project_root / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "0.1.0"


async def start_command(settings: DaemonSettings) -> int:
    """Run the daemon until it is signalled to stop."""
    identity = load_identity(settings.home_dir)
    daemon = RelayDaemon(settings, identity)
    await daemon.run()
    return 0


async def stop_command(settings: DaemonSettings) -> int:
    pid = stop_running_daemon(settings.home_dir)
    if pid is None:
        print("Daemon is not running")
        return 1

    print(f"Sent SIGTERM to daemon (PID {pid})")
    deadline = time.monotonic() + 10
    while running_pid(settings.home_dir) == pid and time.monotonic() < deadline:
        await asyncio.sleep(0.2)
    return 0


def status_command(settings: DaemonSettings) -> int:
    pid = running_pid(settings.home_dir)
    if pid is None:
        print("Daemon is not running")
        return 1

    status = read_status_file(settings.home_dir)
    print(f"Daemon is running (PID {pid})")
    if status is None:
        return 0

    print(f"  Started:    {status.started_at}")
    print(f"  Server:     {status.server_url}")
    print(f"  Connection: {status.connection}")
    print(f"  Local sessions: {status.active_sessions}")
    for session in status.sessions:
        print(f"    {session.get('id')}  {session.get('title')}  ({session.get('messageCount')} messages)")
    if status.spawned_sessions:
        print(f"  Remote sessions: {len(status.spawned_sessions)}")
        for session in status.spawned_sessions:
            print(f"    {session.get('id')}  {session.get('state')}  {session.get('cwd')}")
    return 0


async def repo_allow_command(settings: DaemonSettings, path: str) -> int:
    project_path = os.path.abspath(os.path.expanduser(path))
    repo_id = await get_repo_identifier(project_path)
    if not repo_id:
        print(f"Error: {project_path} is not a git repository", file=sys.stderr)
        return 1

    if add_allowed_repo(settings.home_dir, settings.server_url, repo_id):
        print(f"Allowed {repo_id} for {settings.server_url}")
    else:
        print(f"{repo_id} is already allowed for {settings.server_url}")
    return 0


async def main_async() -> int:
    """Async main function."""
    args = docopt(__doc__, version=f"agent-relay-daemon {_get_project_version()}")

    try:
        settings = DaemonSettings()
        settings = settings.merge_with_cli_args(args)

        if args["start"]:
            return await start_command(settings)
        elif args["stop"]:
            return await stop_command(settings)
        elif args["status"]:
            return status_command(settings)
        elif args["repo"] and args["allow"]:
            return await repo_allow_command(settings, args["<path>"])
        else:
            print("Error: Must specify a command", file=sys.stderr)
            return 1

    except DaemonError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Failed to run command: {e}", file=sys.stderr)
        return 1


def main() -> int:
    """Main entry point."""
    return asyncio.run(main_async())


if __name__ == "__main__":
    raise SystemExit(main())
