"""PID and status files shared with out-of-process status/stop commands."""

import json
import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError


PID_FILE = "daemon.pid"
STATUS_FILE = "daemon.status.json"


class DaemonError(Exception):
    """A daemon-level condition that prevents the daemon from running."""


class DaemonStatus(BaseModel):
    """Contents of the status file."""

    pid: int
    started_at: str
    server_url: str = ""
    connection: str = "disconnected"
    active_sessions: int = 0
    sessions: List[Dict[str, Any]] = Field(default_factory=list)
    spawned_sessions: List[Dict[str, Any]] = Field(default_factory=list)


def pid_path(home_dir: str) -> Path:
    return Path(home_dir).expanduser() / PID_FILE


def status_path(home_dir: str) -> Path:
    return Path(home_dir).expanduser() / STATUS_FILE


def read_pid(home_dir: str) -> Optional[int]:
    try:
        return int(pid_path(home_dir).read_text().strip())
    except (OSError, ValueError):
        return None


def is_process_alive(pid: int) -> bool:
    try:
        # Signal 0 checks for existence without delivering anything
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def running_pid(home_dir: str) -> Optional[int]:
    """PID of a live daemon recorded in the PID file, if any."""
    pid = read_pid(home_dir)
    if pid is None or pid == os.getpid():
        return None
    return pid if is_process_alive(pid) else None


def write_pid_file(home_dir: str) -> None:
    """Record this process as the running daemon."""
    existing = running_pid(home_dir)
    if existing is not None:
        raise DaemonError(
            f"Daemon is already running (PID {existing}). Use 'agent-relay-daemon stop' to stop it."
        )
    path = pid_path(home_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(os.getpid()))
    except OSError as e:
        raise DaemonError(f"Cannot write PID file {path}: {e}") from e


def write_status_file(home_dir: str, status: DaemonStatus) -> None:
    path = status_path(home_dir)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(status.model_dump_json(indent=2))
    os.replace(tmp_path, path)


def read_status_file(home_dir: str) -> Optional[DaemonStatus]:
    try:
        with open(status_path(home_dir), "r") as f:
            return DaemonStatus.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError, ValidationError):
        return None


def remove_state_files(home_dir: str) -> None:
    for path in (pid_path(home_dir), status_path(home_dir)):
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def stop_running_daemon(home_dir: str) -> Optional[int]:
    """Send SIGTERM to the running daemon. Returns its PID, or None if none runs."""
    pid = running_pid(home_dir)
    if pid is None:
        return None
    os.kill(pid, signal.SIGTERM)
    return pid
