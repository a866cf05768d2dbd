"""Client identity management for agent-relay."""

import json
import os
import re
import uuid
from pathlib import Path
from typing import Optional

from pydantic import BaseModel


CLIENT_ID_HEADER = "X-Relay-Client-ID"
UUID4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)


class ConnectionIdentity(BaseModel):
    """Identity attached to every request and to the duplex connection."""

    model_config = {"frozen": True}

    client_id: str
    token: Optional[str] = None


def get_default_home_dir() -> str:
    """Get the default agent-relay home directory path."""
    return "~/.agent-relay"


def get_client_id(home_dir: str) -> str:
    """Get this install's client id, creating it on first use."""
    client_id_path = Path(home_dir).expanduser() / "client-id"

    if client_id_path.exists():
        try:
            content = client_id_path.read_text().strip()
            if UUID4_PATTERN.match(content):
                return content
        except OSError:
            pass

    client_id = str(uuid.uuid4())
    client_id_path.parent.mkdir(parents=True, exist_ok=True)
    client_id_path.write_text(client_id)
    os.chmod(client_id_path, 0o600)
    return client_id


def load_token(home_dir: str) -> Optional[str]:
    """Load the bearer token from credentials.json, if logged in."""
    credentials_path = Path(home_dir).expanduser() / "credentials.json"

    if not credentials_path.exists():
        return None

    try:
        with open(credentials_path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return None

    if not isinstance(data, dict):
        return None
    token = data.get("access_token")
    return token if isinstance(token, str) and token else None


def load_identity(home_dir: str) -> ConnectionIdentity:
    """Read the connection identity once at startup."""
    return ConnectionIdentity(client_id=get_client_id(home_dir), token=load_token(home_dir))
