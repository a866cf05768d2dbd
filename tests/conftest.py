import asyncio
import json
from pathlib import Path

import pytest


async def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def session_file(tmp_path):
    """Path of a Claude Code transcript under a fake home directory."""
    path = tmp_path / ".claude" / "projects" / "-work-app" / "sess-1.jsonl"
    path.parent.mkdir(parents=True)
    path.write_text("")
    return path


def user_line(text: str) -> str:
    return json.dumps({"type": "user", "message": {"role": "user", "content": text}}) + "\n"


def assistant_line(*blocks) -> str:
    return json.dumps(
        {"type": "assistant", "message": {"role": "assistant", "content": list(blocks)}}
    ) + "\n"


def append(path: Path, text: str) -> None:
    with open(path, "a") as f:
        f.write(text)
