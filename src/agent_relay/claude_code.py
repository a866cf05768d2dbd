"""Adapter for Claude Code transcripts stored under ~/.claude/projects."""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

from agent_relay.adapters import (
    HarnessAdapter,
    NormalizedMessage,
    ParseState,
    SessionInfo,
)


PROJECTS_MARKER = "/.claude/projects/"
UNTITLED = "Untitled Session"
MAX_TITLE_LENGTH = 80

SYSTEM_TAG_PATTERNS = [
    re.compile(rf"<{tag}>[\s\S]*?</{tag}>", re.IGNORECASE)
    for tag in (
        "system_instruction",
        "system-instruction",
        "system-reminder",
        "local-command-caveat",
    )
]
URL_ESCAPE_PATTERN = re.compile(r"%[0-9A-Fa-f]{2}")


class ClaudeCodeAdapter(HarnessAdapter):
    """Parses Claude Code's JSONL session files."""

    id = "claude-code"
    name = "Claude Code"

    def __init__(self, home: Optional[Path] = None):
        self.home = home

    def watch_paths(self) -> List[str]:
        home = self.home or Path.home()
        return [str(home / ".claude" / "projects")]

    def recognizes_path(self, file_path: str) -> bool:
        if PROJECTS_MARKER not in file_path or not file_path.endswith(".jsonl"):
            return False
        # Subagent transcripts live in <session>/subagents/
        return "/subagents/" not in file_path

    def session_info_for(self, file_path: str) -> SessionInfo:
        # ~/.claude/projects/<encoded-project-path>/<session-id>.jsonl
        marker_index = file_path.find(PROJECTS_MARKER)
        if marker_index == -1:
            return SessionInfo(local_path=file_path)

        relative = file_path[marker_index + len(PROJECTS_MARKER):]
        parts = relative.split("/")
        encoded_project = "/".join(parts[:-1])
        session_id = parts[-1][: -len(".jsonl")] if parts[-1].endswith(".jsonl") else parts[-1]

        return SessionInfo(
            local_path=file_path,
            project_path=decode_project_path(encoded_project),
            harness_session_id=session_id,
        )

    def parse_line(
        self, line: str, state: ParseState
    ) -> Optional[List[NormalizedMessage]]:
        trimmed = line.strip()
        if not trimmed:
            return None

        try:
            data = json.loads(trimmed)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None

        message_data = data.get("message") if isinstance(data.get("message"), dict) else data
        role = message_data.get("role")
        if role == "human":
            role = "user"
        if role not in ("user", "assistant"):
            return None

        blocks = normalize_content(message_data.get("content"))

        for block in blocks:
            if block.get("type") == "tool_result" and isinstance(block.get("tool_use_id"), str):
                state.attach_tool_result(
                    block["tool_use_id"], block.get("content"), block.get("is_error")
                )

        # Result-only lines update earlier invocations and produce no message
        remaining = [block for block in blocks if block.get("type") != "tool_result"]
        if not remaining:
            return None

        message = NormalizedMessage(role=role, content_blocks=remaining)
        if isinstance(data.get("timestamp"), str):
            message.timestamp = data["timestamp"]
        return [message]

    def derive_title(self, messages: List[NormalizedMessage]) -> Optional[str]:
        first_user = next((m for m in messages if m.role == "user"), None)
        if first_user is None:
            return UNTITLED

        text = first_user.first_text()
        if not text:
            return UNTITLED

        text = strip_system_tags(text)
        if not text:
            return UNTITLED

        cleaned = re.sub(r"\s+", " ", text).strip()
        if len(cleaned) <= MAX_TITLE_LENGTH:
            return cleaned

        truncated = cleaned[:MAX_TITLE_LENGTH]
        last_space = truncated.rfind(" ")
        if last_space > 40:
            return truncated[:last_space] + "..."
        return truncated + "..."


def decode_project_path(encoded: str) -> str:
    """Decode a ~/.claude/projects directory name back into a project path.

    "-Users-me-my%2Dproject" decodes to "/Users/me/my-project". Without URL
    escapes every hyphen is taken as a separator, which is wrong for paths
    that really contain hyphens but is all the information there is.
    """
    if not encoded:
        return ""
    with_slashes = "/" + encoded.replace("-", "/")
    if URL_ESCAPE_PATTERN.search(encoded):
        return unquote(with_slashes)
    return with_slashes


def strip_system_tags(text: str) -> str:
    for pattern in SYSTEM_TAG_PATTERNS:
        text = pattern.sub("", text)
    return text.strip()


def normalize_content(content: Any) -> List[Dict[str, Any]]:
    """Coerce transcript content into a list of typed content blocks."""
    if not content:
        return []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        blocks = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if isinstance(item.get("type"), str):
                blocks.append(item)
            else:
                blocks.append({"type": "unknown", **item})
        return blocks
    if isinstance(content, dict) and isinstance(content.get("type"), str):
        return [content]
    return []
