"""Harness adapter interface and the normalized message model.

An adapter knows one coding agent's on-disk transcript format. The session
tracker only talks to adapters through ``HarnessAdapter`` and never branches
on which harness it is looking at.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


DEFAULT_ADAPTER_ID = "claude-code"
DEFAULT_FILE_MODIFYING_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit")


class NormalizedMessage(BaseModel):
    """One conversational turn, independent of the harness transcript syntax."""

    role: str  # 'user' or 'assistant'
    content_blocks: List[Dict[str, Any]] = Field(default_factory=list)
    timestamp: Optional[str] = None

    def first_text(self) -> Optional[str]:
        for block in self.content_blocks:
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                if block["text"]:
                    return block["text"]
        return None


class SessionInfo(BaseModel):
    """Metadata an adapter can derive from a session file path alone."""

    local_path: str
    project_path: str = ""
    harness_session_id: Optional[str] = None
    model: Optional[str] = None


class ToolResult(BaseModel):
    """A tool result that was attached to an earlier tool invocation."""

    tool_use_id: str
    message_index: int
    content: Any = None
    is_error: Optional[bool] = None


class ParseState(BaseModel):
    """Incremental parse state for one transcript.

    ``messages`` is append-only apart from ``trim``. Pending tool invocations
    are stored as (message index, block index) pairs into ``messages`` so a
    later result can be attached in place.
    """

    messages: List[NormalizedMessage] = Field(default_factory=list)
    pending_tool_uses: Dict[str, Tuple[int, int]] = Field(default_factory=dict)
    attached_results: List[ToolResult] = Field(default_factory=list)
    # Absolute index of messages[0]; grows as old messages are trimmed
    base_index: int = 0

    def add_messages(self, messages: List[NormalizedMessage]) -> None:
        """Append messages and register their tool invocations as pending."""
        for message in messages:
            message_index = self.base_index + len(self.messages)
            self.messages.append(message)
            for block_index, block in enumerate(message.content_blocks):
                if block.get("type") == "tool_use" and isinstance(block.get("id"), str):
                    self.pending_tool_uses[block["id"]] = (message_index, block_index)

    def attach_tool_result(
        self, tool_use_id: str, content: Any, is_error: Optional[bool] = None
    ) -> bool:
        """Attach a result to its pending invocation.

        Returns False, leaving everything untouched, when no invocation with
        that id is pending.
        """
        location = self.pending_tool_uses.pop(tool_use_id, None)
        if location is None:
            return False

        message_index, block_index = location
        local_index = message_index - self.base_index
        if local_index < 0 or local_index >= len(self.messages):
            return False

        blocks = self.messages[local_index].content_blocks
        if block_index >= len(blocks):
            return False

        blocks[block_index]["result"] = content
        if is_error is not None:
            blocks[block_index]["is_error"] = is_error

        self.attached_results.append(
            ToolResult(
                tool_use_id=tool_use_id,
                message_index=message_index,
                content=content,
                is_error=is_error,
            )
        )
        return True

    def take_attached_results(self) -> List[ToolResult]:
        results, self.attached_results = self.attached_results, []
        return results

    def trim(self, max_messages: int) -> None:
        """Keep only the newest ``max_messages`` messages.

        Pending invocations that pointed into the dropped messages are
        forgotten; their results will be dropped when they arrive.
        """
        overflow = len(self.messages) - max_messages
        if overflow <= 0:
            return

        self.messages = self.messages[overflow:]
        self.base_index += overflow
        self.pending_tool_uses = {
            tool_use_id: location
            for tool_use_id, location in self.pending_tool_uses.items()
            if location[0] >= self.base_index
        }


class HarnessAdapter(ABC):
    """Capability interface implemented once per supported harness."""

    id: str = ""
    name: str = ""
    file_modifying_tools: Tuple[str, ...] = DEFAULT_FILE_MODIFYING_TOOLS

    @abstractmethod
    def watch_paths(self) -> List[str]:
        """Root directories that may contain session files."""

    @abstractmethod
    def recognizes_path(self, file_path: str) -> bool:
        """Whether this adapter handles the given file."""

    @abstractmethod
    def session_info_for(self, file_path: str) -> SessionInfo:
        """Derive session metadata from a session file path."""

    @abstractmethod
    def parse_line(
        self, line: str, state: ParseState
    ) -> Optional[List[NormalizedMessage]]:
        """Turn one transcript line into zero or more normalized messages.

        Implementations attach tool results through ``state`` and must not
        append to ``state.messages`` themselves; the caller does that.
        """

    def derive_title(self, messages: List[NormalizedMessage]) -> Optional[str]:
        return None

    def extract_file_path(self, tool_name: str, tool_input: Any) -> Optional[str]:
        """File path touched by a file-modifying tool invocation, if any."""
        if tool_name not in self.file_modifying_tools or not isinstance(tool_input, dict):
            return None
        for key in ("file_path", "notebook_path"):
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                return value
        return None


def get_enabled_adapters(enabled_ids: Optional[List[str]] = None) -> List[HarnessAdapter]:
    """Instantiate the registered adapters, optionally filtered by id."""
    from agent_relay.claude_code import ClaudeCodeAdapter

    adapters: List[HarnessAdapter] = [ClaudeCodeAdapter()]
    if not enabled_ids:
        return adapters
    return [adapter for adapter in adapters if adapter.id in enabled_ids]
