"""Message protocol between the daemon and the server.

Every message is a flat JSON object with a ``type`` discriminator. Incoming
messages with an unknown type are ignored so either side can add message
kinds without breaking the other.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class ProtocolMessage(BaseModel):
    """Base for all wire messages; unknown fields are kept, not rejected."""

    model_config = ConfigDict(extra="allow")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# Daemon -> server


class SpawnableHarnessInfo(BaseModel):
    id: str
    name: str
    available: bool = True
    supports_permission_relay: bool = True
    supports_streaming: bool = True
    default_model: Optional[str] = None


class DaemonCapabilities(BaseModel):
    can_spawn_sessions: bool = False
    spawnable_harnesses: List[SpawnableHarnessInfo] = Field(default_factory=list)


class DaemonConnected(ProtocolMessage):
    type: Literal["daemon_connected"] = "daemon_connected"
    client_id: str
    capabilities: DaemonCapabilities


class Ping(ProtocolMessage):
    type: Literal["ping"] = "ping"


class SessionOutput(ProtocolMessage):
    type: Literal["session_output"] = "session_output"
    session_id: str
    messages: List[Dict[str, Any]]


class SessionEnded(ProtocolMessage):
    type: Literal["session_ended"] = "session_ended"
    session_id: str
    exit_code: int
    reason: Literal["completed", "error", "user_terminated", "timeout"] = "completed"
    error: Optional[str] = None


class PermissionPrompt(ProtocolMessage):
    type: Literal["permission_prompt"] = "permission_prompt"
    session_id: str
    request_id: str
    tool: str
    description: str
    details: Dict[str, Any] = Field(default_factory=dict)


class QuestionPrompt(ProtocolMessage):
    type: Literal["question_prompt"] = "question_prompt"
    session_id: str
    tool_use_id: str
    question: str
    options: Optional[List[str]] = None


class ControlRequest(ProtocolMessage):
    type: Literal["control_request"] = "control_request"
    session_id: str
    request_id: str
    request: Dict[str, Any]


class SessionDiff(ProtocolMessage):
    type: Literal["session_diff"] = "session_diff"
    session_id: str
    diff: str
    modified_files: List[str] = Field(default_factory=list)


class SessionMetadata(ProtocolMessage):
    type: Literal["session_metadata"] = "session_metadata"
    session_id: str
    agent_session_id: Optional[str] = None
    repo_url: Optional[str] = None
    branch: Optional[str] = None


DaemonMessage = Union[
    DaemonConnected,
    Ping,
    SessionOutput,
    SessionEnded,
    PermissionPrompt,
    QuestionPrompt,
    ControlRequest,
    SessionDiff,
    SessionMetadata,
]


# Server -> daemon


class StartSession(ProtocolMessage):
    type: Literal["start_session"] = "start_session"
    session_id: str
    prompt: str
    cwd: str
    harness: Optional[str] = None
    model: Optional[str] = None
    permission_mode: Optional[Literal["relay", "auto-safe", "auto"]] = None
    resume_session_id: Optional[str] = None


class SendInput(ProtocolMessage):
    type: Literal["send_input"] = "send_input"
    session_id: str
    content: str
    user_id: Optional[str] = None


class EndSession(ProtocolMessage):
    type: Literal["end_session"] = "end_session"
    session_id: str


class InterruptSession(ProtocolMessage):
    type: Literal["interrupt_session"] = "interrupt_session"
    session_id: str


class PermissionResponse(ProtocolMessage):
    type: Literal["permission_response"] = "permission_response"
    session_id: str
    request_id: str
    allow: bool


class QuestionResponse(ProtocolMessage):
    type: Literal["question_response"] = "question_response"
    session_id: str
    tool_use_id: str
    answer: str


class ControlResponse(ProtocolMessage):
    """Answer to a relayed control request.

    Carries either the SDK-shaped ``response`` envelope
    (``{"subtype": "success", "response": {"behavior": ...}}`` or
    ``{"subtype": "error", "error": ...}``) or the shorthand ``allow`` flag.
    """

    type: Literal["control_response"] = "control_response"
    session_id: str
    request_id: str
    response: Optional[Dict[str, Any]] = None
    allow: Optional[bool] = None
    message: Optional[str] = None

    def permission_result(self) -> Dict[str, Any]:
        """The decision to hand to the harness, in its PermissionResult shape."""
        if self.response is not None:
            if self.response.get("subtype") == "error":
                return {
                    "behavior": "deny",
                    "message": self.response.get("error") or "Permission request failed",
                }
            inner = self.response.get("response")
            if isinstance(inner, dict) and inner.get("behavior") in ("allow", "deny"):
                return dict(inner)
            if self.response.get("behavior") in ("allow", "deny"):
                return dict(self.response)

        if self.allow:
            return {"behavior": "allow"}
        return {"behavior": "deny", "message": self.message or "Denied by remote user"}


ServerMessage = Annotated[
    Union[
        StartSession,
        SendInput,
        EndSession,
        InterruptSession,
        PermissionResponse,
        QuestionResponse,
        ControlResponse,
    ],
    Field(discriminator="type"),
]

_server_message_adapter: TypeAdapter = TypeAdapter(ServerMessage)
SERVER_MESSAGE_TYPES = frozenset(
    {
        "start_session",
        "send_input",
        "end_session",
        "interrupt_session",
        "permission_response",
        "question_response",
        "control_response",
    }
)


class ProtocolError(ValueError):
    """A known message type arrived with an invalid shape."""


def parse_server_message(data: Any) -> Optional[ProtocolMessage]:
    """Validate an incoming message.

    Returns None for anything that is not a message of a known type, and
    raises ProtocolError when a known type fails validation.
    """
    if not isinstance(data, dict):
        return None
    if data.get("type") not in SERVER_MESSAGE_TYPES:
        return None
    try:
        return _server_message_adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {data.get('type')} message: {e}") from e
