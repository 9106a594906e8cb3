"""Message bus payload definitions.

Defines Pydantic models for the JSON payloads exchanged over NATS and the
plain-text replies sent back to command requesters. Replies are raw text
bytes, not JSON envelopes.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

NOT_LOGGED_IN_REPLY = "You are not logged in, use **/login** to connect your spotify account!"
NOT_IN_VOICE_REPLY = "You are not in a voice channel!"
ALREADY_RUNNING_REPLY = "There's already a listening party!"
STARTING_REPLY = "Starting up! I will join your voice channel once I'm ready."
STOP_REPLY = "Dipping!"


class StartRequest(BaseModel):
    """Bot frontend → Operator: request a worker for a guild."""

    guild_id: str = Field(..., min_length=1, description="Guild (group) identifier")
    user_id: str = Field(..., min_length=1, description="Requesting user identifier")


class ConnectionInfo(BaseModel):
    """Voice session credentials a worker needs to attach to a media server.

    Ids are integers on the wire; the worker parses them as 64-bit snowflakes.
    """

    user_id: int = Field(..., description="Bot user id")
    endpoint: str | None = Field(..., description="Voice media server endpoint")
    guild_id: int = Field(..., description="Guild id")
    token: str = Field(..., description="Voice server token")
    session_id: str = Field(..., description="Gateway session id captured on Ready")


class JoinValue(BaseModel):
    """Value of a Join envelope."""

    info: ConnectionInfo


class Envelope(BaseModel):
    """Operator → Worker: message published on the worker's guild topic."""

    type: Literal["Join", "Stop"]
    value: dict[str, Any] = Field(default_factory=dict)

    def encode(self) -> bytes:
        """Serialize to JSON bytes for publishing."""
        return self.model_dump_json().encode("utf-8")


def join_envelope(info: ConnectionInfo) -> Envelope:
    """Build the Join envelope carrying fresh connection info."""
    return Envelope(type="Join", value=JoinValue(info=info).model_dump())


def stop_envelope() -> Envelope:
    """Build the Stop envelope (empty value)."""
    return Envelope(type="Stop", value={})
