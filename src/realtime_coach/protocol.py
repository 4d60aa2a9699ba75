"""Data-channel message protocol definitions.

Defines Pydantic models for the JSON event protocol exchanged with the
remote realtime service over the session data channel.
"""

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from realtime_coach.errors import MalformedEvent

SESSION_CREATED = "session.created"
RESPONSE_DONE = "response.done"


class ToolDefinition(BaseModel):
    """Declared remote-invocable function."""

    model_config = ConfigDict(frozen=True)

    type: Literal["function"] = "function"
    name: str = Field(..., min_length=1, description="Function name")
    description: str = Field(..., description="When the remote model should call it")
    parameters: dict[str, Any] = Field(..., description="JSON schema of the arguments")


class SessionTools(BaseModel):
    """Session section of a tool registration message."""

    tools: list[ToolDefinition]
    tool_choice: Literal["auto", "none", "required"] = "auto"


class SessionUpdateMessage(BaseModel):
    """Client → Server: tool registration.

    Sent exactly once per session, after ``session.created``.
    """

    type: Literal["session.update"] = "session.update"
    session: SessionTools


class ResponseInstructions(BaseModel):
    """Response section of a follow-up instruction."""

    instructions: str = Field(..., min_length=1)


class ResponseCreateMessage(BaseModel):
    """Client → Server: follow-up instruction for the next model response."""

    type: Literal["response.create"] = "response.create"
    response: ResponseInstructions

    @classmethod
    def with_instructions(cls, instructions: str) -> "ResponseCreateMessage":
        return cls(response=ResponseInstructions(instructions=instructions))


class ServerEvent(BaseModel):
    """Server → Client: one inbound protocol event.

    Only ``type`` is interpreted generically; the full decoded object is
    kept in ``payload`` for type-specific handling and inspection.
    """

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_json(cls, data: str | bytes) -> "ServerEvent":
        """Decode a raw data-channel message.

        Args:
            data: Raw message text (or UTF-8 bytes)

        Returns:
            Decoded event

        Raises:
            MalformedEvent: If the message is not a JSON object with a string type
        """
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            decoded = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEvent(f"Event is not valid JSON: {e}") from e

        if not isinstance(decoded, dict):
            raise MalformedEvent(f"Event must be a JSON object, got {type(decoded).__name__}")

        event_type = decoded.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEvent("Event is missing a 'type' field")

        return cls(type=event_type, payload=decoded)

    def function_calls(self) -> list["FunctionCall"]:
        """Extract function call outputs from a ``response.done`` event.

        Non-function items are skipped. Returns an empty list for other
        event types or responses without output.

        Raises:
            MalformedEvent: If the response or a function call item is malformed
        """
        if self.type != RESPONSE_DONE:
            return []

        response = self.payload.get("response")
        if not isinstance(response, dict):
            raise MalformedEvent("response.done event is missing 'response'")

        output = response.get("output") or []
        if not isinstance(output, list):
            raise MalformedEvent("response.output must be a list")

        calls: list[FunctionCall] = []
        for item in output:
            if not isinstance(item, dict) or item.get("type") != "function_call":
                continue
            try:
                calls.append(FunctionCall.model_validate(item))
            except ValidationError as e:
                raise MalformedEvent(f"Invalid function_call item: {e}") from e
        return calls


class FunctionCall(BaseModel):
    """Function call output item emitted by the remote model."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["function_call"] = "function_call"
    name: str = Field(..., min_length=1)
    arguments: str = Field(default="{}", description="JSON-encoded arguments")
    call_id: str | None = None

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the JSON-encoded arguments.

        Raises:
            MalformedEvent: If arguments are not a JSON object
        """
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"Arguments of {self.name} are not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedEvent(f"Arguments of {self.name} must be a JSON object")
        return parsed


# Union type for all client → server messages
ClientMessage = SessionUpdateMessage | ResponseCreateMessage
