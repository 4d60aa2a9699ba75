"""Event protocol and session testing utilities.

Provides utilities for testing the choreography engine and session controller:
- Builders for inbound protocol messages (session.created, response.done)
- Recording data-channel sender with injectable failures
- Fake peer session and negotiator standing in for aiortc
- Manual millisecond clock for silence detection
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

from realtime_coach.credentials import Credential
from realtime_coach.errors import ProtocolSendFailed
from realtime_coach.transport.base import (
    MessageHandler,
    Negotiator,
    PeerSession,
    SignalHandler,
)

# ============================================================================
# Inbound Message Builders
# ============================================================================


def session_created() -> str:
    """Raw ``session.created`` message."""
    return json.dumps({"type": "session.created", "session": {"id": "sess_001"}})


def function_call_item(
    name: str, arguments: dict[str, Any] | str, call_id: str = "call_001"
) -> dict[str, Any]:
    """Function call output item; dict arguments are JSON-encoded."""
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    return {"type": "function_call", "name": name, "arguments": arguments, "call_id": call_id}


def message_item(text: str = "Hello") -> dict[str, Any]:
    """Plain assistant message output item."""
    return {"type": "message", "role": "assistant", "content": [{"type": "text", "text": text}]}


def response_done(*items: dict[str, Any]) -> str:
    """Raw ``response.done`` message carrying the given output items."""
    return json.dumps({"type": "response.done", "response": {"output": list(items)}})


def response_done_call(name: str, arguments: dict[str, Any] | str) -> str:
    """Raw ``response.done`` message with one function call."""
    return response_done(function_call_item(name, arguments))


# ============================================================================
# Data Channel Fakes
# ============================================================================


@dataclass
class RecordingSender:
    """Data-channel send callable recording decoded outbound messages."""

    messages: list[dict[str, Any]] = field(default_factory=list)
    fail: bool = False

    def __call__(self, message: str) -> None:
        if self.fail:
            raise ProtocolSendFailed("Data channel is not open")
        self.messages.append(json.loads(message))

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == message_type]

    @property
    def instructions(self) -> list[str]:
        """Instructions of all sent ``response.create`` messages, in order."""
        return [m["response"]["instructions"] for m in self.of_type("response.create")]


class FakePeerSession(PeerSession):
    """In-memory peer session for testing."""

    def __init__(self, session_id: str = "peer-001", channel_open: bool = False) -> None:
        self._session_id = session_id
        self._channel_open = channel_open
        self._closed = False
        self.sender = RecordingSender()
        self.close_calls = 0
        self.channel_close_calls = 0
        self.on_open: SignalHandler | None = None
        self.on_message: MessageHandler | None = None
        self.on_close: SignalHandler | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_connected(self) -> bool:
        return not self._closed

    @property
    def channel_open(self) -> bool:
        return self._channel_open and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_handlers(self) -> bool:
        return self.on_message is not None

    def set_handlers(
        self,
        on_open: SignalHandler,
        on_message: MessageHandler,
        on_close: SignalHandler,
    ) -> None:
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        if self.channel_open:
            on_open()

    def clear_handlers(self) -> None:
        self.on_open = None
        self.on_message = None
        self.on_close = None

    def send(self, message: str) -> None:
        if not self.channel_open:
            raise ProtocolSendFailed("Data channel is not open")
        self.sender(message)

    def remote_audio(self) -> None:
        return None

    def close_channel(self) -> None:
        self.channel_close_calls += 1
        self._channel_open = False

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True
        self._channel_open = False

    # Test drivers

    def open_channel(self) -> None:
        self._channel_open = True
        if self.on_open is not None:
            self.on_open()

    def deliver(self, data: str | bytes) -> None:
        if self.on_message is not None:
            self.on_message(data)

    def drop_connection(self) -> None:
        if self.on_close is not None:
            self.on_close()


class FakeNegotiator(Negotiator):
    """Negotiator returning a prepared peer, optionally gated or failing."""

    def __init__(
        self,
        peer: PeerSession | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.peer = peer or FakePeerSession()
        self.error = error
        self.gate = gate
        self.credentials: list[Credential] = []

    @property
    def calls(self) -> int:
        return len(self.credentials)

    async def negotiate(self, credential: Credential) -> PeerSession:
        self.credentials.append(credential)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.peer


# ============================================================================
# Timing
# ============================================================================


@dataclass
class ManualClock:
    """Millisecond clock advanced explicitly by the test."""

    now_ms: float = 0.0

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms
