"""Event protocol engine: the tool-call choreography state machine.

Consumes inbound data-channel events, registers the plan tools once the
remote session exists, and walks the review → adjust → confirm sequence,
caching each step's result and scheduling the follow-up instruction.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from realtime_coach.cache import ToolResultCache
from realtime_coach.config import ChoreographyConfig
from realtime_coach.errors import MalformedEvent, ProtocolSendFailed
from realtime_coach.protocol import (
    RESPONSE_DONE,
    SESSION_CREATED,
    ClientMessage,
    FunctionCall,
    ResponseCreateMessage,
    ServerEvent,
)
from realtime_coach.tools import CHOREOGRAPHY, ToolStep, tool_registration

logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Choreography state machine states.

    State Transitions:
    - IDLE → AWAITING_REVIEW (on session.created, tools registered)
    - AWAITING_REVIEW → AWAITING_ADJUSTMENT (on review_current_weekly_plan)
    - AWAITING_ADJUSTMENT → AWAITING_CONFIRMATION (on adjust_exercise_plan)
    - AWAITING_CONFIRMATION → CLOSING (on confirm_final_plan)

    CLOSING is terminal; the session ends when silence is detected or
    the user stops the call.
    """

    IDLE = "idle"
    AWAITING_REVIEW = "awaiting_review"
    AWAITING_ADJUSTMENT = "awaiting_adjustment"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CLOSING = "closing"


# Valid state transitions
VALID_TRANSITIONS: dict[EngineState, set[EngineState]] = {
    EngineState.IDLE: {EngineState.AWAITING_REVIEW},
    EngineState.AWAITING_REVIEW: {EngineState.AWAITING_ADJUSTMENT},
    EngineState.AWAITING_ADJUSTMENT: {EngineState.AWAITING_CONFIRMATION},
    EngineState.AWAITING_CONFIRMATION: {EngineState.CLOSING},
    EngineState.CLOSING: set(),  # Terminal state
}

# Step each awaiting state is waiting for, and where completing it leads
STEP_TRANSITIONS: dict[EngineState, tuple[ToolStep, EngineState]] = {
    EngineState.AWAITING_REVIEW: (CHOREOGRAPHY[0], EngineState.AWAITING_ADJUSTMENT),
    EngineState.AWAITING_ADJUSTMENT: (CHOREOGRAPHY[1], EngineState.AWAITING_CONFIRMATION),
    EngineState.AWAITING_CONFIRMATION: (CHOREOGRAPHY[2], EngineState.CLOSING),
}

_STATE_ORDER = list(EngineState)
_STEP_INDEX = {step.function_name: i for i, step in enumerate(CHOREOGRAPHY)}


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision (``...Z``)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class EventProtocolEngine:
    """Drives the three-step tool choreography from inbound events.

    Transitions depend only on event type and embedded function name.
    For ``response.done`` only that event's output items are scanned, so
    unrelated intermediate events never move the state. Function calls for
    an already-completed step are ignored, as are calls for a step that
    has not been reached yet.

    Thread-safety: This class is NOT thread-safe. Use from the event loop.
    """

    def __init__(
        self,
        send: Callable[[str], None],
        cache: ToolResultCache,
        config: ChoreographyConfig | None = None,
        on_registered: Callable[[], None] | None = None,
        on_final_step: Callable[[], None] | None = None,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        """Initialize engine.

        Args:
            send: Sends one text message on the data channel; raises
                ProtocolSendFailed when the channel is not open
            cache: Tool result cache
            config: Follow-up delay configuration
            on_registered: Called once the tool registration has been sent
            on_final_step: Called after the farewell instruction is sent
            clock: ISO-8601 timestamp source for cached results
        """
        self._send = send
        self._cache = cache
        self._config = config or ChoreographyConfig()
        self._on_registered = on_registered
        self._on_final_step = on_final_step
        self._clock = clock

        self.state = EngineState.IDLE
        self._events: list[ServerEvent] = []
        self._handles: set[asyncio.TimerHandle] = set()
        self._closed = False
        self.sent_messages = 0

    @property
    def events(self) -> list[ServerEvent]:
        """Received events, most recent first."""
        return list(reversed(self._events))

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def pending_follow_ups(self) -> int:
        """Number of scheduled follow-up sends not yet fired."""
        return len(self._handles)

    @property
    def closed(self) -> bool:
        return self._closed

    def clear_events(self) -> None:
        """Drop the received event log (state is kept)."""
        self._events.clear()

    def handle_message(self, data: str | bytes) -> ServerEvent | None:
        """Decode and process one raw data-channel message.

        Malformed messages are logged and dropped.

        Returns:
            The decoded event, or None if it was malformed or the engine is closed
        """
        if self._closed:
            return None

        try:
            event = ServerEvent.from_json(data)
        except MalformedEvent as e:
            logger.warning("Dropping malformed event", extra={"error": str(e)})
            return None

        self.handle_event(event)
        return event

    def handle_event(self, event: ServerEvent) -> None:
        """Append an event to the log and apply it to the state machine."""
        if self._closed:
            return

        self._events.append(event)

        if event.type == SESSION_CREATED:
            self._handle_session_created()
        elif event.type == RESPONSE_DONE:
            self._handle_response_done(event)

    def close(self) -> None:
        """Cancel scheduled follow-ups and ignore further events."""
        self._closed = True
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    def transition_state(self, new_state: EngineState) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.info(
            "Choreography state transition",
            extra={"from_state": old_state.value, "to_state": new_state.value},
        )

    def _handle_session_created(self) -> None:
        if self.state is not EngineState.IDLE:
            logger.debug("Ignoring repeated session.created", extra={"state": self.state.value})
            return

        if not self._send_message(tool_registration()):
            return

        self.transition_state(EngineState.AWAITING_REVIEW)
        if self._on_registered is not None:
            self._on_registered()

    def _handle_response_done(self, event: ServerEvent) -> None:
        try:
            calls = event.function_calls()
        except MalformedEvent as e:
            logger.warning("Dropping malformed response.done", extra={"error": str(e)})
            return

        for call in calls:
            self._handle_function_call(call)

    def _handle_function_call(self, call: FunctionCall) -> None:
        expected = STEP_TRANSITIONS.get(self.state)
        if expected is None or call.name != expected[0].function_name:
            self._log_unexpected_call(call)
            return

        step, next_state = expected
        try:
            arguments = call.parsed_arguments()
        except MalformedEvent as e:
            logger.warning(
                "Dropping function call with malformed arguments",
                extra={"function": call.name, "error": str(e)},
            )
            return

        record = step.cached_record(arguments, self._clock())
        self._cache.record(step.cache_key, record)
        logger.info(
            "Tool step completed",
            extra={"function": call.name, "cache_key": step.cache_key, "result": record},
        )

        self.transition_state(next_state)
        after = self._on_final_step if next_state is EngineState.CLOSING else None
        self._schedule_follow_up(step, after)

    def _log_unexpected_call(self, call: FunctionCall) -> None:
        index = _STEP_INDEX.get(call.name)
        if index is None:
            logger.warning("Ignoring unknown function call", extra={"function": call.name})
            return

        # Awaiting state for step i sits at position i + 1 in the state order
        current = _STATE_ORDER.index(self.state)
        if index + 1 < current:
            logger.info(
                "Ignoring duplicate function call for completed step",
                extra={"function": call.name, "state": self.state.value},
            )
        else:
            logger.warning(
                "Ignoring out-of-order function call",
                extra={"function": call.name, "state": self.state.value},
            )

    def _schedule_follow_up(self, step: ToolStep, after: Callable[[], None] | None) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._handles.discard(handle)  # type: ignore[arg-type]
            if self._closed:
                return
            self._send_message(ResponseCreateMessage.with_instructions(step.follow_up))
            if after is not None:
                after()

        handle = loop.call_later(self._config.follow_up_delay_s, fire)
        self._handles.add(handle)

    def _send_message(self, message: ClientMessage) -> bool:
        """Send an outbound message; failures are logged and dropped."""
        try:
            self._send(message.model_dump_json())
        except ProtocolSendFailed as e:
            logger.warning(
                "Dropping outbound message",
                extra={"type": message.type, "state": self.state.value, "error": str(e)},
            )
            return False

        self.sent_messages += 1
        logger.debug("Sent protocol message", extra={"type": message.type})
        return True
