"""Session lifecycle controller.

Owns the single active realtime session: credential exchange, peer
negotiation, the event protocol engine, the elapsed-time ticker and the
silence-triggered terminator. Exposes start(), stop(), status() and
subscribe(); everything else is internal substate.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from realtime_coach.audio.analyser import AudioLevelPump, FrequencyLevelAnalyser
from realtime_coach.cache import ToolResultCache
from realtime_coach.config import CoachConfig
from realtime_coach.credentials import Credential, CredentialClient
from realtime_coach.engine import EngineState, EventProtocolEngine
from realtime_coach.errors import SessionAlreadyActive
from realtime_coach.protocol import ServerEvent
from realtime_coach.silence import LevelSource, SilenceTerminator
from realtime_coach.transport.base import Negotiator, PeerSession
from realtime_coach.utils.logging import log_event

logger = logging.getLogger(__name__)

TICK_INTERVAL_S = 1.0


class ConnectionStatus(Enum):
    """Session connection states.

    State Transitions:
    - DISCONNECTED → CONNECTING (on start)
    - CONNECTING → CONNECTED (on tool registration sent)
    - CONNECTING → DISCONNECTED (on start failure or stop)
    - CONNECTED → DISCONNECTED (on stop, silence or connection loss)
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


VALID_TRANSITIONS: dict[ConnectionStatus, set[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: {ConnectionStatus.CONNECTING},
    ConnectionStatus.CONNECTING: {ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED},
    ConnectionStatus.CONNECTED: {ConnectionStatus.DISCONNECTED},
}


@dataclass
class ControllerEvent:
    """Notification delivered to subscribers.

    Kinds:
    - status: connection status changed
    - protocol: inbound protocol event received (payload: ServerEvent)
    - tick: elapsed time advanced (payload: elapsed seconds)
    - error: start attempt failed (error set)
    - ended: call ended (payload: {"reason": ...})
    """

    kind: str
    status: ConnectionStatus
    payload: Any = None
    error: Exception | None = None


Subscriber = Callable[[ControllerEvent], None]
LevelSourceFactory = Callable[[PeerSession], LevelSource | None]


@dataclass
class Session:
    """Per-call substate owned by the controller."""

    session_id: str = field(default_factory=lambda: f"call-{uuid.uuid4().hex[:8]}")
    credential: Credential | None = field(default=None, repr=False)
    peer: PeerSession | None = None
    engine: EventProtocolEngine | None = None
    ticker: asyncio.Task[None] | None = None
    pump: AudioLevelPump | None = None
    elapsed_seconds: int = 0
    started_ts: float = field(default_factory=time.monotonic)
    alive: bool = True


class SessionController:
    """Coordinates one realtime coaching call at a time.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.

    Example:
        ```python
        controller = SessionController(CoachConfig())
        controller.subscribe(lambda ev: print(ev.kind, ev.status.value))
        await controller.start()
        ...
        await controller.stop()
        ```
    """

    def __init__(
        self,
        config: CoachConfig,
        credential_client: CredentialClient | None = None,
        negotiator: Negotiator | None = None,
        cache: ToolResultCache | None = None,
        terminator: SilenceTerminator | None = None,
        level_source_factory: LevelSourceFactory | None = None,
    ) -> None:
        """Initialize controller.

        Args:
            config: Client configuration
            credential_client: Token endpoint client (built from config if omitted)
            negotiator: Peer negotiator (aiortc with the configured microphone if omitted)
            cache: Tool result cache (built from config if omitted)
            terminator: Silence terminator (built from config if omitted)
            level_source_factory: Builds the inbound audio level source for a
                peer session (analyser on the remote track if omitted)
        """
        self.config = config
        self._credentials = credential_client or CredentialClient(config.token)
        self._negotiator = negotiator or _default_negotiator(config)
        self.cache = cache or ToolResultCache(config.cache.directory)
        self._terminator = terminator or SilenceTerminator(config.silence)
        self._level_source_factory = level_source_factory

        self._status = ConnectionStatus.DISCONNECTED
        self._session: Session | None = None
        self._subscribers: list[Subscriber] = []
        self._background: set[asyncio.Task[None]] = set()
        self.last_error: Exception | None = None

    def status(self) -> ConnectionStatus:
        """Current connection status."""
        return self._status

    def subscribe(self, on_event: Subscriber) -> Callable[[], None]:
        """Register a subscriber.

        Returns:
            Callable that removes the subscriber
        """
        self._subscribers.append(on_event)

        def unsubscribe() -> None:
            if on_event in self._subscribers:
                self._subscribers.remove(on_event)

        return unsubscribe

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def elapsed_seconds(self) -> int:
        return self._session.elapsed_seconds if self._session is not None else 0

    @property
    def events(self) -> list[ServerEvent]:
        """Received protocol events of the live session, most recent first."""
        if self._session is None or self._session.engine is None:
            return []
        return self._session.engine.events

    @property
    def engine_state(self) -> EngineState | None:
        if self._session is None or self._session.engine is None:
            return None
        return self._session.engine.state

    async def start(self) -> None:
        """Start a new call.

        Raises:
            SessionAlreadyActive: If a call is connecting or connected
            CredentialUnavailable: If the credential exchange fails
            MicrophoneDenied: If the microphone cannot be opened
            NegotiationFailed: If the peer connection cannot be negotiated
        """
        if self._status is not ConnectionStatus.DISCONNECTED:
            raise SessionAlreadyActive(f"Cannot start: session is {self._status.value}")

        session = Session()
        self._session = session
        self.last_error = None
        self._set_status(ConnectionStatus.CONNECTING)
        logger.info("Starting session", extra={"session_id": session.session_id})

        try:
            session.credential = await self._credentials.acquire_credential()
            if not session.alive:
                logger.info("Session stopped during credential exchange")
                return

            peer = await self._negotiator.negotiate(session.credential)
            if not session.alive:
                logger.info("Session stopped during negotiation, discarding connection")
                await peer.close()
                return
        except Exception as e:
            if session.alive:
                await self._abort_start(session, e)
            raise
        except asyncio.CancelledError:
            if session.alive:
                await self.stop()
            raise

        session.peer = peer
        session.engine = EventProtocolEngine(
            send=peer.send,
            cache=self.cache,
            config=self.config.choreography,
            on_registered=lambda: self._on_registered(session),
            on_final_step=lambda: self._on_final_step(session),
        )
        session.ticker = asyncio.create_task(self._tick(session), name="session-ticker")
        peer.set_handlers(
            on_open=lambda: self._on_channel_open(session),
            on_message=lambda data: self._on_channel_message(session, data),
            on_close=lambda: self._end_call(session, "connection_lost"),
        )

        logger.info(
            "Session negotiated, awaiting tool registration",
            extra={"session_id": session.session_id, "peer_session_id": peer.session_id},
        )

    async def stop(self) -> None:
        """Stop the current call. Safe in any state; no-op when idle.

        Timers and listeners are cancelled and the data channel closed
        before the first suspension point.
        """
        await self._shutdown(reason=None)

    async def _shutdown(self, reason: str | None) -> None:
        session, self._session = self._session, None
        if session is None:
            self._set_status(ConnectionStatus.DISCONNECTED)
            return

        session.alive = False
        if session.engine is not None:
            session.engine.close()
        self._terminator.disarm()
        if session.pump is not None:
            session.pump.stop()
        if session.ticker is not None:
            session.ticker.cancel()

        peer = session.peer
        if peer is not None:
            peer.clear_handlers()
            peer.close_channel()

        session.credential = None
        self._set_status(ConnectionStatus.DISCONNECTED)

        summary = self._summary(session)
        logger.info("Session stopped", extra=summary)
        if reason is not None:
            log_event("call_ended", {**summary, "reason": reason})
            self._publish(ControllerEvent("ended", self._status, payload={"reason": reason}))

        if peer is not None:
            await peer.close()
        await self.cache.flush()

    def _set_status(self, new_status: ConnectionStatus) -> None:
        if new_status is self._status:
            return
        if new_status not in VALID_TRANSITIONS[self._status]:
            raise ValueError(
                f"Invalid status transition: {self._status.value} → {new_status.value}"
            )

        old_status = self._status
        self._status = new_status
        logger.info(
            "Session status transition",
            extra={"from_state": old_status.value, "to_state": new_status.value},
        )
        self._publish(ControllerEvent("status", new_status))

    def _publish(self, event: ControllerEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Subscriber failed", extra={"kind": event.kind})

    async def _abort_start(self, session: Session, error: Exception) -> None:
        logger.error(
            "Failed to start session",
            extra={"session_id": session.session_id, "error": f"{type(error).__name__}: {error}"},
        )
        self.last_error = error
        await self.stop()
        self._publish(ControllerEvent("error", self._status, error=error))

    def _on_channel_open(self, session: Session) -> None:
        if not session.alive or session.engine is None:
            return
        session.engine.clear_events()
        # Connected only after tool registration, not on channel open
        logger.info("Data channel open, waiting for session.created")

    def _on_channel_message(self, session: Session, data: str | bytes) -> None:
        if not session.alive or session.engine is None:
            return
        event = session.engine.handle_message(data)
        if event is not None:
            self._publish(ControllerEvent("protocol", self._status, payload=event))

    def _on_registered(self, session: Session) -> None:
        if session.alive and self._status is ConnectionStatus.CONNECTING:
            self._set_status(ConnectionStatus.CONNECTED)

    def _on_final_step(self, session: Session) -> None:
        if not session.alive or session.peer is None:
            return

        level_source = self._build_level_source(session)
        if level_source is None:
            logger.warning(
                "No inbound audio to monitor, treating as silent",
                extra={"session_id": session.session_id},
            )
            level_source = _silent

        logger.info("Setting up audio monitoring", extra={"session_id": session.session_id})
        self._terminator.arm(level_source, lambda: self._end_call(session, "silence"))

    def _build_level_source(self, session: Session) -> LevelSource | None:
        assert session.peer is not None
        if self._level_source_factory is not None:
            return self._level_source_factory(session.peer)

        track = session.peer.remote_audio()
        if track is None:
            return None
        analyser = FrequencyLevelAnalyser(fft_size=self.config.silence.fft_size)
        session.pump = AudioLevelPump(track, analyser)
        session.pump.start()
        return analyser.average_level

    def _end_call(self, session: Session, reason: str) -> None:
        if not session.alive:
            return
        logger.info("Ending call", extra={"session_id": session.session_id, "reason": reason})

        async def end() -> None:
            # Another stop/start may have replaced the session meanwhile
            if self._session is session:
                await self._shutdown(reason)

        task = asyncio.get_running_loop().create_task(end(), name="session-end")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _tick(self, session: Session) -> None:
        try:
            while session.alive:
                await asyncio.sleep(TICK_INTERVAL_S)
                if not session.alive:
                    break
                session.elapsed_seconds += 1
                self._publish(ControllerEvent("tick", self._status, payload=session.elapsed_seconds))
        except asyncio.CancelledError:
            pass

    def _summary(self, session: Session) -> dict[str, Any]:
        return {
            "session_id": session.session_id,
            "elapsed_seconds": session.elapsed_seconds,
            "engine_state": session.engine.state.value if session.engine is not None else None,
            "events_received": session.engine.event_count if session.engine is not None else 0,
            "session_duration_s": time.monotonic() - session.started_ts,
        }


def _silent() -> float:
    return 0.0


def _default_negotiator(config: CoachConfig) -> Negotiator:
    from realtime_coach.audio.devices import Microphone, RemoteAudioSink
    from realtime_coach.transport.peer import AiortcNegotiator

    return AiortcNegotiator(
        config.realtime,
        Microphone.from_config(config.audio),
        sink_factory=lambda: RemoteAudioSink.from_config(config.audio),
    )
