"""WebRTC peer session with the remote realtime service.

Negotiates an aiortc RTCPeerConnection through a one-shot HTTP SDP
exchange: the local offer is POSTed with the session credential and the
response body is applied as the remote answer.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable

import aiohttp
from aiortc import RTCDataChannel, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamTrack

from realtime_coach.audio.devices import AudioCapture, AudioInput, RemoteAudioSink
from realtime_coach.config import RealtimeConfig
from realtime_coach.credentials import Credential
from realtime_coach.errors import NegotiationFailed, ProtocolSendFailed
from realtime_coach.transport.base import (
    MessageHandler,
    Negotiator,
    PeerSession,
    SignalHandler,
)

logger = logging.getLogger(__name__)


class AiortcPeerSession(PeerSession):
    """aiortc-based peer session.

    Owns the peer connection, its single data channel, its own microphone
    capture and its own playback sink for the remote voice.
    """

    def __init__(
        self,
        pc: RTCPeerConnection,
        channel: RTCDataChannel,
        capture: AudioCapture,
        sink: RemoteAudioSink,
        session_id: str | None = None,
    ) -> None:
        """Initialize peer session.

        Args:
            pc: Peer connection (remote description not yet required)
            channel: The event protocol data channel
            capture: Microphone capture feeding the outbound track
            sink: Playback sink for the remote voice
            session_id: Optional identifier (generated if omitted)
        """
        self._pc = pc
        self._channel = channel
        self._capture = capture
        self._sink = sink
        self._session_id = session_id or f"rt-{uuid.uuid4().hex[:12]}"
        self._relay = MediaRelay()
        self._remote_track: MediaStreamTrack | None = None
        self._closed = False

        self._on_open: SignalHandler | None = None
        self._on_message: MessageHandler | None = None
        self._on_close: SignalHandler | None = None

        channel.on("open", self._handle_open)
        channel.on("message", self._handle_message)
        pc.on("track", self._handle_track)
        pc.on("connectionstatechange", self._handle_connection_state)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_connected(self) -> bool:
        return not self._closed and self._pc.connectionState not in ("failed", "closed")

    @property
    def channel_open(self) -> bool:
        return not self._closed and self._channel.readyState == "open"

    def set_handlers(
        self,
        on_open: SignalHandler,
        on_message: MessageHandler,
        on_close: SignalHandler,
    ) -> None:
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        if self.channel_open:
            on_open()

    def clear_handlers(self) -> None:
        self._on_open = None
        self._on_message = None
        self._on_close = None

    def send(self, message: str) -> None:
        if not self.channel_open:
            raise ProtocolSendFailed(
                f"Data channel '{self._channel.label}' is not open "
                f"(state={self._channel.readyState})"
            )
        self._channel.send(message)

    def remote_audio(self) -> MediaStreamTrack | None:
        if self._remote_track is None:
            return None
        return self._relay.subscribe(self._remote_track)

    async def start_playback(self) -> None:
        """Route the remote voice to the playback sink."""
        track = self.remote_audio()
        if track is None:
            logger.warning("No remote audio track to play", extra={"session_id": self._session_id})
            return
        await self._sink.start(track)

    def close_channel(self) -> None:
        if self._channel.readyState not in ("closing", "closed"):
            self._channel.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.clear_handlers()
        self._channel.remove_all_listeners()

        self.close_channel()
        await self._sink.stop()
        await self._pc.close()
        self._capture.close()

        logger.info("Peer session closed", extra={"session_id": self._session_id})

    def _handle_open(self) -> None:
        logger.info(
            "Data channel open",
            extra={"session_id": self._session_id, "label": self._channel.label},
        )
        if self._on_open is not None:
            self._on_open()

    def _handle_message(self, message: str | bytes) -> None:
        if self._on_message is not None:
            self._on_message(message)

    def _handle_track(self, track: MediaStreamTrack) -> None:
        logger.info(
            "Remote track received",
            extra={"session_id": self._session_id, "kind": track.kind},
        )
        if track.kind == "audio":
            self._remote_track = track

    async def _handle_connection_state(self) -> None:
        state = self._pc.connectionState
        logger.info(
            "Peer connection state changed",
            extra={"session_id": self._session_id, "state": state},
        )
        if state in ("failed", "closed") and not self._closed and self._on_close is not None:
            self._on_close()


class AiortcNegotiator(Negotiator):
    """Offer/answer negotiation against the realtime HTTP endpoint.

    Every attempt opens its own microphone capture and playback sink, so an
    abandoned attempt never releases audio held by a later session.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        audio_input: AudioInput,
        sink_factory: Callable[[], RemoteAudioSink] | None = None,
    ) -> None:
        """Initialize negotiator.

        Args:
            config: Realtime endpoint configuration
            audio_input: Local audio input (a capture is opened per negotiation)
            sink_factory: Builds the playback sink for each session
                (discards the remote voice if omitted)
        """
        self.config = config
        self._audio_input = audio_input
        self._sink_factory = sink_factory or RemoteAudioSink

    async def negotiate(self, credential: Credential) -> AiortcPeerSession:
        # Fails fast with MicrophoneDenied before any network call
        capture = self._audio_input.open()
        sink = self._sink_factory()

        pc = RTCPeerConnection()
        try:
            pc.addTrack(capture.track)
            channel = pc.createDataChannel(self.config.data_channel_label)
            session = AiortcPeerSession(pc, channel, capture, sink)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)

            answer_sdp = await self.exchange_sdp(pc.localDescription.sdp, credential)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
            await session.start_playback()

        except NegotiationFailed:
            await _abort(pc, capture, sink)
            raise
        except (ValueError, RuntimeError, OSError) as e:
            await _abort(pc, capture, sink)
            raise NegotiationFailed(f"Connection setup failed: {type(e).__name__}: {e}") from e
        except asyncio.CancelledError:
            await _abort(pc, capture, sink)
            raise

        logger.info(
            "Peer session negotiated",
            extra={"session_id": session.session_id, "model": self.config.model},
        )
        return session

    async def exchange_sdp(self, offer_sdp: str, credential: Credential) -> str:
        """POST the local offer and return the remote answer SDP.

        Raises:
            NegotiationFailed: On transport errors or a non-success status
        """
        headers = {
            "Authorization": credential.authorization_header,
            "Content-Type": "application/sdp",
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_s)

        logger.debug(
            "Sending SDP offer",
            extra={"url": self.config.base_url, "model": self.config.model, "size": len(offer_sdp)},
        )

        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.post(
                    self.config.base_url,
                    params={"model": self.config.model},
                    data=offer_sdp.encode("utf-8"),
                    headers=headers,
                ) as resp:
                    body = await resp.text()
                    if resp.status < 200 or resp.status >= 300:
                        logger.error(
                            "SDP exchange rejected",
                            extra={"status": resp.status, "body": body[:200]},
                        )
                        raise NegotiationFailed(f"SDP exchange failed: HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NegotiationFailed(f"SDP exchange failed: {type(e).__name__}: {e}") from e

        if not body.strip():
            raise NegotiationFailed("SDP exchange returned an empty answer")
        return body


async def _abort(pc: RTCPeerConnection, capture: AudioCapture, sink: RemoteAudioSink) -> None:
    """Release resources of a failed negotiation."""
    await sink.stop()
    await pc.close()
    capture.close()
