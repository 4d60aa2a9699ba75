"""Base transport abstraction for the realtime peer session.

Defines the interface the session controller and event protocol engine
rely on, so the WebRTC implementation can be swapped for a fake in tests.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable

from aiortc.mediastreams import MediaStreamTrack

from realtime_coach.credentials import Credential

MessageHandler = Callable[[str | bytes], None]
SignalHandler = Callable[[], None]


class PeerSession(ABC):
    """A negotiated media+data connection with the remote service.

    Carries exactly one data channel for the JSON event protocol and the
    inbound audio track of the remote voice.
    """

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Unique session identifier for logging and tracking."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the peer connection is still usable."""
        pass

    @property
    @abstractmethod
    def channel_open(self) -> bool:
        """Check if the data channel is open for sending."""
        pass

    @abstractmethod
    def set_handlers(
        self,
        on_open: SignalHandler,
        on_message: MessageHandler,
        on_close: SignalHandler,
    ) -> None:
        """Subscribe to data channel open/message and connection close.

        If the channel is already open, ``on_open`` is invoked immediately.
        """
        pass

    @abstractmethod
    def clear_handlers(self) -> None:
        """Unsubscribe all handlers registered with set_handlers()."""
        pass

    @abstractmethod
    def send(self, message: str) -> None:
        """Send one text message on the data channel.

        Raises:
            ProtocolSendFailed: If the channel is closed or absent
        """
        pass

    @abstractmethod
    def remote_audio(self) -> MediaStreamTrack | None:
        """Return a fresh subscription to the inbound audio track, if any."""
        pass

    @abstractmethod
    def close_channel(self) -> None:
        """Close the data channel synchronously. Safe to call repeatedly."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the data channel, the connection and local media.

        Safe to call repeatedly.
        """
        pass


class Negotiator(ABC):
    """Creates PeerSessions from a credential."""

    @abstractmethod
    async def negotiate(self, credential: Credential) -> PeerSession:
        """Establish a new peer session.

        Raises:
            MicrophoneDenied: If no local audio input is available
            NegotiationFailed: If the offer/answer exchange fails
        """
        pass
