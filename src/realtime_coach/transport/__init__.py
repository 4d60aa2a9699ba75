"""Transport layer for the realtime peer session.

Provides the PeerSession/Negotiator abstraction and its aiortc (WebRTC)
implementation.
"""

from realtime_coach.transport.base import Negotiator, PeerSession
from realtime_coach.transport.peer import AiortcNegotiator, AiortcPeerSession

__all__ = [
    "Negotiator",
    "PeerSession",
    "AiortcNegotiator",
    "AiortcPeerSession",
]
