"""Error taxonomy for the realtime coaching client.

Fatal errors abort a session start attempt and are surfaced to the user:
- CredentialUnavailable: token endpoint unreachable or malformed response
- MicrophoneDenied: no local audio input could be opened
- NegotiationFailed: offer/answer exchange or connection setup failed

Recoverable errors are logged and dropped by the component that hits them:
- ProtocolSendFailed: send attempted on a closed or absent data channel
- MalformedEvent: inbound message is not valid JSON or lacks expected fields
"""


class RealtimeCoachError(Exception):
    """Base class for all realtime coach errors."""

    code = "INTERNAL_ERROR"


class CredentialUnavailable(RealtimeCoachError):
    """Session credential could not be obtained from the token endpoint."""

    code = "CREDENTIAL_UNAVAILABLE"


class MicrophoneDenied(RealtimeCoachError):
    """Local microphone could not be opened."""

    code = "MICROPHONE_DENIED"


class NegotiationFailed(RealtimeCoachError):
    """Peer connection offer/answer exchange failed."""

    code = "NEGOTIATION_FAILED"


class ProtocolSendFailed(RealtimeCoachError):
    """Outbound protocol message could not be sent."""

    code = "PROTOCOL_SEND_FAILED"


class MalformedEvent(RealtimeCoachError):
    """Inbound protocol message could not be interpreted."""

    code = "MALFORMED_EVENT"


class SessionAlreadyActive(RealtimeCoachError):
    """A session is already connecting or connected."""

    code = "SESSION_ALREADY_ACTIVE"


FATAL_START_ERRORS = (CredentialUnavailable, MicrophoneDenied, NegotiationFailed)
