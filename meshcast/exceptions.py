"""Exception types raised by meshcast."""


class MeshcastError(Exception):
    """Base class for all meshcast errors."""

    pass


class MalformedMessageError(MeshcastError):
    """Raised when a signaling message is missing fields or has an unknown type.

    The orchestrator drops such messages; they are never fatal.
    """

    pass


class NegotiationError(MeshcastError):
    """Raised when an offer/answer step is rejected by the transport.

    Attributes:
        key: Registry key of the connection that failed.
        step: Name of the handshake step that failed (e.g. "setRemoteDescription").
    """

    def __init__(self, key, step: str, message: str):
        self.key = key
        self.step = step
        super().__init__(f"{step} failed for {key}: {message}")


class MediaAcquisitionError(MeshcastError):
    """Raised when a camera, microphone or screen capture cannot be opened."""

    pass
