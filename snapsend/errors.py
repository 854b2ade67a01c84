"""Error taxonomy shared by discovery, pairing and transfer code."""


class SnapSendError(Exception):
    """Base class for every error raised by snapsend."""


class ProtocolError(SnapSendError):
    """A malformed or unroutable message. Logged; the connection stays up."""


class UnreachableTarget(SnapSendError):
    """The target has no active pairing. Resolves to a queued transfer."""

    def __init__(self, handle: str):
        super().__init__(f"Target {handle} is not reachable")
        self.handle = handle


class ChannelLost(SnapSendError):
    """The channel closed underneath an in-flight operation."""

    def __init__(self, handle: str, reason: str = "channel closed"):
        super().__init__(f"Channel {handle} lost: {reason}")
        self.handle = handle
        self.reason = reason


class ChunkAssemblyTimeout(SnapSendError):
    """Not every chunk of a transfer arrived within the assembly window."""

    def __init__(self, transfer_id: str, received: int, expected: int):
        super().__init__(
            f"Transfer {transfer_id} timed out with {received}/{expected} chunks"
        )
        self.transfer_id = transfer_id
        self.received = received
        self.expected = expected
