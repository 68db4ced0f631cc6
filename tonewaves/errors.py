# errors.py
#
# Exception types raised by the modem. Encoding problems are raised before any
# audio is produced; decoding problems surface through DecodeResult and the
# demodulator's FrameFailed events.


class ModemError(Exception):
    """Base class for every error raised by tonewaves."""


class UnknownProtocol(ModemError):
    """The protocol id or name is not in the protocol table."""


class InvalidParameters(ModemError):
    """A protocol override (volume, sample rate) is out of range."""


class PayloadTooLarge(ModemError):
    """The payload does not fit in a single transmission."""

    def __init__(self, length, limit):
        super().__init__(f"Payload is too long ({length} bytes). Maximum is {limit} bytes.")
        self.length = length
        self.limit = limit


class EmptyPayload(ModemError):
    """The payload, or the length declared by a received header, is zero."""


class FrameTooSmall(ModemError):
    """A frame has no room for redundancy, or fewer bytes than it declares."""


class MarkerNotFound(ModemError):
    """No start marker was found in the samples."""


class UncorrectableError(ModemError):
    """The frame holds more corrupted bytes than the code can repair."""


class Timeout(ModemError):
    """The frame did not complete within the maximum frame duration."""
