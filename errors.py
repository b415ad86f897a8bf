class RegistryUnavailable(Exception):
    """The connection registry could not be read or written."""


class PushTransportError(Exception):
    """Base class for faults reported by a push transport."""

    def __init__(self, connection_id: str, message: str = ""):
        self.connection_id = connection_id
        super().__init__(message or connection_id)


class RecipientGone(PushTransportError):
    """The addressed connection no longer exists at the transport layer."""


class TransientDeliveryFault(PushTransportError):
    """Any other delivery failure: timeout, throttling, service fault."""


class MalformedRequest(ValueError):
    """An inbound event body could not be parsed."""
