"""Error taxonomy for the media bridge."""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """A required credential or identifier is missing; the upgrade is rejected."""


class CredentialExchangeError(BridgeError):
    """The signed connection URL could not be obtained."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecodeError(BridgeError):
    """A single audio payload or event could not be decoded."""


class TransportError(BridgeError):
    """One of the legs errored or dropped."""


class ProtocolAnomaly(BridgeError):
    """An event of an unrecognized type was received."""
