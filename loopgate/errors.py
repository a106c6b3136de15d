"""
Error taxonomy for loopgate.

Filesystem and crypto errors propagate to the caller of the triggering
operation; none of them are retried.
"""


class LoopgateError(Exception):
    """Base class for every error raised by loopgate components."""


class HostsFileError(LoopgateError, OSError):
    """The hosts file could not be read or written."""


class NotFoundError(LoopgateError):
    """A domain, route or certificate does not exist."""


class ValidationError(LoopgateError, ValueError):
    """A domain, target or configuration value is malformed."""


class CryptoError(LoopgateError):
    """Key generation, request building, signing or parsing failed."""


class ListenError(LoopgateError):
    """The HTTPS listener could not bind its port."""

    def __init__(self, message: str, port: int):
        super().__init__(message)
        self.port = port


class UpstreamError(LoopgateError):
    """A backend connection or stream failed while proxying."""
