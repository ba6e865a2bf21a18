"""Error taxonomy shared by the probe, the signer and the transaction builder."""

from typing import Any, Optional


class PectraError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(PectraError, ValueError):
    """A field is malformed. Raised locally, nothing is sent over the wire."""


class SigningError(PectraError):
    """Key material is malformed or the signer refused to sign."""


class ConfigError(PectraError):
    """A required configuration value is missing or unparsable."""


class TransportError(PectraError):
    """The endpoint could not be reached or answered with something that is not JSON-RPC.

    Retryable by the caller. For capability probing this is never evidence
    of missing support.
    """


class ProtocolRejection(PectraError):
    """The node answered with a well-formed JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message if code is None else f"{message} (code {code})")
        self.message = message
        self.code = code
        self.data = data

    @classmethod
    def from_rpc_error(cls, error: Any) -> "ProtocolRejection":
        if isinstance(error, dict):
            return cls(str(error.get("message", "")), error.get("code"), error.get("data"))
        return cls(str(error))
