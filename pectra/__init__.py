"""
EIP-7702 ("set code for one transaction") client toolkit.

Probes an RPC endpoint for EIP-7702 support, signs authorization tuples and
builds signed type-0x04 transactions ready for eth_sendRawTransaction.
"""

from pectra.errors import (
    ConfigError,
    PectraError,
    ProtocolRejection,
    SigningError,
    TransportError,
    ValidationError,
)
from pectra.helpers.authorization import Authorization, sign_authorization
from pectra.helpers.capability_probe import CapabilityProbe, ProbeResult, ProbeStatus, probe
from pectra.helpers.eip7702_builder import (
    EIP7702TransactionBuilder,
    SetCodeTransaction,
    SignedSetCodeTransaction,
    build_set_code_transaction,
    decode_set_code_transaction,
)

__version__ = "0.1.0"

__all__ = [
    "Authorization",
    "CapabilityProbe",
    "ConfigError",
    "EIP7702TransactionBuilder",
    "PectraError",
    "ProbeResult",
    "ProbeStatus",
    "ProtocolRejection",
    "SetCodeTransaction",
    "SignedSetCodeTransaction",
    "SigningError",
    "TransportError",
    "ValidationError",
    "build_set_code_transaction",
    "decode_set_code_transaction",
    "probe",
    "sign_authorization",
]
