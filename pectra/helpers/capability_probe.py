"""
EIP-7702 capability probe.

Asks a node to estimate gas for a call into an account whose code is
overridden with a delegation designator pointing at the ecrecover
precompile. A node that understands EIP-7702 follows the designator and
runs ecrecover; one that does not either rejects the override or trips on
the 0xef opcode.

Nothing is signed and nothing is sent to the mempool: the dummy account is
unfunded and the override only exists for the duration of the call.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from eth_utils import to_hex
from web3.providers import BaseProvider

from pectra.config.settings import DEFAULT_TIMEOUT, Settings
from pectra.errors import ProtocolRejection, TransportError
from pectra.helpers.rpc import make_provider, raw_request

logger = logging.getLogger(__name__)

DELEGATION_PREFIX = bytes.fromhex("ef0100")
ECRECOVER_PRECOMPILE = "0x0000000000000000000000000000000000000001"
PROBE_ADDRESS = "0x0000000000000000000000000000000000007702"

# 96 bytes of ecrecover-shaped input: zero word, word ending in 0x01, zero word
PROBE_CALLDATA = bytes(32) + bytes(31) + b'\x01' + bytes(32)
PROBE_CODE = DELEGATION_PREFIX + bytes.fromhex(ECRECOVER_PRECOMPILE[2:])

# JSON-RPC codes that mean the request shape itself was refused
_SHAPE_REJECTION_CODES = {-32601, -32602}
# Messages tying an error to the override or to executing 0xef code
_CODE_SEMANTICS_PATTERN = re.compile(
    r"override|invalid opcode|opcode 0xef|invalid code|unknown field|"
    r"delegat|eip-?7702|code size|invalid params|not supported",
    re.IGNORECASE,
)


class ProbeStatus(Enum):
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    raw_response: Optional[Dict[str, Any]] = None
    gas_estimate: Optional[int] = None
    error: Optional[Exception] = field(default=None, compare=False)

    @property
    def supported(self) -> Optional[bool]:
        """True / False for a confirmed answer, None when the probe could not tell."""
        if self.status is ProbeStatus.INDETERMINATE:
            return None
        return self.status is ProbeStatus.SUPPORTED

    @property
    def is_indeterminate(self) -> bool:
        return self.status is ProbeStatus.INDETERMINATE


def build_probe_request() -> list:
    """Params for eth_estimateGas(call, "latest", stateOverride)."""
    call = {
        "from": PROBE_ADDRESS,
        "to": PROBE_ADDRESS,
        "data": to_hex(PROBE_CALLDATA),
        "value": "0x0",
    }
    state_override = {PROBE_ADDRESS: {"code": to_hex(PROBE_CODE)}}
    return [call, "latest", state_override]


def classify_rejection(rejection: ProtocolRejection) -> ProbeStatus:
    """
    A rejection only counts as "unsupported" when it is about the request
    shape or the delegated code. Rate limits, missing state and other
    server-side trouble say nothing about EIP-7702.
    """
    if rejection.code in _SHAPE_REJECTION_CODES:
        return ProbeStatus.UNSUPPORTED
    if _CODE_SEMANTICS_PATTERN.search(rejection.message or ""):
        return ProbeStatus.UNSUPPORTED
    return ProbeStatus.INDETERMINATE


def classify_response(response: Dict[str, Any]) -> ProbeResult:
    error = response.get("error")
    if error is not None:
        rejection = ProtocolRejection.from_rpc_error(error)
        status = classify_rejection(rejection)
        logger.info("Probe rejected (%s): %s", status.value, rejection)
        return ProbeResult(status, raw_response=response, error=rejection)

    result = response.get("result")
    try:
        if isinstance(result, str):
            gas = int(result, 16)
        elif isinstance(result, int) and not isinstance(result, bool):
            gas = result
        else:
            raise ValueError(f"unexpected result type {type(result).__name__}")
    except ValueError as exc:
        logger.warning("Probe returned a non-numeric estimate: %r", result)
        return ProbeResult(ProbeStatus.INDETERMINATE, raw_response=response, error=exc)
    logger.info("Probe succeeded, gas estimate %d", gas)
    return ProbeResult(ProbeStatus.SUPPORTED, raw_response=response, gas_estimate=gas)


class CapabilityProbe:
    """Classify an RPC endpoint as supporting EIP-7702 or not."""

    def __init__(self, provider: BaseProvider):
        self.provider = provider

    @classmethod
    def from_url(cls, rpc_url: str, timeout: float = DEFAULT_TIMEOUT) -> "CapabilityProbe":
        return cls(make_provider(rpc_url, timeout))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CapabilityProbe":
        return cls.from_url(settings.rpc_url, settings.timeout)

    def probe(self) -> ProbeResult:
        try:
            response = raw_request(self.provider, "eth_estimateGas", build_probe_request())
        except TransportError as exc:
            # An unreachable node is not evidence of missing support
            logger.warning("Probe indeterminate: %s", exc)
            return ProbeResult(ProbeStatus.INDETERMINATE, error=exc)
        return classify_response(response)


def probe(rpc_endpoint: Union[str, BaseProvider], timeout: float = DEFAULT_TIMEOUT) -> ProbeResult:
    """
    Probe ``rpc_endpoint`` (URL or web3 provider) for EIP-7702 support.

    Never raises for network trouble: timeouts and transport failures come
    back as ``ProbeStatus.INDETERMINATE``.
    """
    if isinstance(rpc_endpoint, BaseProvider):
        return CapabilityProbe(rpc_endpoint).probe()
    return CapabilityProbe.from_url(rpc_endpoint, timeout).probe()
