"""
EIP-7702 authorization tuples.

An authorization is the statement ``(chain_id, address, nonce)`` signed by
the account that wants its code set to a delegation designator pointing at
``address``. The signed message is::

    keccak256(0x05 || rlp([chain_id, address, nonce]))

The ``0x05`` magic keeps these signatures from ever being valid as a
transaction (``0x00``-``0x04``) or EIP-191/712 message signature.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Union

import rlp
from eth_keys import keys
from eth_utils import (
    is_address,
    is_checksum_address,
    is_checksum_formatted_address,
    keccak,
    to_canonical_address,
    to_checksum_address,
    to_int,
)

from pectra.config.key_manager import DigestSigner, as_signer
from pectra.errors import SigningError, ValidationError

logger = logging.getLogger(__name__)

AUTHORIZATION_MAGIC = b'\x05'
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
MAX_CHAIN_ID = 2**256 - 1
MAX_AUTH_NONCE = 2**64 - 1
# Authorizing the zero address clears an existing delegation
REVOKE_ADDRESS = "0x0000000000000000000000000000000000000000"

AddressLike = Union[str, bytes]


def validate_uint(name: str, value: Any, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValidationError(f"{name} must be non-negative, got {value}")
    if value > maximum:
        raise ValidationError(f"{name} exceeds maximum {maximum:#x}")
    return value


def validate_address(name: str, value: Any) -> bytes:
    """Return the 20 canonical bytes of ``value`` or raise ``ValidationError``."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 20:
            raise ValidationError(f"{name} must be 20 bytes, got {len(value)}")
        return bytes(value)
    if not isinstance(value, str) or not is_address(value):
        raise ValidationError(f"{name} is not a valid 20-byte address: {value!r}")
    # mixed case means EIP-55, all-lower and all-upper hex carry no checksum
    if is_checksum_formatted_address(value) and not is_checksum_address(value):
        raise ValidationError(f"{name} has an invalid EIP-55 checksum: {value!r}")
    return to_canonical_address(value)


def _quantity(value: Any) -> int:
    if isinstance(value, str):
        return to_int(hexstr=value)
    return value


@dataclass(frozen=True)
class Authorization:
    """
    An EIP-7702 authorization tuple, optionally signed.

    ``address`` is held as 20 raw bytes; ``checksum_address`` gives the
    display form. ``y_parity``/``r``/``s`` stay ``None`` until signed.
    """
    chain_id: int
    address: bytes
    nonce: int
    y_parity: Optional[int] = None
    r: Optional[int] = None
    s: Optional[int] = None

    def __post_init__(self):
        validate_uint("chain_id", self.chain_id, MAX_CHAIN_ID)
        validate_uint("nonce", self.nonce, MAX_AUTH_NONCE)
        object.__setattr__(self, "address", validate_address("address", self.address))
        sig = (self.y_parity, self.r, self.s)
        if any(v is not None for v in sig) and any(v is None for v in sig):
            raise ValidationError("y_parity, r and s must be set together")
        if self.y_parity is not None:
            if self.y_parity not in (0, 1) or isinstance(self.y_parity, bool):
                raise ValidationError(f"y_parity must be 0 or 1, got {self.y_parity}")
            validate_uint("r", self.r, 2**256 - 1)
            validate_uint("s", self.s, 2**256 - 1)

    @property
    def is_signed(self) -> bool:
        return self.y_parity is not None

    @property
    def is_wildcard(self) -> bool:
        """chain_id 0 makes the authorization valid on every chain."""
        return self.chain_id == 0

    @property
    def checksum_address(self) -> str:
        return to_checksum_address(self.address)

    def applies_to(self, chain_id: int) -> bool:
        return self.is_wildcard or self.chain_id == chain_id

    def unsigned(self) -> "Authorization":
        return replace(self, y_parity=None, r=None, s=None)

    def signing_hash(self) -> bytes:
        return authorization_digest(self.chain_id, self.address, self.nonce)

    def recover_authority(self) -> str:
        """Recover the checksummed address that signed this authorization.

        Applies the same checks a node does before accepting the tuple:
        ``r`` and ``s`` non-zero, below the curve order, and ``s`` in the
        lower half of the order.
        """
        if not self.is_signed:
            raise ValidationError("Authorization is not signed")
        if not 0 < self.r < SECP256K1_N:
            raise ValidationError("Signature r out of range")
        if not 0 < self.s <= SECP256K1_N // 2:
            raise ValidationError("Signature s out of range (high-s signatures are rejected)")
        try:
            signature = keys.Signature(vrs=(self.y_parity, self.r, self.s))
            public_key = signature.recover_public_key_from_msg_hash(self.signing_hash())
        except Exception as exc:
            raise ValidationError(f"Cannot recover authority: {exc}") from exc
        return public_key.to_checksum_address()

    def verify(self, authority: AddressLike) -> bool:
        """True when the signature recovers to ``authority``."""
        try:
            recovered = self.recover_authority()
        except ValidationError:
            return False
        return to_canonical_address(recovered) == validate_address("authority", authority)

    def to_rlp_list(self) -> List[Any]:
        if not self.is_signed:
            raise ValidationError("Only signed authorizations can be encoded into a transaction")
        return [self.chain_id, self.address, self.nonce, self.y_parity, self.r, self.s]

    def to_rpc_dict(self) -> Dict[str, Any]:
        """JSON-RPC form, as found in ``authorizationList`` of eth_getTransactionByHash."""
        out = {
            'chainId': hex(self.chain_id),
            'address': self.checksum_address,
            'nonce': hex(self.nonce),
        }
        if self.is_signed:
            out.update({'yParity': hex(self.y_parity), 'r': hex(self.r), 's': hex(self.s)})
        return out

    @classmethod
    def from_rpc_dict(cls, data: Dict[str, Any]) -> "Authorization":
        """Parse the camelCase dict form; quantities may be hex strings or ints."""
        try:
            y_parity = data.get('yParity', data.get('v'))
            return cls(
                chain_id=_quantity(data['chainId']),
                address=data['address'],
                nonce=_quantity(data['nonce']),
                y_parity=None if y_parity is None else _quantity(y_parity),
                r=None if data.get('r') is None else _quantity(data['r']),
                s=None if data.get('s') is None else _quantity(data['s']),
            )
        except ValidationError:
            raise
        except KeyError as exc:
            raise ValidationError(f"Authorization is missing field {exc}") from exc
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed authorization: {exc}") from exc


def authorization_digest(chain_id: int, address: AddressLike, nonce: int) -> bytes:
    """keccak256(0x05 || rlp([chain_id, address, nonce]))"""
    validate_uint("chain_id", chain_id, MAX_CHAIN_ID)
    validate_uint("nonce", nonce, MAX_AUTH_NONCE)
    encoded = rlp.encode([chain_id, validate_address("address", address), nonce])
    return keccak(AUTHORIZATION_MAGIC + encoded)


def sign_authorization(
    signer: Union[str, bytes, DigestSigner],
    chain_id: int,
    address: AddressLike,
    nonce: int,
) -> Authorization:
    """
    Sign an EIP-7702 authorization.

    Args:
        signer: Private key (hex or bytes) or any ``DigestSigner``
        chain_id: Chain the delegation is valid on, 0 for every chain
        address: Contract whose code the signer's account will delegate to
        nonce: Signer's account nonce at inclusion time

    Returns:
        Fully populated Authorization

    Raises:
        ValidationError: Malformed chain_id, address or nonce
        SigningError: Malformed key material
    """
    auth = Authorization(chain_id=chain_id, address=address, nonce=nonce)
    signer = as_signer(signer)
    y_parity, r, s = signer.sign_digest(auth.signing_hash())
    if y_parity not in (0, 1):
        raise SigningError(f"Signer returned y_parity {y_parity}, expected 0 or 1")
    logger.debug(
        "Signed authorization chain_id=%d address=%s nonce=%d by %s",
        chain_id, auth.checksum_address, nonce, signer.address,
    )
    return replace(auth, y_parity=y_parity, r=r, s=s)
