"""
Builder for EIP-7702 set-code transactions (type 0x04).

Envelope layout::

    0x04 || rlp([chain_id, nonce, max_priority_fee_per_gas, max_fee_per_gas,
                 gas_limit, destination, value, data, access_list,
                 authorization_list, signature_y_parity, signature_r, signature_s])

    authorization_list = [[chain_id, address, nonce, y_parity, r, s], ...]

The sender signs keccak256(0x04 || rlp(payload)) where payload is the list
above without the three signature fields. A transaction moves strictly
forward: unsigned ``SetCodeTransaction`` -> serialized payload ->
``SignedSetCodeTransaction``. Nothing here talks to the network.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import rlp
from eth_keys import keys
from eth_utils import keccak, to_bytes, to_checksum_address, to_hex, to_int
from rlp.exceptions import RLPException
from rlp.sedes import Binary, CountableList, List as RLPList, big_endian_int, binary

from pectra.config.key_manager import DigestSigner, as_signer
from pectra.errors import SigningError, ValidationError
from pectra.helpers.authorization import (
    MAX_CHAIN_ID,
    Authorization,
    sign_authorization,
    validate_address,
    validate_uint,
)

logger = logging.getLogger(__name__)

SET_CODE_TX_TYPE = 0x04
UINT64_MAX = 2**64 - 1
UINT256_MAX = 2**256 - 1

address_sedes = Binary.fixed_length(20)
hash32_sedes = Binary.fixed_length(32)
access_list_sedes = CountableList(RLPList([address_sedes, CountableList(hash32_sedes)]))
authorization_sedes = RLPList([
    big_endian_int,  # chain_id
    address_sedes,   # address
    big_endian_int,  # nonce
    big_endian_int,  # y_parity
    big_endian_int,  # r
    big_endian_int,  # s
])
_payload_fields = [
    big_endian_int,  # chain_id
    big_endian_int,  # nonce
    big_endian_int,  # max_priority_fee_per_gas
    big_endian_int,  # max_fee_per_gas
    big_endian_int,  # gas_limit
    address_sedes,   # destination
    big_endian_int,  # value
    binary,          # data
    access_list_sedes,
    CountableList(authorization_sedes),
]
unsigned_payload_sedes = RLPList(_payload_fields)
signed_payload_sedes = RLPList(_payload_fields + [big_endian_int, big_endian_int, big_endian_int])

AccessListEntry = Tuple[bytes, Tuple[bytes, ...]]


class BuildStage(Enum):
    UNSIGNED = "unsigned"
    SERIALIZED = "serialized"
    SIGNED = "signed"


def _to_data_bytes(name: str, value: Any) -> bytes:
    if value is None:
        return b''
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return to_bytes(hexstr=value)
        except ValueError as exc:
            raise ValidationError(f"{name} is not valid hex: {value!r}") from exc
    raise ValidationError(f"{name} must be bytes or a hex string, got {type(value).__name__}")


def _to_quantity(name: str, value: Any) -> int:
    if isinstance(value, str):
        try:
            return to_int(hexstr=value)
        except ValueError as exc:
            raise ValidationError(f"{name} is not a hex quantity: {value!r}") from exc
    return value


def normalize_access_list(access_list: Optional[Iterable[Any]]) -> Tuple[AccessListEntry, ...]:
    """
    Accept ``[(address, [key, ...]), ...]`` or the JSON-RPC
    ``[{"address": ..., "storageKeys": [...]}, ...]`` form.
    """
    entries = []
    for item in access_list or ():
        if isinstance(item, Mapping):
            address, storage_keys = item.get('address'), item.get('storageKeys', ())
        else:
            try:
                address, storage_keys = item
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Malformed access list entry: {item!r}") from exc
        keys_out = []
        for key in storage_keys:
            key_bytes = _to_data_bytes("storage key", key)
            if len(key_bytes) != 32:
                raise ValidationError(f"Storage key must be 32 bytes, got {len(key_bytes)}")
            keys_out.append(key_bytes)
        entries.append((validate_address("access list address", address), tuple(keys_out)))
    return tuple(entries)


@dataclass(frozen=True)
class SetCodeTransaction:
    """Unsigned EIP-7702 transaction. Every field is validated on construction."""
    chain_id: int
    nonce: int
    max_priority_fee_per_gas: int
    max_fee_per_gas: int
    gas_limit: int
    destination: Optional[bytes]
    value: int = 0
    data: bytes = b''
    access_list: Tuple[AccessListEntry, ...] = ()
    authorization_list: Tuple[Authorization, ...] = field(default_factory=tuple)

    def __post_init__(self):
        validate_uint("chain_id", self.chain_id, MAX_CHAIN_ID)
        validate_uint("nonce", self.nonce, UINT64_MAX)
        validate_uint("max_priority_fee_per_gas", self.max_priority_fee_per_gas, UINT256_MAX)
        validate_uint("max_fee_per_gas", self.max_fee_per_gas, UINT256_MAX)
        validate_uint("gas_limit", self.gas_limit, UINT64_MAX)
        validate_uint("value", self.value, UINT256_MAX)
        if self.max_priority_fee_per_gas > self.max_fee_per_gas:
            raise ValidationError(
                f"max_priority_fee_per_gas ({self.max_priority_fee_per_gas}) exceeds "
                f"max_fee_per_gas ({self.max_fee_per_gas})"
            )
        if self.destination is None or self.destination in (b'', ''):
            raise ValidationError("Set-code transactions cannot create contracts: destination is required")
        object.__setattr__(self, "destination", validate_address("destination", self.destination))
        object.__setattr__(self, "data", _to_data_bytes("data", self.data))
        object.__setattr__(self, "access_list", normalize_access_list(self.access_list))

        authorizations = tuple(
            a if isinstance(a, Authorization) else Authorization.from_rpc_dict(a)
            for a in (self.authorization_list or ())
        )
        if not authorizations:
            raise ValidationError("authorization_list must contain at least one authorization")
        for index, auth in enumerate(authorizations):
            if not auth.is_signed:
                raise ValidationError(f"Authorization {index} is not signed")
            if not auth.applies_to(self.chain_id):
                # Nodes skip such tuples without invalidating the transaction
                logger.warning(
                    "Authorization %d is for chain %d but the transaction targets chain %d; "
                    "it will be ignored by the network",
                    index, auth.chain_id, self.chain_id,
                )
        object.__setattr__(self, "authorization_list", authorizations)

    @classmethod
    def from_dict(cls, tx: Mapping[str, Any]) -> "SetCodeTransaction":
        """Build from a web3-style transaction dict (``chainId``, ``gas``, ``to`` ...)."""
        try:
            return cls(
                chain_id=_to_quantity("chainId", tx['chainId']),
                nonce=_to_quantity("nonce", tx['nonce']),
                max_priority_fee_per_gas=_to_quantity("maxPriorityFeePerGas", tx['maxPriorityFeePerGas']),
                max_fee_per_gas=_to_quantity("maxFeePerGas", tx['maxFeePerGas']),
                gas_limit=_to_quantity("gas", tx['gas']),
                destination=tx.get('to'),
                value=_to_quantity("value", tx.get('value', 0)),
                data=tx.get('data', tx.get('input', b'')),
                access_list=tx.get('accessList', ()),
                authorization_list=tx.get('authorizationList', ()),
            )
        except KeyError as exc:
            raise ValidationError(f"Transaction is missing field {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': SET_CODE_TX_TYPE,
            'chainId': self.chain_id,
            'nonce': self.nonce,
            'maxPriorityFeePerGas': self.max_priority_fee_per_gas,
            'maxFeePerGas': self.max_fee_per_gas,
            'gas': self.gas_limit,
            'to': to_checksum_address(self.destination),
            'value': self.value,
            'data': to_hex(self.data),
            'accessList': [
                {'address': to_checksum_address(a), 'storageKeys': [to_hex(k) for k in ks]}
                for a, ks in self.access_list
            ],
            'authorizationList': [a.to_rpc_dict() for a in self.authorization_list],
        }

    def payload(self) -> List[Any]:
        return [
            self.chain_id,
            self.nonce,
            self.max_priority_fee_per_gas,
            self.max_fee_per_gas,
            self.gas_limit,
            self.destination,
            self.value,
            self.data,
            [[address, list(storage_keys)] for address, storage_keys in self.access_list],
            [auth.to_rlp_list() for auth in self.authorization_list],
        ]

    def serialize_unsigned(self) -> bytes:
        """0x04 || rlp(payload), the preimage of the sender's signature."""
        return bytes([SET_CODE_TX_TYPE]) + rlp.encode(self.payload(), sedes=unsigned_payload_sedes)

    def signing_hash(self) -> bytes:
        return keccak(self.serialize_unsigned())

    def sign(self, signer: Union[str, bytes, DigestSigner]) -> "SignedSetCodeTransaction":
        signer = as_signer(signer)
        y_parity, r, s = signer.sign_digest(self.signing_hash())
        if y_parity not in (0, 1):
            raise SigningError(f"Signer returned y_parity {y_parity}, expected 0 or 1")
        return SignedSetCodeTransaction(self, y_parity, r, s)


@dataclass(frozen=True)
class SignedSetCodeTransaction:
    transaction: SetCodeTransaction
    y_parity: int
    r: int
    s: int

    @property
    def raw_transaction(self) -> bytes:
        fields = self.transaction.payload() + [self.y_parity, self.r, self.s]
        return bytes([SET_CODE_TX_TYPE]) + rlp.encode(fields, sedes=signed_payload_sedes)

    @property
    def hash(self) -> bytes:
        return keccak(self.raw_transaction)

    def hex(self) -> str:
        return to_hex(self.raw_transaction)

    def recover_sender(self) -> str:
        try:
            signature = keys.Signature(vrs=(self.y_parity, self.r, self.s))
            public_key = signature.recover_public_key_from_msg_hash(self.transaction.signing_hash())
        except Exception as exc:
            raise ValidationError(f"Cannot recover sender: {exc}") from exc
        return public_key.to_checksum_address()


def decode_set_code_transaction(raw: Union[bytes, str]) -> SignedSetCodeTransaction:
    """
    Parse a signed type-0x04 envelope.

    Raises:
        ValidationError: Wrong type byte, non-canonical RLP, or any field
            that fails the same checks applied when building
    """
    raw = _to_data_bytes("raw transaction", raw)
    if not raw or raw[0] != SET_CODE_TX_TYPE:
        raise ValidationError(f"Not a set-code transaction (type byte {raw[:1].hex() or 'missing'})")
    try:
        decoded = rlp.decode(raw[1:], sedes=signed_payload_sedes, strict=True)
    except RLPException as exc:
        raise ValidationError(f"Malformed set-code transaction: {exc}") from exc

    (chain_id, nonce, max_priority_fee, max_fee, gas_limit, destination, value, data,
     access_list, authorization_list, y_parity, r, s) = decoded
    if y_parity not in (0, 1):
        raise ValidationError(f"Transaction y_parity must be 0 or 1, got {y_parity}")
    tx = SetCodeTransaction(
        chain_id=chain_id,
        nonce=nonce,
        max_priority_fee_per_gas=max_priority_fee,
        max_fee_per_gas=max_fee,
        gas_limit=gas_limit,
        destination=destination,
        value=value,
        data=data,
        access_list=access_list,
        authorization_list=tuple(Authorization(*entry) for entry in authorization_list),
    )
    return SignedSetCodeTransaction(tx, y_parity, r, s)


def build_set_code_transaction(
    fields: Union[Mapping[str, Any], SetCodeTransaction],
    authorization_list: Optional[Sequence[Union[Authorization, Mapping[str, Any]]]],
    signer: Union[str, bytes, DigestSigner],
) -> SignedSetCodeTransaction:
    """
    Validate, serialize and sign a set-code transaction.

    Args:
        fields: web3-style dict (``chainId``, ``nonce``, ``gas``, ``to`` ...)
            or an unsigned ``SetCodeTransaction`` whose authorization list is replaced
        authorization_list: Signed authorizations, in the order they are committed to
        signer: Sender's private key or ``DigestSigner``

    Returns:
        SignedSetCodeTransaction; ``raw_transaction`` is ready for eth_sendRawTransaction
    """
    return EIP7702TransactionBuilder(signer).build_transaction(fields, authorization_list)


class EIP7702TransactionBuilder:
    """
    Collects authorizations and turns transaction fields into a signed envelope.

    The builder only ever moves forward through ``BuildStage``; a failed
    build leaves no partial payload behind. Queued authorizations belong to
    the next signed transaction only and are dropped once it is built.
    The key is parsed on first use, after the fields have been validated.
    """

    def __init__(self, signer: Union[str, bytes, DigestSigner]):
        self._signer_source = signer
        self._signer: Optional[DigestSigner] = None
        self.authorizations: List[Authorization] = []
        self.stage = BuildStage.UNSIGNED

    @property
    def signer(self) -> DigestSigner:
        if self._signer is None:
            self._signer = as_signer(self._signer_source)
        return self._signer

    def add_authorization(self, authorization: Authorization) -> "EIP7702TransactionBuilder":
        if not authorization.is_signed:
            raise ValidationError("Only signed authorizations can be added")
        self.authorizations.append(authorization)
        return self

    def build_authorization(
        self,
        implementation: str,
        nonce: int,
        chain_id: int,
        signer: Optional[Union[str, bytes, DigestSigner]] = None,
    ) -> Authorization:
        """Sign an authorization (with the sender's key unless ``signer`` is given) and queue it."""
        auth = sign_authorization(signer if signer is not None else self.signer, chain_id, implementation, nonce)
        self.add_authorization(auth)
        return auth

    def build_transaction(
        self,
        fields: Union[Mapping[str, Any], SetCodeTransaction],
        authorization_list: Optional[Sequence[Union[Authorization, Mapping[str, Any]]]] = None,
    ) -> SignedSetCodeTransaction:
        self.stage = BuildStage.UNSIGNED
        if isinstance(fields, SetCodeTransaction):
            if authorization_list is None:
                authorization_list = self.authorizations or fields.authorization_list
            tx = SetCodeTransaction(
                chain_id=fields.chain_id,
                nonce=fields.nonce,
                max_priority_fee_per_gas=fields.max_priority_fee_per_gas,
                max_fee_per_gas=fields.max_fee_per_gas,
                gas_limit=fields.gas_limit,
                destination=fields.destination,
                value=fields.value,
                data=fields.data,
                access_list=fields.access_list,
                authorization_list=tuple(authorization_list),
            )
        else:
            if authorization_list is None:
                authorization_list = self.authorizations or fields.get('authorizationList', ())
            tx = SetCodeTransaction.from_dict({**fields, 'authorizationList': list(authorization_list)})

        payload = tx.serialize_unsigned()
        self.stage = BuildStage.SERIALIZED
        try:
            y_parity, r, s = self.signer.sign_digest(keccak(payload))
            if y_parity not in (0, 1):
                raise SigningError(f"Signer returned y_parity {y_parity}, expected 0 or 1")
        except Exception:
            self.stage = BuildStage.UNSIGNED
            raise
        signed = SignedSetCodeTransaction(tx, y_parity, r, s)
        self.stage = BuildStage.SIGNED
        self.authorizations = []
        logger.info(
            "Built set-code transaction %s (chain_id=%d nonce=%d, %d authorization(s))",
            to_hex(signed.hash), tx.chain_id, tx.nonce, len(tx.authorization_list),
        )
        return signed
