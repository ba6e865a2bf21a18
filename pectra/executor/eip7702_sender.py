"""
EIP-7702 Transaction Sender.

Fetches the chain state a set-code transaction depends on (chain id,
account nonce, base fee), signs the delegation, builds the type-0x04
envelope and broadcasts it with eth_sendRawTransaction. Also reads back an
account's current delegation from its code.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Sequence, Union

import requests
from eth_utils import to_checksum_address, to_hex
from web3 import Web3
from web3.exceptions import Web3Exception, Web3RPCError

from pectra.config.key_manager import DigestSigner, as_signer
from pectra.config.settings import Settings
from pectra.errors import ConfigError, ProtocolRejection, TransportError
from pectra.helpers.authorization import REVOKE_ADDRESS, Authorization, sign_authorization
from pectra.helpers.capability_probe import DELEGATION_PREFIX
from pectra.helpers.eip7702_builder import EIP7702TransactionBuilder, SignedSetCodeTransaction
from pectra.helpers.rpc import http_error_body, make_web3

logger = logging.getLogger(__name__)


def parse_delegation(code: Union[bytes, str, None]) -> Optional[str]:
    """Return the delegate address encoded in ``0xef0100 || address`` code, else None."""
    if isinstance(code, str):
        code = bytes.fromhex(code[2:] if code.startswith("0x") else code)
    if not code or len(code) != len(DELEGATION_PREFIX) + 20 or not code.startswith(DELEGATION_PREFIX):
        return None
    return to_checksum_address(code[len(DELEGATION_PREFIX):])


def get_delegation(w3: Web3, address: str) -> Optional[str]:
    with rpc_errors("eth_getCode"):
        code = w3.eth.get_code(to_checksum_address(address))
    return parse_delegation(bytes(code))


@contextmanager
def rpc_errors(method: str) -> Iterator[None]:
    """Translate web3 / requests failures into ProtocolRejection or TransportError."""
    try:
        yield
    except Web3RPCError as exc:
        response = getattr(exc, "rpc_response", None) or {}
        error = response.get("error") if isinstance(response, dict) else None
        raise (ProtocolRejection.from_rpc_error(error) if error else ProtocolRejection(str(exc))) from exc
    except requests.exceptions.HTTPError as exc:
        body = http_error_body(exc.response)
        if body is None:
            raise TransportError(f"{method} failed: {exc}") from exc
        raise ProtocolRejection.from_rpc_error(body["error"]) from exc
    except (requests.exceptions.RequestException, Web3Exception, OSError) as exc:
        raise TransportError(f"{method} failed: {exc}") from exc


class SetCodeSender:
    """
    Builds and submits set-code transactions for the account behind ``signer``.

    Args:
        settings: Resolved configuration (RPC URL, implementation address ...)
        w3: Web3 instance to use instead of one built from ``settings``
        signer: Key or DigestSigner; defaults to ``settings.private_key``
    """

    def __init__(
        self,
        settings: Settings,
        w3: Optional[Web3] = None,
        signer: Optional[Union[str, bytes, DigestSigner]] = None,
    ):
        self.settings = settings
        self.w3 = w3 if w3 is not None else make_web3(settings.rpc_url, settings.timeout)
        if signer is None:
            if not settings.private_key:
                raise ConfigError("A private key or signer is required to send transactions")
            signer = settings.private_key
        self.signer = as_signer(signer)

    @property
    def address(self) -> str:
        return self.signer.address

    def chain_id(self) -> int:
        if self.settings.chain_id is not None:
            return self.settings.chain_id
        with rpc_errors("eth_chainId"):
            return int(self.w3.eth.chain_id)

    def get_nonce(self, address: Optional[str] = None) -> int:
        address = address or self.address
        with rpc_errors("eth_getTransactionCount"):
            return int(self.w3.eth.get_transaction_count(to_checksum_address(address), "pending"))

    def suggest_fees(self) -> Dict[str, int]:
        """EIP-1559 fee pair: maxFee = baseFee * multiplier + tip."""
        tip = self.settings.priority_fee_wei
        mult = self.settings.max_fee_multiplier
        with rpc_errors("eth_getBlockByNumber"):
            latest = self.w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            # pre-London chain, fall back on the legacy gas price
            with rpc_errors("eth_gasPrice"):
                base_fee = int(self.w3.eth.gas_price)
        max_fee = int(base_fee) * mult + tip
        return {"maxFeePerGas": int(max_fee), "maxPriorityFeePerGas": int(tip)}

    def sign_delegation(
        self,
        implementation: Optional[str] = None,
        chain_id: Optional[int] = None,
        nonce: Optional[int] = None,
        authority: Optional[Union[str, bytes, DigestSigner]] = None,
        self_sponsored: bool = True,
    ) -> Authorization:
        """
        Sign an authorization delegating ``authority``'s code to ``implementation``.

        When no nonce is given it is read from the chain. If the authority is
        also the sender (``self_sponsored``), its nonce is bumped by the
        transaction itself before the authorization list is processed, so
        nonce + 1 is used.
        """
        implementation = implementation or self.settings.implementation_address
        if not implementation:
            raise ConfigError("No implementation address configured (IMPLEMENTATION_ADDRESS)")
        authority = self.signer if authority is None else as_signer(authority)
        if chain_id is None:
            chain_id = self.chain_id()
        if nonce is None:
            nonce = self.settings.auth_nonce
        if nonce is None:
            nonce = self.get_nonce(authority.address)
            if self_sponsored and authority.address == self.address:
                nonce += 1
        return sign_authorization(authority, chain_id, implementation, nonce)

    def build_delegation_transaction(
        self,
        implementation: Optional[str] = None,
        to: Optional[str] = None,
        data: Union[bytes, str] = b'',
        value: int = 0,
        authorizations: Optional[Sequence[Authorization]] = None,
        gas_limit: Optional[int] = None,
        fees: Optional[Dict[str, int]] = None,
    ) -> SignedSetCodeTransaction:
        """Build a signed set-code transaction; defaults to a self-call delegating the sender."""
        chain_id = self.chain_id()
        tx_nonce = self.get_nonce()
        if authorizations is None:
            auth_nonce = self.settings.auth_nonce if self.settings.auth_nonce is not None else tx_nonce + 1
            authorizations = [self.sign_delegation(implementation, chain_id=chain_id, nonce=auth_nonce)]
        fees = fees or self.suggest_fees()
        fields = {
            'chainId': chain_id,
            'nonce': tx_nonce,
            'to': to or self.address,
            'value': value,
            'data': data,
            'gas': gas_limit if gas_limit is not None else self.settings.gas_limit,
            'maxFeePerGas': fees['maxFeePerGas'],
            'maxPriorityFeePerGas': fees['maxPriorityFeePerGas'],
        }
        return EIP7702TransactionBuilder(self.signer).build_transaction(fields, authorizations)

    def build_revocation_transaction(self, **kwargs: Any) -> SignedSetCodeTransaction:
        """Clear the sender's delegation by authorizing the zero address."""
        return self.build_delegation_transaction(implementation=REVOKE_ADDRESS, **kwargs)

    def send(self, signed: Union[SignedSetCodeTransaction, bytes]) -> str:
        """
        Broadcast a signed envelope.

        Raises:
            ProtocolRejection: Node refused the transaction
            TransportError: Node unreachable
        """
        raw = signed.raw_transaction if isinstance(signed, SignedSetCodeTransaction) else signed
        with rpc_errors("eth_sendRawTransaction"):
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        tx_hash_hex = to_hex(tx_hash)
        logger.info("Sent set-code transaction %s", tx_hash_hex)
        return tx_hash_hex

    def delegate(self, implementation: Optional[str] = None, **kwargs: Any) -> str:
        return self.send(self.build_delegation_transaction(implementation, **kwargs))

    def get_delegation(self, address: Optional[str] = None) -> Optional[str]:
        """Current delegate of ``address`` (default: the sender), or None."""
        return get_delegation(self.w3, address or self.address)
