"""Signing capability for authorizations and transactions.

Encoding code only ever talks to a ``DigestSigner``: something with an
``address`` and a ``sign_digest`` method. ``LocalKeySigner`` is the in-process
implementation backed by a raw private key; hardware or remote signers can be
dropped in by implementing the same two members.
"""

from typing import Protocol, Tuple, Union, runtime_checkable

from eth_account import Account

from pectra.errors import SigningError

Signature = Tuple[int, int, int]


@runtime_checkable
class DigestSigner(Protocol):
    """Anything that can produce a recoverable secp256k1 signature over a 32-byte digest."""

    @property
    def address(self) -> str:
        ...

    def sign_digest(self, digest: bytes) -> Signature:
        """Return ``(y_parity, r, s)`` with ``y_parity`` in ``{0, 1}``."""
        ...


class LocalKeySigner:
    """Signs digests with a private key held in memory."""

    def __init__(self, private_key: Union[str, bytes]):
        """
        Args:
            private_key: 32-byte key as bytes or hex (with or without 0x prefix)
        """
        if isinstance(private_key, str):
            private_key = private_key.strip()
            if not private_key.startswith('0x'):
                private_key = '0x' + private_key
        try:
            self._account = Account.from_key(private_key)
        except Exception as exc:
            raise SigningError(f"Malformed private key: {exc}") from exc

    @property
    def address(self) -> str:
        return self._account.address

    def sign_digest(self, digest: bytes) -> Signature:
        if not isinstance(digest, (bytes, bytearray)) or len(digest) != 32:
            raise SigningError("Digest must be exactly 32 bytes")
        signed = self._account.unsafe_sign_hash(bytes(digest))
        # eth_account reports the legacy 27/28 recovery id
        y_parity = signed.v - 27 if signed.v >= 27 else signed.v
        return y_parity, signed.r, signed.s

    def __repr__(self) -> str:
        return f"LocalKeySigner({self.address})"


def as_signer(key_or_signer: Union[str, bytes, DigestSigner]) -> DigestSigner:
    """Coerce a raw private key into a ``LocalKeySigner``; pass signer objects through."""
    if isinstance(key_or_signer, (str, bytes, bytearray)):
        return LocalKeySigner(bytes(key_or_signer) if isinstance(key_or_signer, bytearray) else key_or_signer)
    if isinstance(key_or_signer, DigestSigner):
        return key_or_signer
    raise SigningError(f"Unsupported signer type: {type(key_or_signer).__name__}")
