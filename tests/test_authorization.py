import unittest
from dataclasses import replace

import rlp
from eth_account import Account
from eth_utils import keccak, to_canonical_address

from pectra.config.key_manager import LocalKeySigner
from pectra.errors import SigningError, ValidationError
from pectra.helpers.authorization import (
    MAX_AUTH_NONCE,
    REVOKE_ADDRESS,
    SECP256K1_N,
    Authorization,
    authorization_digest,
    sign_authorization,
)

PRIVATE_KEY = "0x" + "1" * 64  # Test private key (DO NOT USE IN PRODUCTION)
IMPLEMENTATION = "0x1234567890123456789012345678901234567890"


class RecordingSigner:
    """Stands in for a hardware or remote signer."""

    def __init__(self, private_key):
        self._inner = LocalKeySigner(private_key)
        self.digests = []

    @property
    def address(self):
        return self._inner.address

    def sign_digest(self, digest):
        self.digests.append(digest)
        return self._inner.sign_digest(digest)


class AuthorizationSigningTests(unittest.TestCase):
    def setUp(self):
        self.account = Account.from_key(PRIVATE_KEY)

    def test_signature_recovers_signer(self):
        for chain_id, nonce in [(1, 0), (100, 7), (0, 3), (2**256 - 1, MAX_AUTH_NONCE)]:
            auth = sign_authorization(PRIVATE_KEY, chain_id, IMPLEMENTATION, nonce)
            self.assertTrue(auth.is_signed)
            self.assertIn(auth.y_parity, (0, 1))
            self.assertEqual(auth.recover_authority(), self.account.address)
            self.assertTrue(auth.verify(self.account.address))

    def test_digest_uses_magic_prefix(self):
        expected = keccak(b"\x05" + rlp.encode([100, to_canonical_address(IMPLEMENTATION), 7]))
        self.assertEqual(authorization_digest(100, IMPLEMENTATION, 7), expected)
        auth = sign_authorization(PRIVATE_KEY, 100, IMPLEMENTATION, 7)
        self.assertEqual(auth.signing_hash(), expected)

    def test_mutating_any_field_breaks_recovery(self):
        auth = sign_authorization(PRIVATE_KEY, 100, IMPLEMENTATION, 7)
        mutated = [
            replace(auth, chain_id=101),
            replace(auth, chain_id=0),
            replace(auth, nonce=8),
            replace(auth, address=to_canonical_address("0x" + "22" * 20)),
        ]
        for other in mutated:
            self.assertFalse(other.verify(self.account.address), other)

    def test_signing_twice_verifies_both_times(self):
        first = sign_authorization(PRIVATE_KEY, 1, IMPLEMENTATION, 0)
        second = sign_authorization(PRIVATE_KEY, 1, IMPLEMENTATION, 0)
        self.assertTrue(first.verify(self.account.address))
        self.assertTrue(second.verify(self.account.address))

    def test_wildcard_chain_id(self):
        auth = sign_authorization(PRIVATE_KEY, 0, IMPLEMENTATION, 0)
        self.assertTrue(auth.is_wildcard)
        self.assertTrue(auth.applies_to(1))
        self.assertTrue(auth.applies_to(100))
        concrete = sign_authorization(PRIVATE_KEY, 1, IMPLEMENTATION, 0)
        self.assertFalse(concrete.is_wildcard)
        self.assertFalse(concrete.applies_to(100))

    def test_custom_signer_is_used(self):
        signer = RecordingSigner(PRIVATE_KEY)
        auth = sign_authorization(signer, 100, IMPLEMENTATION, 1)
        self.assertEqual(signer.digests, [auth.signing_hash()])
        self.assertEqual(auth.recover_authority(), self.account.address)

    def test_revocation_authorization(self):
        auth = sign_authorization(PRIVATE_KEY, 100, REVOKE_ADDRESS, 2)
        self.assertEqual(auth.address, b"\x00" * 20)
        self.assertTrue(auth.verify(self.account.address))

    def test_matches_eth_account(self):
        reference = self.account.sign_authorization({"chainId": 100, "address": IMPLEMENTATION, "nonce": 5})
        auth = sign_authorization(PRIVATE_KEY, 100, IMPLEMENTATION, 5)
        self.assertEqual((auth.y_parity, auth.r, auth.s), (reference.y_parity, reference.r, reference.s))


class AuthorizationValidationTests(unittest.TestCase):
    def test_rejects_negative_chain_id(self):
        with self.assertRaises(ValidationError):
            sign_authorization(PRIVATE_KEY, -1, IMPLEMENTATION, 0)

    def test_rejects_negative_or_oversized_nonce(self):
        with self.assertRaises(ValidationError):
            sign_authorization(PRIVATE_KEY, 1, IMPLEMENTATION, -1)
        with self.assertRaises(ValidationError):
            sign_authorization(PRIVATE_KEY, 1, IMPLEMENTATION, MAX_AUTH_NONCE + 1)

    def test_rejects_malformed_address(self):
        for bad in ["0x1234", "not an address", b"\x01" * 19, "0x" + "zz" * 20]:
            with self.assertRaises(ValidationError):
                sign_authorization(PRIVATE_KEY, 1, bad, 0)

    def test_rejects_bad_checksum(self):
        checksummed = "0x52908400098527886E0F7030069857D2E4169EE7"
        wrong_case = checksummed[:2] + checksummed[2:].lower().replace("e", "E", 1)
        with self.assertRaises(ValidationError):
            sign_authorization(PRIVATE_KEY, 1, wrong_case, 0)
        with self.assertRaises(ValidationError):
            sign_authorization(PRIVATE_KEY, 1, "0x52908400098527886E0f7030069857d2e4169ee7", 0)

    def test_accepts_unchecksummed_case(self):
        checksummed = "0x52908400098527886E0F7030069857D2E4169EE7"
        for form in (checksummed, checksummed.lower(), "0x" + checksummed[2:].upper()):
            auth = sign_authorization(PRIVATE_KEY, 1, form, 0)
            self.assertEqual(auth.checksum_address, checksummed)

    def test_rejects_non_integer_fields(self):
        with self.assertRaises(ValidationError):
            sign_authorization(PRIVATE_KEY, "1", IMPLEMENTATION, 0)
        with self.assertRaises(ValidationError):
            sign_authorization(PRIVATE_KEY, 1, IMPLEMENTATION, True)

    def test_malformed_key(self):
        for bad in ["0x1234", "0x" + "00" * 32, "nothex"]:
            with self.assertRaises(SigningError):
                sign_authorization(bad, 1, IMPLEMENTATION, 0)

    def test_high_s_is_rejected(self):
        auth = sign_authorization(PRIVATE_KEY, 1, IMPLEMENTATION, 0)
        flipped = replace(auth, y_parity=1 - auth.y_parity, s=SECP256K1_N - auth.s)
        with self.assertRaises(ValidationError):
            flipped.recover_authority()
        self.assertFalse(flipped.verify(Account.from_key(PRIVATE_KEY).address))

    def test_partial_signature_is_rejected(self):
        with self.assertRaises(ValidationError):
            Authorization(1, IMPLEMENTATION, 0, y_parity=0, r=1)
        with self.assertRaises(ValidationError):
            Authorization(1, IMPLEMENTATION, 0, y_parity=27, r=1, s=1)

    def test_unsigned_cannot_be_encoded(self):
        auth = Authorization(1, IMPLEMENTATION, 0)
        with self.assertRaises(ValidationError):
            auth.to_rlp_list()
        with self.assertRaises(ValidationError):
            auth.recover_authority()


class AuthorizationRPCFormTests(unittest.TestCase):
    def test_rpc_dict_round_trip(self):
        auth = sign_authorization(PRIVATE_KEY, 100, IMPLEMENTATION, 9)
        data = auth.to_rpc_dict()
        self.assertEqual(data["chainId"], "0x64")
        self.assertEqual(data["nonce"], "0x9")
        self.assertEqual(Authorization.from_rpc_dict(data), auth)

    def test_from_rpc_dict_accepts_ints(self):
        auth = sign_authorization(PRIVATE_KEY, 100, IMPLEMENTATION, 9)
        data = {
            "chainId": 100,
            "address": IMPLEMENTATION,
            "nonce": 9,
            "yParity": auth.y_parity,
            "r": auth.r,
            "s": auth.s,
        }
        self.assertEqual(Authorization.from_rpc_dict(data), auth)

    def test_from_rpc_dict_missing_field(self):
        with self.assertRaises(ValidationError):
            Authorization.from_rpc_dict({"chainId": "0x1", "nonce": "0x0"})


if __name__ == "__main__":
    unittest.main()
