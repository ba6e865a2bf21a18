import unittest

import requests
from eth_account import Account
from web3 import Web3

from fake_rpc import FakeRPCServer
from mock_provider import MockProvider
from pectra.config.settings import Settings
from pectra.errors import ConfigError, ProtocolRejection, TransportError
from pectra.executor.eip7702_sender import SetCodeSender, get_delegation, parse_delegation
from pectra.helpers.eip7702_builder import decode_set_code_transaction
from pectra.helpers.rpc import make_web3

PRIVATE_KEY = "0x" + "1" * 64  # Test private key (DO NOT USE IN PRODUCTION)
IMPLEMENTATION = "0x1234567890123456789012345678901234567890"
TX_HASH = "0x" + "ab" * 32


def chain_results(**overrides):
    results = {
        "eth_chainId": "0x64",
        "eth_getTransactionCount": "0x5",
        "eth_getBlockByNumber": {"baseFeePerGas": "0x3b9aca00", "number": "0x10"},
        "eth_sendRawTransaction": TX_HASH,
        "eth_getCode": "0x",
    }
    results.update(overrides)
    return results


class SetCodeSenderTests(unittest.TestCase):
    def setUp(self):
        self.account = Account.from_key(PRIVATE_KEY)
        self.settings = Settings(rpc_url="http://unused", private_key=PRIVATE_KEY,
                                 implementation_address=IMPLEMENTATION)

    def make_sender(self, settings=None, **provider_kwargs):
        provider_kwargs.setdefault("results", chain_results())
        self.provider = MockProvider(**provider_kwargs)
        return SetCodeSender(settings or self.settings, w3=Web3(self.provider))

    def test_self_sponsored_delegation_uses_next_nonce(self):
        sender = self.make_sender()
        signed = sender.build_delegation_transaction()
        tx = signed.transaction
        self.assertEqual(tx.chain_id, 100)
        self.assertEqual(tx.nonce, 5)
        self.assertEqual(tx.destination, bytes.fromhex(self.account.address[2:]))
        auth = tx.authorization_list[0]
        self.assertEqual(auth.nonce, 6)
        self.assertEqual(auth.chain_id, 100)
        self.assertEqual(auth.checksum_address, IMPLEMENTATION)
        self.assertEqual(auth.recover_authority(), self.account.address)
        self.assertEqual(signed.recover_sender(), self.account.address)

    def test_fees_follow_base_fee(self):
        sender = self.make_sender()
        fees = sender.suggest_fees()
        self.assertEqual(fees, {"maxFeePerGas": 2 * 10**9 + 1, "maxPriorityFeePerGas": 1})

    def test_configured_chain_id_and_nonce_skip_lookups(self):
        settings = Settings(rpc_url="http://unused", private_key=PRIVATE_KEY,
                            implementation_address=IMPLEMENTATION, chain_id=0, auth_nonce=42)
        sender = self.make_sender(settings)
        auth = sender.sign_delegation()
        self.assertEqual((auth.chain_id, auth.nonce), (0, 42))
        self.assertEqual(self.provider.calls, [])

    def test_sponsored_authorization_uses_current_nonce(self):
        sender = self.make_sender()
        auth = sender.sign_delegation(self_sponsored=False)
        self.assertEqual(auth.nonce, 5)

    def test_send_broadcasts_raw_envelope(self):
        sender = self.make_sender()
        tx_hash = sender.delegate()
        self.assertEqual(tx_hash, TX_HASH)
        (raw_hex,), = self.provider.params_for("eth_sendRawTransaction")
        decoded = decode_set_code_transaction(raw_hex)
        self.assertEqual(decoded.recover_sender(), self.account.address)
        self.assertEqual(decoded.transaction.authorization_list[0].nonce, 6)

    def test_send_rejection(self):
        sender = self.make_sender(errors={
            "eth_sendRawTransaction": {"code": -32000, "message": "nonce too low"},
        })
        signed = sender.build_delegation_transaction()
        with self.assertRaises(ProtocolRejection) as ctx:
            sender.send(signed)
        self.assertEqual(ctx.exception.code, -32000)
        self.assertIn("nonce too low", ctx.exception.message)

    def test_send_transport_failure(self):
        sender = self.make_sender(raise_on={
            "eth_sendRawTransaction": requests.exceptions.ConnectionError("refused"),
        })
        signed = sender.build_delegation_transaction()
        with self.assertRaises(TransportError):
            sender.send(signed)

    def test_revocation_targets_zero_address(self):
        sender = self.make_sender()
        signed = sender.build_revocation_transaction()
        self.assertEqual(signed.transaction.authorization_list[0].address, b"\x00" * 20)

    def test_missing_implementation(self):
        settings = Settings(rpc_url="http://unused", private_key=PRIVATE_KEY)
        sender = self.make_sender(settings)
        with self.assertRaises(ConfigError):
            sender.sign_delegation()

    def test_missing_key(self):
        with self.assertRaises(ConfigError):
            SetCodeSender(Settings(rpc_url="http://unused"), w3=Web3(MockProvider()))

    def test_get_delegation(self):
        code = "0xef0100" + IMPLEMENTATION[2:]
        sender = self.make_sender(results=chain_results(eth_getCode=code))
        self.assertEqual(sender.get_delegation(), IMPLEMENTATION)
        self.assertEqual(get_delegation(sender.w3, self.account.address), IMPLEMENTATION)

    def test_get_delegation_none(self):
        sender = self.make_sender()
        self.assertIsNone(sender.get_delegation())


class ParseDelegationTests(unittest.TestCase):
    def test_designator(self):
        self.assertEqual(parse_delegation("0xef0100" + IMPLEMENTATION[2:]), IMPLEMENTATION)
        self.assertEqual(parse_delegation(bytes.fromhex("ef0100") + b"\x00" * 20),
                         "0x0000000000000000000000000000000000000000")

    def test_not_a_designator(self):
        self.assertIsNone(parse_delegation(b""))
        self.assertIsNone(parse_delegation("0x6080604052"))
        self.assertIsNone(parse_delegation("0xef0100" + IMPLEMENTATION[2:] + "00"))
        self.assertIsNone(parse_delegation("0xef0200" + IMPLEMENTATION[2:]))


class HTTPStatusTests(unittest.TestCase):
    def test_rpc_error_with_http_error_status_is_a_rejection(self):
        behaviour = ("error", {"code": -32000, "message": "nonce too low"})
        with FakeRPCServer(behaviour, status=400) as server:
            with self.assertRaises(ProtocolRejection) as ctx:
                get_delegation(make_web3(server.url, 5), IMPLEMENTATION)
        self.assertEqual(ctx.exception.code, -32000)

    def test_http_error_without_rpc_body_is_transport(self):
        with FakeRPCServer(("raw", "upstream unavailable"), status=503) as server:
            with self.assertRaises(TransportError):
                get_delegation(make_web3(server.url, 5), IMPLEMENTATION)


if __name__ == "__main__":
    unittest.main()
