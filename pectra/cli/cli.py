#!/usr/bin/env python3
"""
Command line front end.

  pectra probe  [--rpc-url URL] [--timeout S]
  pectra sign-auth --address 0x... [--nonce N] [--chain-id N]
  pectra build  [--implementation 0x...] [--to 0x...] [--data 0x...] [--value WEI]
  pectra send   [--implementation 0x...] [--to 0x...] [--data 0x...] [--value WEI]
  pectra status [--account 0x...]

Configuration comes from the environment (RPC_URL, PRIVATE_KEY,
IMPLEMENTATION_ADDRESS, CHAIN_ID, AUTH_NONCE ...), optionally loaded from
--env. Command line flags win over environment values.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from tabulate import tabulate

from pectra.config.settings import Settings
from pectra.errors import PectraError, ProtocolRejection, ValidationError
from pectra.executor.eip7702_sender import SetCodeSender, get_delegation
from pectra.helpers.authorization import sign_authorization
from pectra.helpers.capability_probe import CapabilityProbe, ProbeStatus
from pectra.helpers.rpc import make_web3

EXIT_CODES = {
    ProbeStatus.SUPPORTED: 0,
    ProbeStatus.UNSUPPORTED: 1,
    ProbeStatus.INDETERMINATE: 2,
}


def _settings(args: argparse.Namespace, require_key: bool, require_rpc: bool = True) -> Settings:
    settings = Settings.from_env(
        args.env_file,
        require_key=require_key,
        rpc_url=getattr(args, "rpc_url", None),
        require_rpc=require_rpc,
    )
    return settings.with_overrides(
        timeout=getattr(args, "timeout", None),
        chain_id=getattr(args, "chain_id", None),
        implementation_address=getattr(args, "implementation", None),
    )


def _parse_value(value: Optional[str]) -> int:
    if value is None:
        return 0
    try:
        return int(value, 0)
    except ValueError as exc:
        raise ValidationError(f"--value is not an integer: {value!r}") from exc


def cmd_probe(args: argparse.Namespace) -> int:
    settings = _settings(args, require_key=False)
    result = CapabilityProbe.from_settings(settings).probe()
    rows = [
        ["Endpoint", settings.rpc_url],
        ["Status", result.status.value],
        ["Gas estimate", result.gas_estimate if result.gas_estimate is not None else "-"],
        ["Detail", str(result.error) if result.error else "-"],
    ]
    print(tabulate(rows, tablefmt="plain"))
    return EXIT_CODES[result.status]


def cmd_sign_auth(args: argparse.Namespace) -> int:
    offline = args.nonce is not None and args.chain_id is not None
    settings = _settings(args, require_key=True, require_rpc=not offline)
    address = args.address or settings.implementation_address
    if not address:
        print("No delegate address (use --address or IMPLEMENTATION_ADDRESS)", file=sys.stderr)
        return 2
    if offline:
        auth = sign_authorization(settings.private_key, args.chain_id, address, args.nonce)
    else:
        sender = SetCodeSender(settings)
        auth = sender.sign_delegation(address, chain_id=args.chain_id, nonce=args.nonce, self_sponsored=False)
    print(json.dumps(auth.to_rpc_dict(), indent=2))
    return 0


def _build(args: argparse.Namespace):
    settings = _settings(args, require_key=True)
    sender = SetCodeSender(settings)
    signed = sender.build_delegation_transaction(
        implementation=args.implementation,
        to=args.to,
        data=args.data or b'',
        value=_parse_value(args.value),
        gas_limit=args.gas,
    )
    return sender, signed


def cmd_build(args: argparse.Namespace) -> int:
    _, signed = _build(args)
    tx = signed.transaction
    rows = [
        ["Sender", signed.recover_sender()],
        ["Chain ID", tx.chain_id],
        ["Nonce", tx.nonce],
        ["Authorizations", len(tx.authorization_list)],
        ["Tx hash", "0x" + signed.hash.hex()],
    ]
    print(tabulate(rows, tablefmt="plain"), file=sys.stderr)
    print(signed.hex())
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    sender, signed = _build(args)
    try:
        tx_hash = sender.send(signed)
    except ProtocolRejection as e:
        print(f"Rejected by node: {e}", file=sys.stderr)
        return 1
    print(f"Transaction sent: {tx_hash}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    settings = _settings(args, require_key=args.account is None)
    if args.account is None:
        sender = SetCodeSender(settings)
        account, delegate = sender.address, sender.get_delegation()
    else:
        account = args.account
        delegate = get_delegation(make_web3(settings.rpc_url, settings.timeout), account)
    print(tabulate([[account, delegate or "none"]], headers=["Account", "Delegated to"], tablefmt="grid"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="EIP-7702 probe, authorization signer and transaction builder")
    parser.add_argument("--env", dest="env_file", default=None, help="Path to .env file to load")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="cmd")

    p_probe = sub.add_parser("probe", help="Check whether an RPC endpoint supports EIP-7702")
    p_probe.add_argument("--rpc-url", dest="rpc_url", help="RPC endpoint (default RPC_URL)")
    p_probe.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")
    p_probe.set_defaults(func=cmd_probe)

    p_auth = sub.add_parser("sign-auth", help="Sign an authorization tuple")
    p_auth.add_argument("--address", help="Delegate contract (default IMPLEMENTATION_ADDRESS)")
    p_auth.add_argument("--nonce", type=int, default=None, help="Authority nonce (default: read from chain)")
    p_auth.add_argument("--chain-id", dest="chain_id", type=int, default=None, help="Chain id, 0 for any chain")
    p_auth.set_defaults(func=cmd_sign_auth)

    for name, func, help_text in (
        ("build", cmd_build, "Build and sign a set-code transaction without sending it"),
        ("send", cmd_send, "Build, sign and broadcast a set-code transaction"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--implementation", help="Delegate contract (default IMPLEMENTATION_ADDRESS)")
        p.add_argument("--to", help="Call target (default: the sender itself)")
        p.add_argument("--data", help="0x-hex calldata")
        p.add_argument("--value", help="Wei to send (default 0)")
        p.add_argument("--gas", type=int, default=None, help="Gas limit (default GAS_LIMIT)")
        p.add_argument("--chain-id", dest="chain_id", type=int, default=None, help="Override chain id")
        p.set_defaults(func=func)

    p_status = sub.add_parser("status", help="Show an account's current delegation")
    p_status.add_argument("--account", help="Account to inspect (default: PRIVATE_KEY's address)")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return int(args.func(args))
    except PectraError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
