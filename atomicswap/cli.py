"""
atomicswap command line tool.

Usage:
    atomicswap [flags] initiate <participant address> <amount>
    atomicswap [flags] participate <initiator address> <amount> <secret hash>
    atomicswap [flags] redeem <contract> <contract transaction> <secret>
    atomicswap [flags] refund <contract> <contract transaction>
    atomicswap [flags] extractsecret <redemption transaction> <secret hash>
    atomicswap [flags] auditcontract <contract> <contract transaction>

Amounts are in BTC. Transactions are raw hex or a txid known to the node.
"""

import argparse
import logging
import sys
from datetime import datetime, timezone

from bitcoin.core import b2x, b2lx

from .core import btc_to_sats, sats_to_btc, parse_hex, DEFAULT_FEE_RATE, DEFAULT_RPC_TIMEOUT
from .chains.btc import BTCConfig, BTCClient
from .chains.profiles import PROFILES, TIMESTAMP
from .chains.wallet import KeySigner, NodeWalletSigner
from .errors import AtomicSwapError
from .swap.orchestrator import SwapConfig, SwapOrchestrator, LegResult, NETWORKS

log = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


class _Parser(argparse.ArgumentParser):
    """Prints usage and exits 1 on bad arguments."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"error: {message}", file=sys.stderr)
        sys.exit(1)


def _amount(value: str) -> int:
    try:
        return btc_to_sats(value)
    except AtomicSwapError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="atomicswap",
        description="Cross-chain atomic swap (HTLC) tool for one chain's leg",
    )
    parser.add_argument("-s", "--server", default="localhost",
                        help="RPC server, host[:port] (default port per network)")
    parser.add_argument("--rpcuser", default="", help="RPC username")
    parser.add_argument("--rpcpass", default="", help="RPC password")
    parser.add_argument("--wallet", default="", help="Node wallet name")
    parser.add_argument("--network", choices=NETWORKS, default="mainnet")
    parser.add_argument("--testnet", action="store_true", help="Shorthand for --network testnet")
    parser.add_argument("--hash", dest="profile", choices=sorted(PROFILES), default="sha256",
                        help="Hash-lock function, must match the counterpart chain")
    parser.add_argument("--feerate", type=int, default=DEFAULT_FEE_RATE, help="Fee rate in sat/vB")
    parser.add_argument("--timeout", type=float, default=DEFAULT_RPC_TIMEOUT,
                        help="Seconds allowed for all RPC calls of a command")
    parser.add_argument("--wif", action="append", default=[],
                        help="Private key to sign with (repeatable); default is the node wallet")
    parser.add_argument("-y", "--yes", action="store_true",
                        help="Publish transactions without asking")
    parser.add_argument("-v", "--verbose", action="count", default=0)

    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.required = True

    p = commands.add_parser("initiate", help="Start a swap as initiator")
    p.add_argument("participant_address")
    p.add_argument("amount", type=_amount)

    p = commands.add_parser("participate", help="Join a swap as participant")
    p.add_argument("initiator_address")
    p.add_argument("amount", type=_amount)
    p.add_argument("secret_hash")
    p.add_argument("--initiator-locktime", type=int,
                   help="Locktime of the initiator's contract; ours must be earlier")

    p = commands.add_parser("redeem", help="Redeem a contract with the secret")
    p.add_argument("contract")
    p.add_argument("contract_tx")
    p.add_argument("secret")

    p = commands.add_parser("refund", help="Refund a contract after its locktime")
    p.add_argument("contract")
    p.add_argument("contract_tx")

    p = commands.add_parser("extractsecret", help="Read the secret from a redeem transaction")
    p.add_argument("redemption_tx")
    p.add_argument("secret_hash")

    p = commands.add_parser("auditcontract", help="Check a counterpart's contract")
    p.add_argument("contract")
    p.add_argument("contract_tx")
    p.add_argument("--amount", type=_amount, help="Minimum amount the contract must lock")
    p.add_argument("--secret-hash", help="Secret hash the contract must commit to")

    return parser


def configure_logging(verbosity: int):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _format_locktime(locktime: int, semantics: str) -> str:
    if semantics == TIMESTAMP:
        when = datetime.fromtimestamp(locktime, timezone.utc)
        return f"{locktime} ({when:%Y-%m-%d %H:%M:%S} UTC)"
    return f"{locktime} (block height)"


def _confirm(orchestrator: SwapOrchestrator, tx, what: str, assume_yes: bool):
    if not assume_yes:
        answer = input(f"Publish {what} transaction? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Not published")
            return
    txid = orchestrator.publish(tx)
    print(f"Published {what} transaction ({txid})")


def _print_funded(result: LegResult, fee_rate: int):
    contract = result.contract
    if result.secret is not None:
        print(f"Secret:      {result.secret.hex()}")
    print(f"Secret hash: {contract.secret_hash.hex()}")
    print()
    print(f"Contract fee: {sats_to_btc(result.contract_fee)} BTC")
    if result.refund is not None:
        print(f"Refund fee:   {sats_to_btc(result.refund.fee)} BTC ({fee_rate} sat/vB)")
    print()
    print(f"Contract ({contract.address}):")
    print(contract.script.hex())
    print()
    print(f"Contract transaction ({b2lx(result.contract_tx.GetTxid())}):")
    print(b2x(result.contract_tx.serialize()))
    if result.refund is not None:
        print()
        print(f"Refund transaction ({result.refund.txid}):")
        print(result.refund.hex)
    print()


def _print_spend(result: LegResult, what: str, fee_rate: int):
    spend = result.spend
    print(f"{what} fee: {sats_to_btc(spend.fee)} BTC ({fee_rate} sat/vB)")
    print(f"Pays {sats_to_btc(spend.value)} BTC to {spend.payout_address}")
    print()
    print(f"{what} transaction ({spend.txid}):")
    print(spend.hex)
    print()


def _print_audit(result: LegResult, semantics: str):
    audit = result.audit
    print(f"Contract address:        {audit.contract_address}")
    print(f"Contract value:          {sats_to_btc(audit.locked_amount)} BTC")
    print(f"Funding output:          {audit.funding_txid}:{audit.output_index}")
    print(f"Recipient address:       {audit.recipient}")
    print(f"Author's refund address: {audit.refund_address}")
    print()
    print(f"Secret hash: {audit.secret_hash}")
    print()
    print(f"Locktime: {_format_locktime(audit.locktime, semantics)}")
    print(f"Locktime reached in {audit.locktime_remaining} "
          f"{'seconds' if semantics == TIMESTAMP else 'blocks'}")


def run(args, orchestrator: SwapOrchestrator):
    """Execute the parsed command."""
    profile = orchestrator.profile
    fee_rate = orchestrator.config.fee_rate

    if args.command == "initiate":
        result = orchestrator.initiate(args.participant_address, args.amount)
        _print_funded(result, fee_rate)
        _confirm(orchestrator, result.contract_tx, "contract", args.yes)

    elif args.command == "participate":
        secret_hash = parse_hex(args.secret_hash, "secret hash")
        result = orchestrator.participate(
            args.initiator_address, args.amount, secret_hash, args.initiator_locktime
        )
        _print_funded(result, fee_rate)
        _confirm(orchestrator, result.contract_tx, "contract", args.yes)

    elif args.command == "redeem":
        result = orchestrator.redeem(args.contract, args.contract_tx, args.secret)
        _print_spend(result, "Redeem", fee_rate)
        _confirm(orchestrator, result.spend.tx, "redeem", args.yes)

    elif args.command == "refund":
        result = orchestrator.refund(args.contract, args.contract_tx)
        _print_spend(result, "Refund", fee_rate)
        _confirm(orchestrator, result.spend.tx, "refund", args.yes)

    elif args.command == "extractsecret":
        secret = orchestrator.extract_secret(args.redemption_tx, args.secret_hash)
        print(f"Secret: {secret.hex()}")

    elif args.command == "auditcontract":
        expected_hash = None
        if args.secret_hash:
            expected_hash = parse_hex(args.secret_hash, "secret hash", profile.secret_hash_size)
        result = orchestrator.audit_contract(
            args.contract, args.contract_tx,
            expected_amount=args.amount, expected_secret_hash=expected_hash,
        )
        _print_audit(result, profile.locktime_semantics)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    network = "testnet" if args.testnet else args.network
    log.debug(f"Running {args.command} on {network}")
    try:
        btc_config = BTCConfig(
            network=network,
            rpc_host=args.server,
            rpc_user=args.rpcuser,
            rpc_password=args.rpcpass,
            wallet_name=args.wallet,
        )
        swap_config = SwapConfig(
            network=network,
            profile=args.profile,
            fee_rate=args.feerate,
            rpc_timeout=args.timeout,
        )
        with BTCClient(btc_config) as client:
            if args.wif:
                signer = KeySigner(args.wif)
            else:
                signer = NodeWalletSigner(client, timeout=args.timeout)
            run(args, SwapOrchestrator(swap_config, client, signer))
    except AtomicSwapError as e:
        suffix = " (retriable)" if e.retriable else ""
        print(f"error: {e}{suffix}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
