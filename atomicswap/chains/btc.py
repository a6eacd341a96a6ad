"""
Bitcoin RPC Client for atomicswap.

Talks JSON-RPC over HTTP to a Bitcoin Core node (mainnet, testnet, signet,
regtest). Every call takes a timeout in seconds; callers thread one
Deadline through all calls of a command so the command as a whole has a
bounded wait.
"""

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Optional, Any, Tuple
from urllib.parse import urlparse

import httpx
from bitcoin.core import CTransaction, b2x, b2lx, x

from ..core import sats_to_btc, DEFAULT_RPC_TIMEOUT
from ..errors import (
    InvalidParameter, NetworkError, RPCError, BroadcastRejected,
    TransactionNotFound, SigningError,
)

log = logging.getLogger(__name__)

DEFAULT_PORTS = {
    "mainnet": 8332,
    "testnet": 18332,
    "signet": 38332,
    "regtest": 18443,
}

# Bitcoin Core RPC_INVALID_ADDRESS_OR_KEY, returned for unknown txids
RPC_INVALID_ADDRESS_OR_KEY = -5


@dataclass
class BTCConfig:
    """Bitcoin node configuration."""
    network: str = "mainnet"        # mainnet, testnet, signet, regtest
    rpc_host: str = "localhost"     # host[:port] or URL
    rpc_user: str = ""
    rpc_password: str = ""
    wallet_name: str = ""           # Empty = default loaded wallet

    @property
    def url(self) -> str:
        if self.network not in DEFAULT_PORTS:
            raise InvalidParameter(f"unknown network {self.network!r}")
        return normalize_address(self.rpc_host, DEFAULT_PORTS[self.network])


@dataclass
class Block:
    """Chain tip as reported by the node."""
    height: int
    hash: str
    time: int
    median_time: int


class Deadline:
    """Absolute deadline shared by all RPC calls of one command."""

    def __init__(self, seconds: float = DEFAULT_RPC_TIMEOUT):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())


def normalize_address(addr: str, default_port: int) -> str:
    """
    Turn host, host:port or a URL into an RPC URL with an explicit port.

    Examples:
        localhost        -> http://localhost:8332
        10.0.0.2:18443   -> http://10.0.0.2:18443
        https://node:443 -> https://node:443
    """
    if "://" not in addr:
        addr = "http://" + addr
    parsed = urlparse(addr)
    if not parsed.hostname:
        raise InvalidParameter(f"invalid RPC server address {addr!r}")
    try:
        port = parsed.port
    except ValueError:
        raise InvalidParameter(f"invalid port in RPC server address {addr!r}") from None
    host = parsed.hostname
    if ":" in host:
        host = f"[{host}]"
    return f"{parsed.scheme}://{host}:{port or default_port}"


class BTCClient:
    """
    Bitcoin Core JSON-RPC client.

    Only the calls the swap needs: chain tip, raw transaction lookup,
    broadcast, and the wallet calls used to fund contracts and sign.
    """

    def __init__(self, config: BTCConfig, http: Optional[httpx.Client] = None):
        self.config = config
        self.url = config.url
        if config.wallet_name:
            self.url += f"/wallet/{config.wallet_name}"
        auth = (config.rpc_user, config.rpc_password) if config.rpc_user else None
        self._http = http or httpx.Client(auth=auth)
        self._ids = itertools.count(1)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _call(self, method: str, *params, timeout: float = DEFAULT_RPC_TIMEOUT) -> Any:
        """Execute one JSON-RPC call, bounded by timeout seconds."""
        if timeout <= 0:
            raise NetworkError(f"BTC RPC deadline exceeded before {method}")

        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        log.debug(f"BTC RPC {method} (timeout {timeout:.1f}s)")

        try:
            response = self._http.post(self.url, json=payload, timeout=timeout)
        except httpx.TimeoutException:
            raise NetworkError(f"BTC RPC timeout: {method}") from None
        except httpx.HTTPError as e:
            raise NetworkError(f"BTC RPC {method} failed: {e}") from None

        if response.status_code in (401, 403):
            raise RPCError(
                f"BTC RPC {method}: HTTP {response.status_code} {response.reason_phrase}, "
                f"check --rpcuser/--rpcpass and rpcallowip"
            )

        # Bitcoin Core reports RPC errors with HTTP 500 and a JSON body
        try:
            body = response.json()
        except ValueError:
            raise NetworkError(
                f"BTC RPC {method}: HTTP {response.status_code} {response.reason_phrase}"
            ) from None

        error = body.get("error")
        if error:
            log.error(f"BTC RPC error: {method} -> {error}")
            raise RPCError(error.get("message", str(error)), code=error.get("code"))
        return body.get("result")

    # =========================================================================
    # Chain
    # =========================================================================

    def get_latest_block(self, timeout: float = DEFAULT_RPC_TIMEOUT) -> Block:
        """Current chain tip: height, hash, time and median time past."""
        info = self._call("getblockchaininfo", timeout=timeout)
        median_time = info["mediantime"]
        return Block(
            height=info["blocks"],
            hash=info["bestblockhash"],
            time=info.get("time", median_time),
            median_time=median_time,
        )

    def get_transaction(self, txid: str, timeout: float = DEFAULT_RPC_TIMEOUT) -> CTransaction:
        """Fetch and deserialize a transaction (needs -txindex for confirmed non-wallet txs)."""
        try:
            raw = self._call("getrawtransaction", txid, timeout=timeout)
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                raise TransactionNotFound(f"transaction {txid} not found: {e}") from None
            raise
        return CTransaction.deserialize(x(raw))

    def broadcast(self, tx: CTransaction, timeout: float = DEFAULT_RPC_TIMEOUT) -> str:
        """Broadcast a transaction; a node rejection is raised verbatim."""
        try:
            txid = self._call("sendrawtransaction", b2x(tx.serialize()), timeout=timeout)
        except RPCError as e:
            raise BroadcastRejected(str(e), code=e.code) from None
        log.info(f"Broadcast transaction {txid}")
        return txid

    # =========================================================================
    # Wallet
    # =========================================================================

    def get_new_address(self, timeout: float = DEFAULT_RPC_TIMEOUT,
                        label: str = "atomicswap", address_type: str = "bech32") -> str:
        """Generate a new wallet address."""
        return self._call("getnewaddress", label, address_type, timeout=timeout)

    def fund_output(self, address: str, amount_sats: int, fee_rate: int,
                    deadline: Optional[Deadline] = None) -> Tuple[CTransaction, int]:
        """
        Build a signed wallet transaction paying amount_sats to address.

        The transaction is not broadcast. The three wallet calls share one
        deadline, each getting the time left on it.

        Returns:
            (transaction, fee in sats)
        """
        deadline = deadline or Deadline()
        outputs = {address: f"{sats_to_btc(amount_sats):.8f}"}
        raw = self._call("createrawtransaction", [], outputs, timeout=deadline.remaining())
        funded = self._call("fundrawtransaction", raw, {"fee_rate": fee_rate},
                            timeout=deadline.remaining())
        signed = self._call("signrawtransactionwithwallet", funded["hex"],
                            timeout=deadline.remaining())
        if not signed.get("complete"):
            raise SigningError(f"wallet could not sign funding transaction: {signed.get('errors')}")

        tx = CTransaction.deserialize(x(signed["hex"]))
        fee = int(round(funded["fee"] * 100_000_000))
        log.info(f"Funded {amount_sats} sats to {address}, txid={b2lx(tx.GetTxid())}, fee={fee}")
        return tx, fee

    def dump_private_key(self, address: str, timeout: float = DEFAULT_RPC_TIMEOUT) -> str:
        """WIF private key of a wallet address (legacy wallets only)."""
        return self._call("dumpprivkey", address, timeout=timeout)
