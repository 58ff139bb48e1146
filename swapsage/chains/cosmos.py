"""
Cosmos node client for the SwapSage resolver.

Reads go through the LCD REST API (httpx). Transactions are signed and
broadcast by the chain daemon CLI (wasmd, gaiad, ...) using the pool key
from the node keyring, then confirmed by polling the LCD.
"""

import base64
import calendar
import json
import logging
import subprocess
import time
from datetime import datetime
from typing import Optional, Dict, Any, List

import httpx

from ..config import ChainConfig, ResolverConfig
from ..errors import (
    ChainTransientError, AmbiguousSubmission, HTLCNotFound, classify_rejection,
)

log = logging.getLogger(__name__)

TX_POLL_INTERVAL = 2.0


def parse_block_time(value: str) -> int:
    """Parse an RFC3339 block time with nanosecond fraction to unix seconds."""
    base = value.rstrip("Z").split(".")[0]
    return calendar.timegm(datetime.strptime(base, "%Y-%m-%dT%H:%M:%S").timetuple())


class CosmosClient:
    """
    Cosmos SDK node access.

    Provides:
    - CosmWasm smart queries
    - Latest block time
    - Tx broadcast via CLI and confirmation via LCD
    - Tx search by events
    """

    def __init__(self, chain: ChainConfig, resolver: ResolverConfig,
                 http: Optional[httpx.Client] = None):
        self.config = chain
        self.cli_path = chain.cli_path or "wasmd"
        self.rpc_timeout = resolver.rpc_timeout
        self.tx_timeout = resolver.tx_timeout
        self.http = http or httpx.Client(base_url=chain.lcd_url.rstrip("/"), timeout=resolver.rpc_timeout)
        self._key_address: Optional[str] = chain.pool_address or None

    # =========================================================================
    # CLI
    # =========================================================================

    def _build_cmd(self, *args, tx: bool = False) -> List[str]:
        """Build CLI command."""
        cmd = [self.cli_path]
        cmd.extend(str(a) for a in args)
        cmd.extend(["--node", self.config.rpc_url])
        if tx:
            cmd.extend([
                "--from", self.config.key_name,
                "--keyring-backend", self.config.keyring_backend,
                "--chain-id", str(self.config.chain_id),
                "--gas", "auto",
                "--gas-adjustment", "1.3",
                "--broadcast-mode", "sync",
                "-y",
            ])
            if self.config.gas_prices:
                cmd.extend(["--gas-prices", self.config.gas_prices])
        cmd.extend(["-o", "json"])
        return cmd

    def _call(self, *args, tx: bool = False, timeout: Optional[float] = None) -> Any:
        """Execute CLI command, return parsed JSON (or raw text)."""
        cmd = self._build_cmd(*args, tx=tx)
        log.debug(f"{self.config.name} CLI cmd: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.rpc_timeout
            )
        except subprocess.TimeoutExpired:
            if tx:
                raise AmbiguousSubmission(f"{self.config.name} CLI timeout: {args[:3]}")
            raise ChainTransientError(f"{self.config.name} CLI timeout: {args[:3]}")
        except OSError as e:
            raise ChainTransientError(f"{self.config.name} CLI failed to start: {e}")

        if result.returncode != 0:
            error = result.stderr.strip() or result.stdout.strip()
            log.error(f"{self.config.name} CLI error: {args[:3]} -> {error}")
            if tx:
                # Simulation (gas auto) failures carry the contract error
                raise classify_rejection(error, context={"chain": self.config.name})
            raise ChainTransientError(f"{self.config.name} CLI failed: {error}")

        output = result.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return output

    def key_address(self) -> str:
        """Address of the configured keyring key."""
        if self._key_address:
            return self._key_address
        cmd = [self.cli_path, "keys", "show", self.config.key_name, "-a",
               "--keyring-backend", self.config.keyring_backend]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.rpc_timeout)
        except (subprocess.TimeoutExpired, OSError) as e:
            raise ChainTransientError(f"{self.config.name} keys show failed: {e}")
        if result.returncode != 0:
            raise ChainTransientError(f"{self.config.name} keys show failed: {result.stderr.strip()}")
        self._key_address = result.stdout.strip()
        return self._key_address

    def build_address(self, code_hash: str, creator: str, salt_hex: str) -> str:
        """Predict an instantiate2 contract address."""
        out = self._call("query", "wasm", "build-address", code_hash, creator, salt_hex)
        if isinstance(out, dict):
            return out["address"]
        text = str(out).strip()
        if text.startswith("address:"):
            text = text.split(":", 1)[1].strip()
        return text

    def broadcast(self, *args) -> Dict[str, Any]:
        """
        Broadcast a tx and wait until it is included.

        Returns:
            The LCD tx_response of the confirmed tx.

        Raises:
            ChainRejected subclass: CheckTx or DeliverTx failed
            AmbiguousSubmission: broadcast but not seen within tx_timeout
        """
        out = self._call("tx", *args, tx=True)
        if not isinstance(out, dict) or "txhash" not in out:
            raise AmbiguousSubmission(f"{self.config.name} unexpected broadcast output: {out}")
        tx_hash = out["txhash"]
        if int(out.get("code", 0)) != 0:
            raise classify_rejection(out.get("raw_log", ""), context={"tx_hash": tx_hash})
        log.info(f"{self.config.name} TX broadcast: {tx_hash}")
        return self.wait_for_tx(tx_hash)

    def wait_for_tx(self, tx_hash: str) -> Dict[str, Any]:
        deadline = time.time() + self.tx_timeout
        while time.time() < deadline:
            try:
                resp = self.http.get(f"/cosmos/tx/v1beta1/txs/{tx_hash}")
            except httpx.HTTPError as e:
                log.warning(f"{self.config.name} tx lookup failed for {tx_hash}: {e}")
                resp = None
            if resp is not None and resp.status_code == 200:
                tx_response = resp.json().get("tx_response", {})
                if int(tx_response.get("code", 0)) != 0:
                    raise classify_rejection(tx_response.get("raw_log", ""), context={"tx_hash": tx_hash})
                return tx_response
            time.sleep(TX_POLL_INTERVAL)
        raise AmbiguousSubmission(f"{self.config.name} tx {tx_hash} not seen within {self.tx_timeout}s",
                                  tx_hash=tx_hash)

    # =========================================================================
    # LCD queries
    # =========================================================================

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return self.http.get(path, params=params)
        except httpx.HTTPError as e:
            raise ChainTransientError(f"{self.config.name} LCD request failed: {path}: {e}")

    def query_smart(self, contract: str, msg: Dict[str, Any]) -> Any:
        """Run a CosmWasm smart query, return its data field."""
        encoded = base64.urlsafe_b64encode(json.dumps(msg, separators=(",", ":")).encode()).decode()
        resp = self._get(f"/cosmwasm/wasm/v1/contract/{contract}/smart/{encoded}")
        if resp.status_code != 200:
            text = resp.text
            if "not found" in text.lower() or "no such contract" in text.lower():
                raise HTLCNotFound(f"Contract {contract} not found on {self.config.name}",
                                   context={"contract_id": contract})
            raise ChainTransientError(f"{self.config.name} smart query failed ({resp.status_code}): {text[:200]}")
        return resp.json().get("data")

    def latest_block_time(self) -> int:
        resp = self._get("/cosmos/base/tendermint/v1beta1/blocks/latest")
        if resp.status_code != 200:
            raise ChainTransientError(f"{self.config.name} latest block query failed ({resp.status_code})")
        block = resp.json().get("block") or resp.json().get("sdk_block")
        return parse_block_time(block["header"]["time"])

    def search_txs(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Search txs by event query, newest first."""
        resp = self._get("/cosmos/tx/v1beta1/txs", params={
            "query": query,
            "order_by": "ORDER_BY_DESC",
            "pagination.limit": limit,
        })
        if resp.status_code != 200:
            raise ChainTransientError(f"{self.config.name} tx search failed ({resp.status_code})")
        return resp.json().get("tx_responses") or []

    def close(self):
        self.http.close()
