"""
CosmWasm HTLC client.

Each HTLC is its own contract instance. Instances are created with
instantiate2 so the contract address is known before funding: the address
is the swap's deterministic contract id, and a second instantiate with the
same salt is refused by the chain.
"""

import base64
import hashlib
import json
import logging
import threading
from typing import Optional, Dict, Any

from ..config import ChainConfig, ResolverConfig
from ..chains.cosmos import CosmosClient
from ..core import normalize_hex32
from ..errors import HTLCNotFound, ValidationError, ContractExists
from .base import HTLCClient, HTLCDetails, HTLCState, TxReceipt

log = logging.getLogger(__name__)

_STATES = {
    "Open": HTLCState.OPEN,
    "Claimed": HTLCState.CLAIMED,
    "Refunded": HTLCState.REFUNDED,
}


def hex_to_b64(value: str) -> str:
    return base64.b64encode(bytes.fromhex(normalize_hex32(value)[2:])).decode()


def b64_to_hex(value: str) -> str:
    return "0x" + base64.b64decode(value).hex()


def _event_attributes(tx_response: Dict[str, Any], event_type: str):
    events = list(tx_response.get("events") or [])
    for entry in tx_response.get("logs") or []:
        events.extend(entry.get("events") or [])
    for event in events:
        if event.get("type") != event_type:
            continue
        for attr in event.get("attributes") or []:
            yield attr.get("key"), attr.get("value")


class CosmosHTLCClient(HTLCClient):
    """HTLC client for one CosmWasm chain."""

    def __init__(self, chain: ChainConfig, resolver: ResolverConfig,
                 client: Optional[CosmosClient] = None):
        self.chain_name = chain.name
        self.config = chain
        self.tokens = dict(chain.tokens)
        self.client = client or CosmosClient(chain, resolver)
        self._salts: Dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def pool_address(self) -> str:
        return self.client.key_address()

    def is_native(self, token: str) -> bool:
        return not token.startswith(self.config.address_prefix + "1")

    def resolve_token(self, token: str) -> str:
        resolved = super().resolve_token(token)
        if resolved.lower() in ("native", ""):
            return self.config.native_denom
        return resolved

    def derive_contract_id(self, seed: str) -> str:
        """instantiate2 address for salt = sha256(seed)."""
        salt = hashlib.sha256(seed.encode()).hexdigest()
        address = self.client.build_address(self.config.code_hash, self.pool_address, salt)
        with self._lock:
            self._salts[address] = salt
        return address

    # =========================================================================
    # Queries
    # =========================================================================

    def get_details(self, contract_id: str) -> HTLCDetails:
        swap = self.client.query_smart(contract_id, {"get_swap": {}})
        if not swap:
            raise HTLCNotFound(f"HTLC {contract_id} not found on {self.chain_name}")
        details = HTLCDetails(
            contract_id=contract_id,
            token=swap.get("token") or self.config.native_denom,
            beneficiary=swap["beneficiary"],
            originator=swap["sender"],
            hash_lock=b64_to_hex(swap["hash_lock"]),
            timelock=int(swap["timelock"]),
            value=int(swap["amount"]),
            state=_STATES.get(swap.get("state"), HTLCState.INVALID),
        )
        # A CW20 instance is only live once the token send landed
        if swap.get("token") and details.state == HTLCState.OPEN:
            if self._token_balance(swap["token"], contract_id) < details.value:
                raise HTLCNotFound(f"HTLC {contract_id} on {self.chain_name} is instantiated but not funded")
        return details

    def _token_balance(self, token: str, holder: str) -> int:
        data = self.client.query_smart(token, {"balance": {"address": holder}}) or {}
        return int(data.get("balance", 0))

    def is_claimable(self, contract_id: str) -> bool:
        return bool(self.client.query_smart(contract_id, {"is_claimable": {}}))

    def is_refundable(self, contract_id: str) -> bool:
        return bool(self.client.query_smart(contract_id, {"is_refundable": {}}))

    def current_time(self) -> int:
        return self.client.latest_block_time()

    def get_claim_preimage(self, contract_id: str) -> Optional[str]:
        query = f"wasm._contract_address='{contract_id}' AND wasm.method='claim'"
        for tx in self.client.search_txs(query, limit=5):
            for key, value in _event_attributes(tx, "wasm"):
                if key != "preimage" or not value:
                    continue
                raw = value[2:] if value.startswith("0x") else value
                if len(raw) == 64:
                    return "0x" + raw.lower()
                return b64_to_hex(value)
        return None

    # =========================================================================
    # Transactions
    # =========================================================================

    def _receipt(self, tx_response: Dict[str, Any], contract_id: str) -> TxReceipt:
        return TxReceipt(
            tx_hash=tx_response.get("txhash", ""),
            contract_id=contract_id,
            block_number=int(tx_response["height"]) if tx_response.get("height") else None,
            gas_used=int(tx_response["gas_used"]) if tx_response.get("gas_used") else None,
        )

    def fund(self, contract_id: str, token: str, beneficiary: str,
             hash_lock: str, timelock: int, value: int) -> TxReceipt:
        with self._lock:
            salt = self._salts.get(contract_id)
        if salt is None:
            raise ValidationError(f"Contract id {contract_id} was not derived by this client")

        denom = self.resolve_token(token)
        native = self.is_native(denom)
        msg = {
            "sender": self.pool_address,
            "beneficiary": beneficiary,
            "hash_lock": hex_to_b64(hash_lock),
            "timelock": int(timelock),
            "amount": str(value),
        }
        if not native:
            msg["token"] = denom

        args = [
            "wasm", "instantiate2", self.config.code_id, json.dumps(msg), salt,
            "--label", f"SwapSage HTLC {contract_id}",
            "--no-admin",
        ]
        if native:
            args.extend(["--amount", f"{value}{denom}"])
        try:
            tx_response = self.client.broadcast(*args)
            log.info(f"{self.chain_name} HTLC instantiated at {contract_id}")
        except ContractExists:
            # An earlier attempt may have stopped between instantiate and send
            if native or self._token_balance(denom, contract_id) > 0:
                raise
            log.warning(f"{self.chain_name} HTLC {contract_id} exists unfunded, resuming with token send")

        if not native:
            # CW20: send tokens into the HTLC with a fund hook
            hook = base64.b64encode(json.dumps({"fund": {
                "beneficiary": beneficiary,
                "hash_lock": msg["hash_lock"],
                "timelock": msg["timelock"],
            }}).encode()).decode()
            send = {"send": {"contract": contract_id, "amount": str(value), "msg": hook}}
            tx_response = self.client.broadcast("wasm", "execute", denom, json.dumps(send))

        return self._receipt(tx_response, contract_id)

    def claim(self, contract_id: str, preimage: str) -> TxReceipt:
        msg = {"claim": {"preimage": hex_to_b64(preimage)}}
        return self._receipt(self.client.broadcast("wasm", "execute", contract_id, json.dumps(msg)), contract_id)

    def refund(self, contract_id: str) -> TxReceipt:
        tx_response = self.client.broadcast("wasm", "execute", contract_id, json.dumps({"refund": {}}))
        return self._receipt(tx_response, contract_id)
