"""
EVM HTLC client for the SwapSageHTLC contract.

One contract holds every HTLC, keyed by a caller-chosen bytes32 id.
Supports ERC20 tokens (approve + fund) and the native coin (token = 0x0).
"""

import logging
import threading
from typing import Optional, Dict, Any

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from eth_account import Account

from ..config import ChainConfig, ResolverConfig
from ..core import normalize_hex32
from ..errors import (
    ResolverError, ChainTransientError, AmbiguousSubmission, ChainRejected,
    HTLCNotFound, InsufficientFunds, classify_rejection,
)
from .base import HTLCClient, HTLCDetails, HTLCState, TxReceipt

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
MAX_UINT256 = 2**256 - 1

# Contract ABI (minimal - only functions we use)
HTLC_ABI = [
    {
        "name": "fund",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "_contractId", "type": "bytes32"},
            {"name": "_token", "type": "address"},
            {"name": "_beneficiary", "type": "address"},
            {"name": "_hashLock", "type": "bytes32"},
            {"name": "_timelock", "type": "uint256"},
            {"name": "_value", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "claim",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_contractId", "type": "bytes32"},
            {"name": "_preimage", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_contractId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getDetails",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "_contractId", "type": "bytes32"}],
        "outputs": [
            {"name": "token", "type": "address"},
            {"name": "beneficiary", "type": "address"},
            {"name": "originator", "type": "address"},
            {"name": "hashLock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
            {"name": "value", "type": "uint256"},
            {"name": "state", "type": "uint8"}
        ]
    },
    {
        "name": "isClaimable",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "_contractId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "isRefundable",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "_contractId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "getCurrentTime",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "Claimed",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "contractId", "type": "bytes32", "indexed": True},
            {"name": "beneficiary", "type": "address", "indexed": True},
            {"name": "preimage", "type": "bytes32", "indexed": False},
            {"name": "value", "type": "uint256", "indexed": False}
        ]
    }
]

# ERC20 approve ABI
ERC20_APPROVE_ABI = [
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

CLAIMED_EVENT_SIGNATURE = "Claimed(bytes32,address,bytes32,uint256)"


def _to_bytes32(value: str) -> bytes:
    return bytes.fromhex(normalize_hex32(value)[2:])


def _raw_bytes(data) -> bytes:
    if isinstance(data, str):
        return bytes.fromhex(data[2:] if data.startswith("0x") else data)
    return bytes(data)


class EVMHTLCClient(HTLCClient):
    """
    HTLC client for one EVM chain.

    Transactions are signed locally with the pool key and submitted
    serially per client so concurrent swaps never race on the nonce.
    """

    def __init__(self, chain: ChainConfig, resolver: ResolverConfig, w3: Optional[Web3] = None):
        self.chain_name = chain.name
        self.tokens = dict(chain.tokens)
        self.chain_id = chain.chain_id
        self.gas_limit = resolver.gas_limit
        self.max_gas_price = resolver.max_gas_price
        self.gas_price_multiplier_pct = resolver.gas_price_multiplier_pct
        self.tx_timeout = resolver.tx_timeout
        self.log_lookback_blocks = chain.log_lookback_blocks

        self.w3 = w3 or Web3(Web3.HTTPProvider(
            chain.rpc_url, request_kwargs={"timeout": resolver.rpc_timeout}
        ))

        private_key = chain.private_key or ""
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        self.account = Account.from_key(private_key)

        self.htlc_address = Web3.to_checksum_address(chain.htlc_address)
        self.contract = self.w3.eth.contract(address=self.htlc_address, abi=HTLC_ABI)
        self._tx_lock = threading.Lock()

    @property
    def pool_address(self) -> str:
        return self.account.address

    # =========================================================================
    # Views
    # =========================================================================

    def _view(self, fn, label: str):
        try:
            return fn.call()
        except ContractLogicError as e:
            raise classify_rejection(str(e), context={"chain": self.chain_name, "call": label})
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainTransientError(f"{self.chain_name} {label} failed: {e}",
                                      context={"chain": self.chain_name})

    def get_details(self, contract_id: str) -> HTLCDetails:
        token, beneficiary, originator, hash_lock, timelock, value, state = self._view(
            self.contract.functions.getDetails(_to_bytes32(contract_id)), "getDetails"
        )
        if state == HTLCState.INVALID:
            raise HTLCNotFound(f"HTLC {contract_id} not found on {self.chain_name}",
                               context={"contract_id": contract_id})
        return HTLCDetails(
            contract_id=normalize_hex32(contract_id),
            token=token,
            beneficiary=beneficiary,
            originator=originator,
            hash_lock="0x" + _raw_bytes(hash_lock).hex(),
            timelock=int(timelock),
            value=int(value),
            state=HTLCState(state),
        )

    def is_claimable(self, contract_id: str) -> bool:
        return bool(self._view(self.contract.functions.isClaimable(_to_bytes32(contract_id)), "isClaimable"))

    def is_refundable(self, contract_id: str) -> bool:
        return bool(self._view(self.contract.functions.isRefundable(_to_bytes32(contract_id)), "isRefundable"))

    def current_time(self) -> int:
        try:
            return int(self.w3.eth.get_block("latest")["timestamp"])
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainTransientError(f"{self.chain_name} get_block failed: {e}")

    def derive_contract_id(self, seed: str) -> str:
        return Web3.to_hex(Web3.keccak(text=seed))

    def resolve_token(self, token: str) -> str:
        resolved = super().resolve_token(token)
        if resolved.lower() in ("native", "eth", ZERO_ADDRESS):
            return ZERO_ADDRESS
        return resolved

    # =========================================================================
    # Transactions
    # =========================================================================

    def _gas_price(self) -> int:
        network_price = int(self.w3.eth.gas_price)
        if network_price > self.max_gas_price:
            raise ChainTransientError(
                f"{self.chain_name} gas price {network_price} above cap {self.max_gas_price}",
                context={"gas_price": network_price},
            )
        return min(network_price * self.gas_price_multiplier_pct // 100, self.max_gas_price)

    def _send(self, fn, label: str, value: int = 0, gas: Optional[int] = None) -> TxReceipt:
        """Simulate, sign, broadcast and wait for one transaction."""
        sender = self.account.address

        # Simulate first so reverts surface as ChainRejected without spending gas
        try:
            fn.call({"from": sender, "value": value})
        except ContractLogicError as e:
            log.warning(f"{self.chain_name} {label} simulation reverted: {e}")
            raise classify_rejection(str(e), context={"chain": self.chain_name, "call": label})
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainTransientError(f"{self.chain_name} {label} simulation failed: {e}")

        with self._tx_lock:
            try:
                nonce = self.w3.eth.get_transaction_count(sender, "pending")
                tx_params: Dict[str, Any] = {
                    "from": sender,
                    "nonce": nonce,
                    "gas": gas or self.gas_limit,
                    "gasPrice": self._gas_price(),
                    "value": value,
                }
                if self.chain_id is not None:
                    tx_params["chainId"] = int(self.chain_id)
                tx = fn.build_transaction(tx_params)
                signed = self.account.sign_transaction(tx)
            except ResolverError:
                raise
            except (Web3Exception, OSError, ValueError) as e:
                raise ChainTransientError(f"{self.chain_name} {label} build failed: {e}")

            tx_hash = Web3.to_hex(signed.hash)
            try:
                self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except OSError as e:
                # Transport failure: the node may have accepted the tx
                raise AmbiguousSubmission(f"{self.chain_name} {label} broadcast outcome unknown: {e}",
                                          tx_hash=tx_hash)
            except (Web3Exception, ValueError) as e:
                # Node answered with an error
                message = str(e).lower()
                if "insufficient funds" in message:
                    raise InsufficientFunds(f"{self.chain_name} {label}: {e}")
                if "already known" in message:
                    raise AmbiguousSubmission(f"{self.chain_name} {label} already in mempool: {e}",
                                              tx_hash=tx_hash)
                raise ChainTransientError(f"{self.chain_name} {label} submit failed: {e}")

        log.info(f"{self.chain_name} {label} TX: {tx_hash}")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        except TimeExhausted:
            raise AmbiguousSubmission(
                f"{self.chain_name} {label} not confirmed within {self.tx_timeout}s",
                tx_hash=tx_hash,
            )
        except (Web3Exception, OSError, ValueError) as e:
            raise AmbiguousSubmission(f"{self.chain_name} {label} receipt lookup failed: {e}", tx_hash=tx_hash)

        if receipt["status"] != 1:
            raise ChainRejected(f"{self.chain_name} {label} reverted", context={"tx_hash": tx_hash})

        return TxReceipt(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )

    def _ensure_allowance(self, token: str, value: int):
        erc20 = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_APPROVE_ABI)
        current = self._view(erc20.functions.allowance(self.account.address, self.htlc_address), "allowance")
        if current >= value:
            return
        log.info(f"{self.chain_name} allowance {current} < {value}, approving HTLC contract for {token}")
        self._send(erc20.functions.approve(self.htlc_address, MAX_UINT256), "approve", gas=100_000)

    def fund(self, contract_id: str, token: str, beneficiary: str,
             hash_lock: str, timelock: int, value: int) -> TxReceipt:
        token_address = self.resolve_token(token)
        native = token_address == ZERO_ADDRESS
        if not native:
            self._ensure_allowance(token_address, value)

        fn = self.contract.functions.fund(
            _to_bytes32(contract_id),
            Web3.to_checksum_address(token_address),
            Web3.to_checksum_address(beneficiary),
            _to_bytes32(hash_lock),
            int(timelock),
            int(value),
        )
        receipt = self._send(fn, "fund", value=value if native else 0)
        receipt.contract_id = normalize_hex32(contract_id)
        return receipt

    def claim(self, contract_id: str, preimage: str) -> TxReceipt:
        fn = self.contract.functions.claim(_to_bytes32(contract_id), _to_bytes32(preimage))
        receipt = self._send(fn, "claim")
        receipt.contract_id = normalize_hex32(contract_id)
        return receipt

    def refund(self, contract_id: str) -> TxReceipt:
        receipt = self._send(self.contract.functions.refund(_to_bytes32(contract_id)), "refund")
        receipt.contract_id = normalize_hex32(contract_id)
        return receipt

    # =========================================================================
    # Event lookup
    # =========================================================================

    def get_claim_preimage(self, contract_id: str) -> Optional[str]:
        """Read the preimage from the Claimed event of contract_id."""
        topic0 = Web3.to_hex(Web3.keccak(text=CLAIMED_EVENT_SIGNATURE))
        try:
            latest = self.w3.eth.block_number
            logs = self.w3.eth.get_logs({
                "address": self.htlc_address,
                "fromBlock": max(0, latest - self.log_lookback_blocks),
                "toBlock": "latest",
                "topics": [topic0, normalize_hex32(contract_id)],
            })
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainTransientError(f"{self.chain_name} get_logs failed: {e}")

        for entry in logs:
            data = _raw_bytes(entry["data"])
            if len(data) >= 32:
                return "0x" + data[:32].hex()
        return None
