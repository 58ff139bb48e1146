#!/usr/bin/env python3
"""
Resolver Service Tests

Wiring, event fan-out, liquidity bootstrap and operator actions.

Usage:
    python test_service.py
"""

import sys
import os
import time
import unittest

# Add package root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from swapsage.config import ServiceConfig, ResolverConfig, ChainConfig
from swapsage.core import SwapRequest, SwapStatus, OperationType, OperationStatus, generate_secret
from swapsage.errors import ContractExists, SwapConflict, SwapNotFound, PreimageMismatch
from swapsage.pool.ledger import LiquidityLedger
from swapsage.service import ResolverService
from swapsage.swap.engine import pool_contract_seed
from swapsage.swap.repository import SwapRepository

from fake_chain import FakeHTLCClient

SRC = "sepolia"
DST = "cosmos-testnet"
ETH = 10**18


class ServiceTestBase(unittest.TestCase):

    def setUp(self):
        self.src = FakeHTLCClient(SRC, "0xpoolsource", tokens={"MONSTER": "0xmonster"})
        self.dst = FakeHTLCClient(DST, "wasm1pool", tokens={"ATOM": "uatom"})
        self.config = ServiceConfig(
            resolver=ResolverConfig(processing_interval=0.01, retry_backoff_seconds=0),
            liquidity=[
                {"chain": DST, "token": "cosmos-testnet:ATOM", "total_balance": str(10 * ETH),
                 "min_threshold": str(ETH)},
            ],
        )
        self.service = ResolverService(
            self.config,
            clients={SRC: self.src, DST: self.dst},
            repository=SwapRepository(),
            ledger=LiquidityLedger(),
        )
        self.events = []
        for event in ("started", "stopped", "swapProcessed", "swapExpired", "poolLiquidityLow"):
            self.service.on(event, lambda *args, _e=event: self.events.append((_e,) + args))

    def make_swap(self, swap_id="swap-1", amount=5 * ETH):
        preimage, lock = generate_secret()
        contract = "0x" + swap_id.encode().hex().ljust(64, "0")
        self.src.open_htlc(contract, "0xmonster", self.src.pool_address, lock,
                           self.src.now + 4 * 3600, amount)
        self.service.repository.create_swap(SwapRequest(
            id=swap_id, source_chain=SRC, target_chain=DST,
            source_token="sepolia:MONSTER", target_token="cosmos-testnet:ATOM",
            source_amount=amount, expected_amount=amount, hash_lock=lock,
            user_address="wasm1user", user_htlc_contract=contract,
        ))
        return preimage, lock

    def run_cycles(self, n=1):
        for _ in range(n):
            for engine in self.service.engines.values():
                engine.run_cycle()


class TestWiring(ServiceTestBase):

    def test_one_engine_per_chain(self):
        self.assertEqual(sorted(self.service.engines), sorted([SRC, DST]))

    def test_liquidity_bootstrap(self):
        entry = self.service.ledger.get(DST, "ATOM")
        self.assertEqual(entry.total_balance, 10 * ETH)
        self.assertEqual(entry.min_threshold, ETH)

    def test_bootstrap_does_not_overwrite_known_entries(self):
        ledger = LiquidityLedger()
        ledger.set_balance(DST, "ATOM", 3)
        ResolverService(self.config, clients={SRC: self.src, DST: self.dst},
                        repository=SwapRepository(), ledger=ledger)
        self.assertEqual(ledger.get(DST, "ATOM").total_balance, 3)

    def test_per_chain_resolver_overrides(self):
        config = ServiceConfig(
            chains=[ChainConfig(name=DST, family="cosmos", rpc_url="http://localhost:26657",
                                resolver={"max_retries": 7})],
            resolver=ResolverConfig(retry_backoff_seconds=0),
        )
        service = ResolverService(config, clients={SRC: self.src, DST: self.dst},
                                  repository=SwapRepository(), ledger=LiquidityLedger())
        self.assertEqual(service.engines[DST].config.max_retries, 7)
        self.assertEqual(service.engines[DST].config.retry_backoff_seconds, 0)
        self.assertEqual(service.engines[SRC].config.max_retries, 3)

    def test_unknown_event(self):
        with self.assertRaises(ValueError):
            self.service.on("swapExploded", lambda: None)

    def test_handler_errors_are_contained(self):
        def broken(*args):
            raise RuntimeError("handler bug")

        self.service.on("swapProcessed", broken)
        self.make_swap()
        self.run_cycles()
        self.assertEqual(self.service.repository.get_by_id("swap-1").status, SwapStatus.POOL_FULFILLED)
        self.assertIn(("swapProcessed", "swap-1", "POOL_FULFILLED"), self.events)

    def test_off(self):
        calls = []
        handler = lambda *args: calls.append(args)
        self.service.on("swapProcessed", handler)
        self.service.off("swapProcessed", handler)
        self.make_swap()
        self.run_cycles()
        self.assertEqual(calls, [])


class TestLifecycle(ServiceTestBase):

    def test_full_swap(self):
        preimage, _ = self.make_swap()
        self.service.start()
        try:
            deadline = time.time() + 5
            while time.time() < deadline:
                swap = self.service.repository.get_by_id("swap-1")
                if swap.status == SwapStatus.POOL_FULFILLED and swap.pool_htlc_contract in self.dst.htlcs:
                    self.dst.user_claim(swap.pool_htlc_contract, preimage)
                if swap.status == SwapStatus.USER_CLAIMED:
                    break
                time.sleep(0.01)
        finally:
            self.service.stop(timeout=5)

        self.assertEqual(self.service.repository.get_by_id("swap-1").status, SwapStatus.USER_CLAIMED)
        self.assertIn(("started",), self.events)
        self.assertEqual(self.events[-1], ("stopped",))
        self.assertFalse(self.service.running)
        for engine in self.service.engines.values():
            self.assertFalse(engine.running)

    def test_status(self):
        self.make_swap()
        status = self.service.status()
        self.assertFalse(status["running"])
        self.assertEqual(status["swaps"]["PENDING"], 1)
        chains = {c["chain"]: c for c in status["chains"]}
        self.assertEqual(chains[DST]["pending"], 1)
        self.assertEqual(chains[SRC]["pending"], 0)

    def test_stop_when_not_running(self):
        self.service.stop()
        self.assertNotIn(("stopped",), self.events)

    def test_low_liquidity_event(self):
        self.make_swap(amount=9 * ETH + 1)
        self.run_cycles()
        self.assertIn(("poolLiquidityLow", DST, "ATOM"), self.events)


class TestOperatorActions(ServiceTestBase):

    def test_cancel_unfunded(self):
        self.make_swap()
        swap = self.service.cancel_swap("swap-1")
        self.assertEqual(swap.status, SwapStatus.CANCELLED)
        self.assertIn(("swapProcessed", "swap-1", "CANCELLED"), self.events)

        ops = self.service.operations("swap-1")
        self.assertEqual([o.operation_type for o in ops], [OperationType.CANCEL_SWAP])
        self.assertEqual(ops[0].status, OperationStatus.COMPLETED)

        self.run_cycles()
        self.assertEqual(self.dst.fund_calls, [])
        self.assertEqual(self.service.ledger.get(DST, "ATOM").available_balance, 10 * ETH)

    def test_cancel_after_funding(self):
        self.make_swap()
        self.run_cycles()
        with self.assertRaises(SwapConflict):
            self.service.cancel_swap("swap-1")

    def test_cancel_refused_after_contract_exists(self):
        self.make_swap()
        self.dst.fund_errors = [(ContractExists("contract already exists"), True)]
        self.run_cycles()
        with self.assertRaises(SwapConflict):
            self.service.cancel_swap("swap-1")
        self.assertEqual(self.service.repository.get_by_id("swap-1").status, SwapStatus.PENDING)
        self.assertIsNotNone(self.service.ledger.reservation_for(DST, "ATOM", "swap-1"))

        self.run_cycles()
        self.assertEqual(self.service.repository.get_by_id("swap-1").status, SwapStatus.POOL_FULFILLED)

    def test_cancel_refused_with_pool_htlc_on_chain(self):
        _, lock = self.make_swap()
        dest_id = self.dst.derive_contract_id(pool_contract_seed("swap-1"))
        self.dst.open_htlc(dest_id, "uatom", "wasm1user", lock, self.dst.now + 3600, 5 * ETH,
                           originator=self.dst.pool_address)
        with self.assertRaises(SwapConflict):
            self.service.cancel_swap("swap-1")
        self.assertEqual(self.service.repository.get_by_id("swap-1").status, SwapStatus.PENDING)
        self.assertEqual(self.service.operations("swap-1"), [])

    def test_cancel_unknown(self):
        with self.assertRaises(SwapNotFound):
            self.service.cancel_swap("nope")

    def test_submit_preimage(self):
        preimage, _ = self.make_swap()
        swap = self.service.submit_preimage("swap-1", preimage.upper().replace("0X", "0x"))
        self.assertEqual(swap.preimage, preimage)

    def test_submit_wrong_preimage(self):
        self.make_swap()
        with self.assertRaises(PreimageMismatch):
            self.service.submit_preimage("swap-1", generate_secret()[0])
        self.assertIsNone(self.service.repository.get_by_id("swap-1").preimage)

    def test_submit_preimage_terminal(self):
        preimage, _ = self.make_swap()
        self.service.cancel_swap("swap-1")
        with self.assertRaises(SwapConflict):
            self.service.submit_preimage("swap-1", preimage)

    def test_operations_unknown_swap(self):
        with self.assertRaises(SwapNotFound):
            self.service.operations("nope")


if __name__ == "__main__":
    unittest.main(verbosity=2)
