#!/usr/bin/env python3
"""
Operator API Tests

Exercises server.py and the routes against an in-memory service.

Usage:
    python test_api.py
"""

import sys
import os
import unittest

# Add package root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from fastapi.testclient import TestClient

import server
from swapsage.config import ServiceConfig, ResolverConfig
from swapsage.core import SwapRequest, generate_secret
from swapsage.errors import ChainTransientError, ContractExists
from swapsage.pool.ledger import LiquidityLedger
from swapsage.service import ResolverService
from swapsage.swap.repository import SwapRepository

from fake_chain import FakeHTLCClient

SRC = "sepolia"
DST = "cosmos-testnet"
ETH = 10**18


class TestOperatorAPI(unittest.TestCase):

    def setUp(self):
        self.src = FakeHTLCClient(SRC, "0xpoolsource", tokens={"MONSTER": "0xmonster"})
        self.dst = FakeHTLCClient(DST, "wasm1pool", tokens={"ATOM": "uatom"})
        self.service = ResolverService(
            ServiceConfig(resolver=ResolverConfig(retry_backoff_seconds=0)),
            clients={SRC: self.src, DST: self.dst},
            repository=SwapRepository(),
            ledger=LiquidityLedger(),
        )
        self.service.ledger.set_balance(DST, "ATOM", 10 * ETH)
        server.configure(self.service)
        self.api = TestClient(server.app)

        self.preimage, lock = generate_secret()
        contract = "0x" + "01" * 32
        self.src.open_htlc(contract, "0xmonster", self.src.pool_address, lock,
                           self.src.now + 4 * 3600, 5 * ETH)
        self.service.repository.create_swap(SwapRequest(
            id="swap-1", source_chain=SRC, target_chain=DST,
            source_token="sepolia:MONSTER", target_token="cosmos-testnet:ATOM",
            source_amount=5 * ETH, expected_amount=5 * ETH, hash_lock=lock,
            user_address="wasm1user", user_htlc_contract=contract,
        ))

    def tearDown(self):
        server.configure(None)

    def test_status(self):
        r = self.api.get("/api/status")
        self.assertEqual(r.status_code, 200)
        data = r.json()
        self.assertEqual(data["status"], "stopped")
        self.assertEqual(data["swaps"]["PENDING"], 1)
        self.assertEqual(len(data["chains"]), 2)

    def test_status_unconfigured(self):
        server.configure(None)
        self.assertEqual(self.api.get("/api/status").status_code, 503)
        self.assertEqual(self.api.get("/api/swaps/swap-1").status_code, 503)

    def test_get_swap(self):
        r = self.api.get("/api/swaps/swap-1")
        self.assertEqual(r.status_code, 200)
        data = r.json()
        self.assertEqual(data["status"], "PENDING")
        self.assertEqual(data["expected_amount"], str(5 * ETH))
        self.assertFalse(data["preimage_known"])
        self.assertNotIn("preimage", data)

    def test_get_unknown_swap(self):
        self.assertEqual(self.api.get("/api/swaps/nope").status_code, 404)
        self.assertEqual(self.api.get("/api/swaps/nope/operations").status_code, 404)

    def test_operations(self):
        self.service.engines[DST].run_cycle()
        r = self.api.get("/api/swaps/swap-1/operations")
        self.assertEqual(r.status_code, 200)
        types = [op["operation_type"] for op in r.json()]
        self.assertEqual(types, ["VALIDATE_SOURCE_HTLC", "RESERVE_LIQUIDITY", "FUND_POOL_HTLC"])
        self.assertEqual(self.api.get("/api/swaps/swap-1").json()["status"], "POOL_FULFILLED")

    def test_cancel(self):
        r = self.api.post("/api/swaps/swap-1/cancel")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "CANCELLED")
        self.assertEqual(self.api.post("/api/swaps/swap-1/cancel").status_code, 409)

    def test_cancel_after_funding(self):
        self.service.engines[DST].run_cycle()
        self.assertEqual(self.api.post("/api/swaps/swap-1/cancel").status_code, 409)

    def test_cancel_with_pool_htlc_on_chain(self):
        self.dst.fund_errors = [(ContractExists("contract already exists"), True)]
        self.service.engines[DST].run_cycle()
        self.assertEqual(self.api.post("/api/swaps/swap-1/cancel").status_code, 409)
        self.assertEqual(self.api.get("/api/swaps/swap-1").json()["status"], "PENDING")

    def test_cancel_target_chain_unavailable(self):
        def unavailable(contract_id):
            raise ChainTransientError("LCD unreachable")

        self.dst.get_details = unavailable
        self.assertEqual(self.api.post("/api/swaps/swap-1/cancel").status_code, 503)
        self.assertEqual(self.api.get("/api/swaps/swap-1").json()["status"], "PENDING")

    def test_submit_preimage(self):
        r = self.api.post("/api/swaps/swap-1/preimage", json={"preimage": self.preimage})
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["preimage_known"])

    def test_submit_wrong_preimage(self):
        r = self.api.post("/api/swaps/swap-1/preimage", json={"preimage": generate_secret()[0]})
        self.assertEqual(r.status_code, 400)

    def test_liquidity(self):
        r = self.api.get("/api/pool/liquidity")
        self.assertEqual(r.status_code, 200)
        rows = r.json()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["available_balance"], str(10 * ETH))
        self.assertEqual(rows[0]["health"], "HEALTHY")

    def test_credit_liquidity(self):
        r = self.api.post("/api/pool/liquidity", json={
            "chain": DST, "token": "cosmos-testnet:ATOM", "amount": str(2 * ETH), "min_threshold": str(ETH),
        })
        self.assertEqual(r.status_code, 200)
        data = r.json()
        self.assertEqual(data["total_balance"], str(12 * ETH))
        self.assertEqual(data["min_threshold"], str(ETH))

    def test_credit_validation(self):
        bad = [
            {"chain": "nope", "token": "ATOM", "amount": "1"},
            {"chain": DST, "token": "ATOM", "amount": "1.5"},
            {"chain": DST, "token": "ATOM", "amount": "-1"},
        ]
        for body in bad:
            with self.subTest(body=body):
                self.assertEqual(self.api.post("/api/pool/liquidity", json=body).status_code, 400)


if __name__ == "__main__":
    unittest.main(verbosity=2)
