#!/usr/bin/env python3
"""
Swap Repository Tests

Usage:
    python test_repository.py
"""

import sys
import os
import tempfile
import unittest

# Add package root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from swapsage.core import (
    SwapRequest, SwapStatus, ResolverOperation, OperationType, OperationStatus,
)
from swapsage.errors import SwapNotFound, SwapConflict, ValidationError
from swapsage.swap.repository import SwapRepository

HASH_LOCK = "0x" + "ab" * 32


def make_swap(swap_id="swap-1", target_chain="cosmos-testnet", created_at=None, contract="0x" + "01" * 32):
    swap = SwapRequest(
        id=swap_id,
        source_chain="sepolia",
        target_chain=target_chain,
        source_token="sepolia:MONSTER",
        target_token="cosmos-testnet:ATOM",
        source_amount=5 * 10**18,
        expected_amount=5 * 10**18,
        hash_lock=HASH_LOCK.upper().replace("0X", "0x"),
        user_address="wasm1user",
        user_htlc_contract=contract,
    )
    if created_at is not None:
        swap.created_at = created_at
    return swap


class TestSwaps(unittest.TestCase):

    def setUp(self):
        self.repo = SwapRepository()

    def test_create_and_get(self):
        self.repo.create_swap(make_swap())
        swap = self.repo.get_by_id("swap-1")
        self.assertEqual(swap.status, SwapStatus.PENDING)
        self.assertEqual(swap.hash_lock, HASH_LOCK)
        self.assertEqual(swap.source_amount, 5 * 10**18)

    def test_get_unknown(self):
        with self.assertRaises(SwapNotFound):
            self.repo.get_by_id("nope")

    def test_duplicate_rejected(self):
        self.repo.create_swap(make_swap())
        with self.assertRaises(ValidationError):
            self.repo.create_swap(make_swap())

    def test_non_positive_amount_rejected(self):
        swap = make_swap()
        swap.expected_amount = 0
        with self.assertRaises(ValidationError):
            self.repo.create_swap(swap)

    def test_returned_rows_are_copies(self):
        self.repo.create_swap(make_swap())
        swap = self.repo.get_by_id("swap-1")
        swap.status = SwapStatus.FAILED
        self.assertEqual(self.repo.get_by_id("swap-1").status, SwapStatus.PENDING)

    def test_list_pending_oldest_first_and_filtered(self):
        self.repo.create_swap(make_swap("b", created_at=200))
        self.repo.create_swap(make_swap("a", created_at=100))
        self.repo.create_swap(make_swap("c", created_at=50, target_chain="sepolia"))
        self.repo.create_swap(make_swap("d", created_at=10, contract=None))

        pending = self.repo.list_pending(10, target_chain="cosmos-testnet")
        self.assertEqual([s.id for s in pending], ["a", "b"])
        self.assertEqual([s.id for s in self.repo.list_pending(1)], ["c"])

    def test_update_status_conditional(self):
        self.repo.create_swap(make_swap())
        self.assertTrue(self.repo.update_status(
            "swap-1", SwapStatus.PENDING, SwapStatus.POOL_FULFILLED, pool_htlc_contract="0xpool"
        ))
        self.assertFalse(self.repo.update_status("swap-1", SwapStatus.PENDING, SwapStatus.FAILED))
        swap = self.repo.get_by_id("swap-1")
        self.assertEqual(swap.status, SwapStatus.POOL_FULFILLED)
        self.assertEqual(swap.pool_htlc_contract, "0xpool")

    def test_terminal_status_is_final(self):
        self.repo.create_swap(make_swap())
        self.repo.update_status("swap-1", SwapStatus.PENDING, SwapStatus.FAILED)
        self.assertFalse(self.repo.update_status("swap-1", SwapStatus.FAILED, SwapStatus.PENDING))

    def test_update_rejects_unknown_fields(self):
        self.repo.create_swap(make_swap())
        with self.assertRaises(ValueError):
            self.repo.update_status("swap-1", SwapStatus.PENDING, SwapStatus.FAILED, hash_lock="0x00")

    def test_count_by_status(self):
        self.repo.create_swap(make_swap("a"))
        self.repo.create_swap(make_swap("b", target_chain="sepolia"))
        self.assertEqual(self.repo.count_by_status()["PENDING"], 2)
        self.assertEqual(self.repo.count_by_status(target_chain="sepolia")["PENDING"], 1)


class TestCancellation(unittest.TestCase):

    def setUp(self):
        self.repo = SwapRepository()
        self.repo.create_swap(make_swap())

    def test_cancel_unfunded(self):
        swap = self.repo.cancel_if_unfunded("swap-1")
        self.assertEqual(swap.status, SwapStatus.CANCELLED)
        self.assertEqual(swap.failure_reason, "Cancelled")

    def test_cancel_after_funding_started(self):
        self.repo.append_operation(ResolverOperation(
            swap_id="swap-1", operation_type=OperationType.FUND_POOL_HTLC,
        ))
        with self.assertRaises(SwapConflict):
            self.repo.cancel_if_unfunded("swap-1")

    def test_cancel_after_failed_funding(self):
        op = self.repo.append_operation(ResolverOperation(
            swap_id="swap-1", operation_type=OperationType.FUND_POOL_HTLC,
        ))
        self.repo.update_operation(op.id, OperationStatus.FAILED, error="rpc down")
        self.assertEqual(self.repo.cancel_if_unfunded("swap-1").status, SwapStatus.CANCELLED)

    def test_cancel_non_pending(self):
        self.repo.update_status("swap-1", SwapStatus.PENDING, SwapStatus.POOL_FULFILLED)
        with self.assertRaises(SwapConflict):
            self.repo.cancel_if_unfunded("swap-1")


class TestOperations(unittest.TestCase):

    def setUp(self):
        self.repo = SwapRepository()

    def test_update_operation(self):
        op = self.repo.append_operation(ResolverOperation(
            swap_id="swap-1", operation_type=OperationType.CLAIM_SOURCE_HTLC, metadata={"a": 1},
        ))
        self.repo.update_operation(op.id, OperationStatus.IN_PROGRESS, retry_count=2)
        done = self.repo.update_operation(
            op.id, OperationStatus.FAILED, error="boom", error_code="CHAIN_REJECTED",
            tx_hash="0xabc", metadata={"b": 2},
        )
        self.assertEqual(done.retry_count, 2)
        self.assertEqual(done.error_code, "CHAIN_REJECTED")
        self.assertEqual(done.tx_hash, "0xabc")
        self.assertEqual(done.metadata, {"a": 1, "b": 2})
        self.assertIsNotNone(done.completed_at)

    def test_find_operations_filters(self):
        a = self.repo.append_operation(ResolverOperation(
            swap_id="swap-1", operation_type=OperationType.VALIDATE_SOURCE_HTLC, started_at=1.0,
        ))
        self.repo.append_operation(ResolverOperation(
            swap_id="swap-1", operation_type=OperationType.FUND_POOL_HTLC, started_at=2.0,
        ))
        self.repo.append_operation(ResolverOperation(
            swap_id="swap-2", operation_type=OperationType.FUND_POOL_HTLC, started_at=3.0,
        ))
        self.repo.update_operation(a.id, OperationStatus.COMPLETED)

        self.assertEqual(len(self.repo.find_operations("swap-1")), 2)
        self.assertEqual(len(self.repo.find_operations("swap-1", OperationType.FUND_POOL_HTLC)), 1)
        completed = self.repo.find_operations("swap-1", status=OperationStatus.COMPLETED)
        self.assertEqual([o.id for o in completed], [a.id])


class TestPersistence(unittest.TestCase):

    def test_reload(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "swaps.json")
            repo = SwapRepository(path)
            repo.create_swap(make_swap())
            repo.update_status("swap-1", SwapStatus.PENDING, SwapStatus.POOL_FULFILLED,
                               pool_htlc_contract="0xpool")
            op = repo.append_operation(ResolverOperation(
                swap_id="swap-1", operation_type=OperationType.FUND_POOL_HTLC,
            ))

            reloaded = SwapRepository(path)
            swap = reloaded.get_by_id("swap-1")
            self.assertEqual(swap.status, SwapStatus.POOL_FULFILLED)
            self.assertEqual(swap.expected_amount, 5 * 10**18)
            self.assertEqual(reloaded.find_operations("swap-1")[0].id, op.id)


if __name__ == "__main__":
    unittest.main(verbosity=2)
