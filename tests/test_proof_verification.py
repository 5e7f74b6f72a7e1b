from __future__ import annotations

import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest import mock

from spvrelay.config import CONFIG
from spvrelay.errors import InsufficientFee, PayoutError
from spvrelay.fees import AccountBook
from spvrelay.models import Header, MerkleProof, ProofVerified, StateClaim
from spvrelay.pow_hash import fingerprint_of, grind_nonce
from spvrelay.proofs import state_claim_fingerprint
from spvrelay.relay import Relay


FAST_CONFIG = replace(
    CONFIG,
    source_chain_id="spv-verify-test",
    difficulty_threshold=2**255,
    relay_fee=10,
    verify_fee=5,
)

STORAGE_ROOT = 0x5151
TX_ROOT = 0x7171
GENESIS = Header(height=100, parent_fingerprint=0, storage_root=STORAGE_ROOT, tx_root=TX_ROOT, pow_nonce=0)
GENESIS_FP = fingerprint_of(GENESIS)
TX_ID = 0xDEADBEEF
VALID = MerkleProof(verifies=True)
INVALID = MerkleProof(verifies=False)


def child_of(parent: Header, tx_root: int = 1, storage_root: int = 2) -> Header:
    draft = Header(
        height=parent.height + 1,
        parent_fingerprint=fingerprint_of(parent),
        storage_root=storage_root,
        tx_root=tx_root,
        pow_nonce=0,
    )
    return grind_nonce(draft, FAST_CONFIG.difficulty_threshold)


class TransactionVerificationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.book = AccountBook()
        self.relay = Relay(config=FAST_CONFIG, payer=self.book)
        self.relay.initialize(GENESIS, deployer="deployer")

    def test_success_pays_genesis_recipient(self) -> None:
        ok = self.relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 0, VALID, "verifier", 5)

        self.assertTrue(ok)
        self.assertEqual(self.book.balance_of("deployer"), 5)
        self.assertEqual(self.relay.fees.paid_out, 5)
        self.assertEqual(self.relay.fees.retained, 0)
        self.assertEqual(
            self.relay.events[-1],
            ProofVerified(claim_fingerprint=TX_ID, header_fingerprint=GENESIS_FP, recipient="deployer", amount=5),
        )

    def test_rejected_proof_returns_false_without_payout(self) -> None:
        events_before = list(self.relay.events)
        ok = self.relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 0, INVALID, "verifier", 5)

        self.assertFalse(ok)
        self.assertEqual(self.book.balance_of("deployer"), 0)
        self.assertEqual(self.relay.fees.paid_out, 0)
        # Failed attempts still cost the verify fee.
        self.assertEqual(self.relay.fees.retained, 5)
        self.assertEqual(self.relay.events, events_before)

    def test_unknown_header_returns_false(self) -> None:
        self.assertFalse(self.relay.verify_transaction_inclusion(TX_ID, 12345, 0, VALID, "verifier", 5))
        self.assertEqual(self.relay.fees.retained, 5)

    def test_non_canonical_header_returns_false(self) -> None:
        a = child_of(GENESIS, tx_root=0xA)
        c = child_of(GENESIS, tx_root=0xC)
        self.relay.submit_header(a, "relayer-a", 10)
        c_fp, _ = self.relay.submit_header(c, "relayer-c", 10)

        self.assertFalse(self.relay.verify_transaction_inclusion(TX_ID, c_fp, 0, VALID, "verifier", 5))
        self.assertEqual(self.book.balance_of("relayer-c"), 0)

    def test_confirmation_depth_gating(self) -> None:
        a = child_of(GENESIS)
        a_fp, _ = self.relay.submit_header(a, "relayer-a", 10)
        self.relay.submit_header(child_of(a), "relayer-b", 10)

        # best_height 102: genesis has 2 confirmations, a has 1.
        self.assertTrue(self.relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 2, VALID, "v", 5))
        self.assertFalse(self.relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 3, VALID, "v", 5))
        self.assertTrue(self.relay.verify_transaction_inclusion(TX_ID, a_fp, 1, VALID, "v", 5))
        self.assertFalse(self.relay.verify_transaction_inclusion(TX_ID, a_fp, 2, VALID, "v", 5))
        self.assertEqual(self.book.balance_of("deployer"), 5)
        self.assertEqual(self.book.balance_of("relayer-a"), 5)

    def test_reorged_out_header_stops_verifying(self) -> None:
        a = child_of(GENESIS, tx_root=0xA)
        c = child_of(GENESIS, tx_root=0xC)
        a_fp, _ = self.relay.submit_header(a, "relayer-a", 10)
        self.relay.submit_header(c, "relayer-c", 10)
        self.assertTrue(self.relay.verify_transaction_inclusion(TX_ID, a_fp, 0, VALID, "v", 5))

        self.relay.submit_header(child_of(c), "relayer-d", 10)
        self.assertFalse(self.relay.verify_transaction_inclusion(TX_ID, a_fp, 0, VALID, "v", 5))

    def test_insufficient_fee_aborts_before_checks(self) -> None:
        with self.assertRaises(InsufficientFee):
            self.relay.verify_transaction_inclusion(TX_ID, 12345, 0, VALID, "verifier", 4)
        self.assertEqual(self.relay.fees.totals(), {"burned": 0, "retained": 0, "paid_out": 0})

    def test_bool_fee_rejected(self) -> None:
        relay = Relay(config=replace(FAST_CONFIG, verify_fee=1), payer=self.book)
        relay.initialize(GENESIS, deployer="deployer")
        with self.assertRaises(InsufficientFee):
            relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 0, VALID, "verifier", True)
        self.assertEqual(relay.fees.totals(), {"burned": 0, "retained": 0, "paid_out": 0})
        self.assertEqual(self.book.balance_of("deployer"), 0)

    def test_negative_min_depth_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, -1, VALID, "verifier", 5)
        self.assertEqual(self.relay.fees.retained, 0)

    def test_oracle_receives_claim_and_tx_root(self) -> None:
        oracle = mock.Mock(return_value=True)
        relay = Relay(config=FAST_CONFIG, oracle=oracle)
        relay.initialize(GENESIS, deployer="deployer")

        self.assertTrue(relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 0, VALID, "verifier", 5))
        oracle.assert_called_once_with(TX_ID, VALID, TX_ROOT)

    def test_oracle_not_consulted_for_non_canonical_header(self) -> None:
        oracle = mock.Mock(return_value=True)
        relay = Relay(config=FAST_CONFIG, oracle=oracle)
        relay.initialize(GENESIS, deployer="deployer")
        self.assertFalse(relay.verify_transaction_inclusion(TX_ID, 777, 0, VALID, "verifier", 5))
        oracle.assert_not_called()


class PayoutRollbackTest(unittest.TestCase):
    def test_payout_failure_aborts_and_restores_state(self) -> None:
        book = AccountBook(rejecting={"frozen-relayer"})
        with tempfile.TemporaryDirectory() as td:
            relay = Relay(td, config=FAST_CONFIG, payer=book)
            relay.initialize(GENESIS, deployer="deployer")
            a_fp, _ = relay.submit_header(child_of(GENESIS), "frozen-relayer", 10)

            state_path = Path(td) / FAST_CONFIG.state_file_name
            file_before = state_path.read_bytes()
            snapshot_before = relay.snapshot()

            with self.assertLogs("spvrelay.relay", level="WARNING"):
                with self.assertRaises(PayoutError):
                    relay.verify_transaction_inclusion(TX_ID, a_fp, 0, VALID, "verifier", 5)

            self.assertEqual(relay.snapshot(), snapshot_before)
            self.assertEqual(state_path.read_bytes(), file_before)
            self.assertEqual(book.balance_of("frozen-relayer"), 0)

            # A failing proof never reaches the payout, so it still returns False.
            self.assertFalse(relay.verify_transaction_inclusion(TX_ID, a_fp, 0, INVALID, "verifier", 5))

    def test_payer_exception_during_transfer_leaves_totals(self) -> None:
        payer = mock.Mock()
        payer.pay.side_effect = PayoutError("rail down")
        relay = Relay(config=FAST_CONFIG, payer=payer)
        relay.initialize(GENESIS, deployer="deployer")
        events_before = list(relay.events)

        with self.assertRaisesRegex(PayoutError, "rail down"):
            relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 0, VALID, "verifier", 5)

        payer.pay.assert_called_once_with(5, "deployer")
        self.assertEqual(relay.fees.totals(), {"burned": 0, "retained": 0, "paid_out": 0})
        self.assertEqual(relay.events, events_before)


class StateVerificationTest(unittest.TestCase):
    CLAIM = StateClaim(key=0x10, value=0x20)

    def test_state_success_and_failure(self) -> None:
        book = AccountBook()
        relay = Relay(config=FAST_CONFIG, payer=book)
        relay.initialize(GENESIS, deployer="deployer")

        self.assertTrue(relay.verify_state_inclusion(self.CLAIM, GENESIS_FP, 0, VALID, "verifier", 5))
        self.assertFalse(relay.verify_state_inclusion(self.CLAIM, GENESIS_FP, 0, INVALID, "verifier", 5))
        self.assertFalse(relay.verify_state_inclusion(self.CLAIM, GENESIS_FP, 1, VALID, "verifier", 5))
        self.assertEqual(book.balance_of("deployer"), 5)
        self.assertEqual(relay.fees.retained, 10)

    def test_state_claims_checked_against_storage_root(self) -> None:
        # Deliberate departure from the legacy relay, which used tx_root here.
        oracle = mock.Mock(return_value=True)
        relay = Relay(config=FAST_CONFIG, oracle=oracle)
        relay.initialize(GENESIS, deployer="deployer")

        self.assertTrue(relay.verify_state_inclusion(self.CLAIM, GENESIS_FP, 0, VALID, "verifier", 5))
        oracle.assert_called_once_with(state_claim_fingerprint(self.CLAIM), VALID, STORAGE_ROOT)
        self.assertEqual(relay.status()["state_claim_root"], "storage_root")

    def test_legacy_mode_checks_state_against_tx_root(self) -> None:
        oracle = mock.Mock(return_value=True)
        legacy = replace(FAST_CONFIG, state_claims_use_tx_root=True)
        relay = Relay(config=legacy, oracle=oracle)
        relay.initialize(GENESIS, deployer="deployer")

        self.assertTrue(relay.verify_state_inclusion(self.CLAIM, GENESIS_FP, 0, VALID, "verifier", 5))
        oracle.assert_called_once_with(state_claim_fingerprint(self.CLAIM), VALID, TX_ROOT)
        self.assertEqual(relay.status()["state_claim_root"], "tx_root")

    def test_root_sensitive_oracle_distinguishes_modes(self) -> None:
        def oracle(claim_fp: int, proof: MerkleProof, root: int) -> bool:
            return root == STORAGE_ROOT

        relay = Relay(config=FAST_CONFIG, oracle=oracle)
        relay.initialize(GENESIS, deployer="deployer")
        self.assertTrue(relay.verify_state_inclusion(self.CLAIM, GENESIS_FP, 0, VALID, "v", 5))
        self.assertFalse(relay.verify_transaction_inclusion(TX_ID, GENESIS_FP, 0, VALID, "v", 5))


if __name__ == "__main__":
    unittest.main()
