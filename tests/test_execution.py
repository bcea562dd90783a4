from __future__ import annotations

import json
import subprocess
import unittest
from unittest.mock import patch

from tests.helpers import CONTRACT, TEST_KEY, FakeBroadcaster, make_config, rfq_record
from rfq_maker.errors import BroadcastError, FatalTransactionError, RetryableTransactionError
from rfq_maker.execution import (
    APPROVE_SIGNATURE,
    SUBMIT_QUOTE_SIGNATURE,
    CastBroadcaster,
    RetryPolicy,
    SubmissionRequest,
    TransactionExecutor,
    Web3Broadcaster,
    build_broadcaster,
)
from rfq_maker.models import RFQRequest

NONCE_LOW = "server returned an error response: error code -32000: nonce too low"
UNDERPRICED = "replacement transaction underpriced"


def _executor(broadcaster: FakeBroadcaster, sleeps: list[float] | None = None) -> TransactionExecutor:
    recorded = sleeps if sleeps is not None else []
    return TransactionExecutor(broadcaster, CONTRACT, policy=RetryPolicy(), sleep=recorded.append)


class RetryPolicyTests(unittest.TestCase):
    def test_gas_price_escalates_twenty_percent_per_retry(self) -> None:
        policy = RetryPolicy()
        self.assertIsNone(policy.gas_price_for_retry(0))
        self.assertEqual(policy.gas_price_for_retry(1), 24_000_000_000)
        self.assertEqual(policy.gas_price_for_retry(2), 28_000_000_000)
        self.assertEqual(policy.gas_price_for_retry(3), 32_000_000_000)

    def test_classification_by_message(self) -> None:
        policy = RetryPolicy()
        self.assertIsInstance(policy.classify(NONCE_LOW, 1), RetryableTransactionError)
        self.assertIsInstance(policy.classify("Replacement Transaction Underpriced", 1), RetryableTransactionError)
        self.assertIsInstance(policy.classify("execution reverted", 1), FatalTransactionError)
        self.assertIsInstance(policy.classify("", 1), FatalTransactionError)

    def test_from_config_uses_configured_constants(self) -> None:
        cfg = make_config(max_retries=5, retry_settle_seconds=0.5, base_gas_price_wei=10)
        policy = RetryPolicy.from_config(cfg)
        self.assertEqual((policy.max_retries, policy.settle_seconds, policy.base_gas_price_wei), (5, 0.5, 10))


class TransactionExecutorTests(unittest.TestCase):
    def test_execute_approves_then_submits_quote(self) -> None:
        broadcaster = FakeBroadcaster()
        result = _executor(broadcaster).execute(RFQRequest.from_event(rfq_record("0xabc")))

        self.assertEqual(broadcaster.signatures(), ["approve", "submitQuote"])
        approve, quote = broadcaster.calls
        self.assertEqual(approve.target, "0x2")
        self.assertEqual(approve.function_signature, APPROVE_SIGNATURE)
        self.assertEqual(approve.args, (CONTRACT, "1000"))
        self.assertEqual(quote.target, CONTRACT)
        self.assertEqual(quote.function_signature, SUBMIT_QUOTE_SIGNATURE)
        self.assertEqual(quote.args, ("0xabc", "1000", "1700000000"))
        self.assertIsNone(approve.gas_price_wei)
        self.assertEqual(result.request_id, "0xabc")
        self.assertEqual(result.attempts, {"approve": 1, "submit_quote": 1})

    def test_retryable_failures_escalate_gas_then_succeed(self) -> None:
        broadcaster = FakeBroadcaster({APPROVE_SIGNATURE: [NONCE_LOW, UNDERPRICED]})
        sleeps: list[float] = []
        executor = _executor(broadcaster, sleeps)
        tx_hash = executor.approve("0x2", "1000")

        self.assertTrue(tx_hash.startswith("0x"))
        self.assertEqual(len(broadcaster.calls), 3)
        fees = [call.gas_price_wei for call in broadcaster.calls]
        self.assertEqual(fees, [None, 24_000_000_000, 28_000_000_000])
        self.assertEqual(sleeps, [2.0, 2.0])

    def test_retries_exhausted_surfaces_fatal(self) -> None:
        broadcaster = FakeBroadcaster({APPROVE_SIGNATURE: [NONCE_LOW] * 5})
        sleeps: list[float] = []
        with self.assertRaises(FatalTransactionError) as ctx:
            _executor(broadcaster, sleeps).approve("0x2", "1000")
        self.assertEqual(len(broadcaster.calls), 4)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertIn("nonce too low", ctx.exception.message)
        self.assertEqual(len(sleeps), 3)

    def test_fatal_failure_is_not_retried(self) -> None:
        broadcaster = FakeBroadcaster({APPROVE_SIGNATURE: ["execution reverted: insufficient balance"]})
        sleeps: list[float] = []
        with self.assertRaises(FatalTransactionError) as ctx:
            _executor(broadcaster, sleeps).approve("0x2", "1000")
        self.assertEqual(len(broadcaster.calls), 1)
        self.assertEqual(ctx.exception.attempts, 1)
        self.assertEqual(sleeps, [])

    def test_approval_failure_never_submits_quote(self) -> None:
        broadcaster = FakeBroadcaster({APPROVE_SIGNATURE: ["insufficient funds for gas"]})
        with self.assertRaises(FatalTransactionError):
            _executor(broadcaster).execute(RFQRequest.from_event(rfq_record("0xabc")))
        self.assertEqual(broadcaster.signatures(), ["approve"])

    def test_quote_retry_does_not_repeat_approval(self) -> None:
        broadcaster = FakeBroadcaster({SUBMIT_QUOTE_SIGNATURE: [UNDERPRICED]})
        result = _executor(broadcaster).execute(RFQRequest.from_event(rfq_record("0xabc")))
        self.assertEqual(broadcaster.signatures(), ["approve", "submitQuote", "submitQuote"])
        self.assertEqual(result.attempts, {"approve": 1, "submit_quote": 2})


class CastBroadcasterTests(unittest.TestCase):
    def _request(self, gas: int | None = None) -> SubmissionRequest:
        return SubmissionRequest(
            target=CONTRACT,
            function_signature=SUBMIT_QUOTE_SIGNATURE,
            args=("0xabc", "1000", "1700000000"),
            gas_price_wei=gas,
        )

    def test_build_command_includes_gas_override_only_when_set(self) -> None:
        broadcaster = CastBroadcaster("https://rpc.example", TEST_KEY)
        base = broadcaster.build_command(self._request())
        self.assertEqual(base[:4], ["cast", "send", CONTRACT, SUBMIT_QUOTE_SIGNATURE])
        self.assertNotIn("--gas-price", base)
        bumped = broadcaster.build_command(self._request(gas=24_000_000_000))
        self.assertEqual(bumped[-2:], ["--gas-price", "24000000000"])

    def test_private_key_is_not_logged(self) -> None:
        broadcaster = CastBroadcaster("https://rpc.example", TEST_KEY)
        completed = subprocess.CompletedProcess(
            args=[], returncode=0, stdout=json.dumps({"transactionHash": "0xfeed", "status": "0x1"}), stderr=""
        )
        with patch("rfq_maker.execution.subprocess.run", return_value=completed):
            with self.assertLogs("rfq_maker", level="INFO") as logs:
                tx_hash = broadcaster.submit(self._request())
        self.assertEqual(tx_hash, "0xfeed")
        self.assertFalse(any(TEST_KEY in line for line in logs.output))

    def test_nonzero_exit_raises_with_stderr(self) -> None:
        broadcaster = CastBroadcaster("https://rpc.example", TEST_KEY)
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="Error: nonce too low\n")
        with patch("rfq_maker.execution.subprocess.run", return_value=completed):
            with self.assertRaises(BroadcastError) as ctx:
                broadcaster.submit(self._request())
        self.assertEqual(ctx.exception.message, "Error: nonce too low")

    def test_timeout_is_reported_as_broadcast_error(self) -> None:
        broadcaster = CastBroadcaster("https://rpc.example", TEST_KEY, timeout_seconds=60)
        with patch(
            "rfq_maker.execution.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="cast", timeout=60),
        ):
            with self.assertRaises(BroadcastError) as ctx:
                broadcaster.submit(self._request())
        self.assertIn("timed out", ctx.exception.message)
        self.assertFalse(RetryPolicy().is_retryable(ctx.exception.message))

    def test_reverted_receipt_raises(self) -> None:
        with self.assertRaises(BroadcastError):
            CastBroadcaster._parse_output(json.dumps({"transactionHash": "0xdead", "status": "0x0"}))


class Web3BroadcasterTests(unittest.TestCase):
    def test_encode_approve_call(self) -> None:
        broadcaster = Web3Broadcaster("http://127.0.0.1:8545", TEST_KEY, chain_id=84532)
        calldata = broadcaster.encode_call(
            SubmissionRequest(
                target="0x" + "22" * 20,
                function_signature=APPROVE_SIGNATURE,
                args=(CONTRACT, "1000"),
            )
        )
        self.assertTrue(calldata.startswith("0x095ea7b3"))
        self.assertEqual(len(calldata), 2 + 8 + 64 * 2)
        self.assertTrue(calldata.endswith(f"{1000:064x}"))

    def test_encode_rejects_argument_count_mismatch(self) -> None:
        broadcaster = Web3Broadcaster("http://127.0.0.1:8545", TEST_KEY, chain_id=84532)
        with self.assertRaises(BroadcastError):
            broadcaster.encode_call(
                SubmissionRequest(target=CONTRACT, function_signature=SUBMIT_QUOTE_SIGNATURE, args=("0xabc",))
            )

    def test_build_broadcaster_follows_backend_setting(self) -> None:
        self.assertIsInstance(build_broadcaster(make_config(broadcast_backend="cast")), CastBroadcaster)
        self.assertIsInstance(build_broadcaster(make_config()), Web3Broadcaster)


if __name__ == "__main__":
    unittest.main()
