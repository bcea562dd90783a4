from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import subprocess
import time
from collections.abc import Callable
from typing import Any

from rfq_maker.config import MakerConfig
from rfq_maker.errors import (
    BroadcastError,
    FatalTransactionError,
    RetryableTransactionError,
    TransactionError,
)
from rfq_maker.models import RFQRequest

LOGGER = logging.getLogger("rfq_maker")

APPROVE_SIGNATURE = "approve(address,uint256)"
SUBMIT_QUOTE_SIGNATURE = "submitQuote(bytes32,uint256,uint256)"
RETRYABLE_MESSAGES = ("nonce too low", "replacement transaction underpriced")


@dataclass(frozen=True)
class SubmissionRequest:
    target: str
    function_signature: str
    args: tuple[str, ...]
    gas_price_wei: int | None = None

    @property
    def arg_types(self) -> list[str]:
        start = self.function_signature.find("(")
        end = self.function_signature.rfind(")")
        if start < 0 or end < start:
            raise BroadcastError(f"malformed function signature {self.function_signature!r}")
        inner = self.function_signature[start + 1 : end].strip()
        return [part.strip() for part in inner.split(",")] if inner else []


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    settle_seconds: float = 2.0
    base_gas_price_wei: int = 20_000_000_000
    bump_pct: int = 20
    retryable_messages: tuple[str, ...] = RETRYABLE_MESSAGES

    @classmethod
    def from_config(cls, config: MakerConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            settle_seconds=config.retry_settle_seconds,
            base_gas_price_wei=config.base_gas_price_wei,
        )

    def is_retryable(self, message: str) -> bool:
        lowered = (message or "").lower()
        return any(pattern in lowered for pattern in self.retryable_messages)

    def classify(self, message: str, attempts: int) -> TransactionError:
        if self.is_retryable(message):
            return RetryableTransactionError(message, attempts=attempts)
        return FatalTransactionError(message, attempts=attempts)

    def gas_price_for_retry(self, retry: int) -> int | None:
        if retry <= 0:
            return None
        return self.base_gas_price_wei * (100 + self.bump_pct * retry) // 100


@dataclass
class ExecutionResult:
    request_id: str
    approve_tx: str
    quote_tx: str
    attempts: dict[str, int] = field(default_factory=dict)


class Broadcaster:
    """Submits one signed call and reports the transaction hash.

    Implementations raise BroadcastError with the node's message when the
    attempt does not land.
    """

    def submit(self, request: SubmissionRequest) -> str:
        raise NotImplementedError


class TransactionExecutor:
    def __init__(
        self,
        broadcaster: Broadcaster,
        contract_address: str,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.broadcaster = broadcaster
        self.contract_address = contract_address
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def execute(self, request: RFQRequest) -> ExecutionResult:
        attempts: dict[str, int] = {}
        approve_tx = self.approve(request.token_out, request.amount_in, attempts=attempts)
        quote_tx = self.submit_quote(request.request_id, request.amount_in, request.deadline, attempts=attempts)
        return ExecutionResult(
            request_id=request.request_id,
            approve_tx=approve_tx,
            quote_tx=quote_tx,
            attempts=attempts,
        )

    def approve(self, token_address: str, amount: str, attempts: dict[str, int] | None = None) -> str:
        LOGGER.info(
            "approve token=%s amount=%s spender=%s",
            token_address,
            amount,
            self.contract_address,
        )
        tx_hash = self._submit(
            token_address,
            APPROVE_SIGNATURE,
            (self.contract_address, amount),
            label="approve",
            attempts=attempts,
        )
        LOGGER.info("approve_sent tx=%s", tx_hash)
        return tx_hash

    def submit_quote(
        self,
        request_id: str,
        amount_out: str,
        quote_expiry: str,
        attempts: dict[str, int] | None = None,
    ) -> str:
        LOGGER.info("submit_quote request_id=%s amount_out=%s expiry=%s", request_id, amount_out, quote_expiry)
        tx_hash = self._submit(
            self.contract_address,
            SUBMIT_QUOTE_SIGNATURE,
            (request_id, amount_out, quote_expiry),
            label="submit_quote",
            attempts=attempts,
        )
        LOGGER.info("quote_sent request_id=%s tx=%s", request_id, tx_hash)
        return tx_hash

    def _submit(
        self,
        target: str,
        signature: str,
        args: tuple[str, ...],
        *,
        label: str,
        attempts: dict[str, int] | None,
    ) -> str:
        retry = 0
        while True:
            request = SubmissionRequest(
                target=target,
                function_signature=signature,
                args=tuple(str(arg) for arg in args),
                gas_price_wei=self.policy.gas_price_for_retry(retry),
            )
            if attempts is not None:
                attempts[label] = retry + 1
            try:
                return self.broadcaster.submit(request)
            except BroadcastError as exc:
                error = self.policy.classify(exc.message, attempts=retry + 1)
                if not isinstance(error, RetryableTransactionError):
                    LOGGER.error("%s_failed attempts=%s error=%s", label, retry + 1, exc.message)
                    raise error from exc
                if retry >= self.policy.max_retries:
                    LOGGER.error("%s_retries_exhausted attempts=%s error=%s", label, retry + 1, exc.message)
                    raise FatalTransactionError(exc.message, attempts=retry + 1) from exc
                retry += 1
                LOGGER.warning(
                    "%s_conflict retry=%s/%s gas_price=%s error=%s",
                    label,
                    retry,
                    self.policy.max_retries,
                    self.policy.gas_price_for_retry(retry),
                    exc.message,
                )
                self._sleep(self.policy.settle_seconds)


class Web3Broadcaster(Broadcaster):
    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        chain_id: int,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.chain_id = int(chain_id)
        self.timeout_seconds = float(timeout_seconds)
        self._private_key = private_key
        self._w3 = None
        self._signer = ""

    def _web3(self):
        if self._w3 is not None:
            return self._w3
        from web3 import Web3

        provider = Web3.HTTPProvider(
            self.rpc_url,
            request_kwargs={"timeout": max(5.0, self.timeout_seconds)},
        )
        self._w3 = Web3(provider)
        return self._w3

    def signer_address(self) -> str:
        if not self._signer:
            from eth_account import Account

            self._signer = Account.from_key(self._private_key).address
        return self._signer

    @staticmethod
    def _coerce_arg(abi_type: str, value: str) -> Any:
        from web3 import Web3

        if abi_type == "address":
            return Web3.to_checksum_address(value)
        if abi_type.startswith("uint") or abi_type.startswith("int"):
            return int(value, 16) if value.lower().startswith("0x") else int(value)
        if abi_type.startswith("bytes"):
            return Web3.to_bytes(hexstr=value)
        if abi_type == "bool":
            return value.lower() in {"1", "true"}
        return value

    def encode_call(self, request: SubmissionRequest) -> str:
        from web3 import Web3

        types = request.arg_types
        if len(types) != len(request.args):
            raise BroadcastError(
                f"{request.function_signature} expects {len(types)} args, got {len(request.args)}"
            )
        values = [self._coerce_arg(abi_type, value) for abi_type, value in zip(types, request.args)]
        selector = Web3.keccak(text=request.function_signature)[:4]
        encoded = self._web3().codec.encode(types, values)
        return "0x" + (bytes(selector) + bytes(encoded)).hex()

    @staticmethod
    def _receipt_status(receipt: Any) -> int:
        if receipt is None:
            return 0
        raw = receipt.get("status") if isinstance(receipt, dict) else getattr(receipt, "status", None)
        if raw is None:
            return 0
        if isinstance(raw, str):
            return int(raw, 16) if raw.startswith("0x") else int(raw)
        return int(raw)

    def submit(self, request: SubmissionRequest) -> str:
        from eth_account import Account
        from web3 import Web3

        try:
            w3 = self._web3()
            signer = self.signer_address()
            nonce = int(w3.eth.get_transaction_count(signer, "pending"))
            gas_price = request.gas_price_wei or max(1, int(w3.eth.gas_price))
            tx: dict[str, Any] = {
                "from": signer,
                "to": Web3.to_checksum_address(request.target),
                "data": self.encode_call(request),
                "value": 0,
                "nonce": nonce,
                "chainId": self.chain_id,
                "gasPrice": int(gas_price),
            }
            gas_limit = int(w3.eth.estimate_gas(tx))
            tx["gas"] = max(21_000, int(gas_limit * 1.20))

            signed = Account.sign_transaction(tx, self._private_key)
            raw_tx = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
            if raw_tx is None:
                raise BroadcastError("unable to access signed raw transaction")
            tx_hash = w3.eth.send_raw_transaction(raw_tx)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout_seconds)
        except BroadcastError:
            raise
        except Exception as exc:
            raise BroadcastError(f"{exc.__class__.__name__}: {exc}") from exc

        tx_text = tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
        if not tx_text.startswith("0x"):
            tx_text = "0x" + tx_text
        if self._receipt_status(receipt) != 1:
            raise BroadcastError(f"transaction reverted tx={tx_text}")
        return tx_text


class CastBroadcaster(Broadcaster):
    """Runs `cast send` as an external process for each attempt."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        cast_binary: str = "cast",
        timeout_seconds: float = 60.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.cast_binary = cast_binary
        self.timeout_seconds = float(timeout_seconds)
        self._private_key = private_key

    def build_command(self, request: SubmissionRequest) -> list[str]:
        command = [
            self.cast_binary,
            "send",
            request.target,
            request.function_signature,
            *request.args,
            "--private-key",
            self._private_key,
            "--rpc-url",
            self.rpc_url,
            "--json",
        ]
        if request.gas_price_wei is not None:
            command.extend(["--gas-price", str(request.gas_price_wei)])
        return command

    def _redacted(self, command: list[str]) -> str:
        return " ".join("***" if part == self._private_key else part for part in command)

    def submit(self, request: SubmissionRequest) -> str:
        command = self.build_command(request)
        LOGGER.info("cast_run command=%s", self._redacted(command))
        try:
            proc = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise BroadcastError(f"cast timed out after {self.timeout_seconds:.0f}s") from exc
        except OSError as exc:
            raise BroadcastError(f"cast unavailable: {exc}") from exc

        if proc.returncode != 0:
            raise BroadcastError((proc.stderr or proc.stdout or f"cast exited {proc.returncode}").strip())
        return self._parse_output(proc.stdout)

    @staticmethod
    def _parse_output(stdout: str) -> str:
        text = (stdout or "").strip()
        try:
            payload = json.loads(text)
        except ValueError:
            return text
        if not isinstance(payload, dict):
            return text
        status = str(payload.get("status", "0x1")).lower()
        tx_hash = str(payload.get("transactionHash") or text)
        if status in {"0x0", "0"}:
            raise BroadcastError(f"transaction reverted tx={tx_hash}")
        return tx_hash


def build_broadcaster(config: MakerConfig) -> Broadcaster:
    if config.broadcast_backend == "cast":
        return CastBroadcaster(
            config.rpc_url,
            config.private_key,
            cast_binary=config.cast_binary,
            timeout_seconds=config.tx_timeout_seconds,
        )
    return Web3Broadcaster(
        config.rpc_url,
        config.private_key,
        chain_id=config.chain_id,
        timeout_seconds=config.tx_timeout_seconds,
    )


def build_executor(config: MakerConfig, broadcaster: Broadcaster | None = None) -> TransactionExecutor:
    return TransactionExecutor(
        broadcaster or build_broadcaster(config),
        config.contract_address,
        policy=RetryPolicy.from_config(config),
    )
