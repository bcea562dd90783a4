from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import json
import os
import sys
import threading
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rfq_maker.config import MakerConfig, load_config  # noqa: E402
from rfq_maker.errors import BroadcastError  # noqa: E402
from rfq_maker.execution import Broadcaster, SubmissionRequest  # noqa: E402
from rfq_maker.models import EventRecord  # noqa: E402

CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
TEST_KEY = "0x" + ("11" * 32)


def make_config(**kwargs) -> MakerConfig:
    env = {
        "PRIVATE_KEY": TEST_KEY,
        "ALCHEMY_API_KEY": "test-key",
        "CONTRACT_ADDRESS": CONTRACT,
    }
    with patch.dict(os.environ, env, clear=True):
        cfg = load_config()
    return replace(cfg, **kwargs)


def rfq_payload(
    request_id: str = "0xabc",
    token_out: str = "0x2",
    amount_in: str = "1000",
    deadline: str = "1700000000",
    kind: str = "RFQ_CREATED",
    block_number: int = 100,
    log_index: int = 0,
) -> dict:
    return {
        "type": kind,
        "timestamp": 1_700_000_000_000,
        "blockNumber": block_number,
        "transactionHash": "0x" + ("ab" * 32),
        "logIndex": log_index,
        "data": {
            "requestId": request_id,
            "customer": "0xc0ffee",
            "tokenIn": "0x1",
            "tokenOut": token_out,
            "amountIn": amount_in,
            "minAmountOut": "990",
            "deadline": deadline,
        },
    }


def rfq_record(request_id: str = "0xabc", **kwargs) -> EventRecord:
    return EventRecord.from_dict(rfq_payload(request_id=request_id, **kwargs))


def write_log(path: Path, lines: list) -> None:
    with path.open("w", encoding="utf-8") as handle:
        for line in lines:
            text = line if isinstance(line, str) else json.dumps(line)
            handle.write(text + "\n")


class FakeBroadcaster(Broadcaster):
    """Scripted broadcaster; `script` entries are error messages to raise, None means success."""

    def __init__(self, script: dict[str, list[str | None]] | None = None, delay_seconds: float = 0.0) -> None:
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.delay_seconds = delay_seconds
        self.calls: list[SubmissionRequest] = []
        self._lock = threading.Lock()

    def submit(self, request: SubmissionRequest) -> str:
        with self._lock:
            self.calls.append(request)
            count = len(self.calls)
            outcomes = self.script.get(request.function_signature, [])
            outcome = outcomes.pop(0) if outcomes else None
        if self.delay_seconds:
            threading.Event().wait(self.delay_seconds)
        if outcome is not None:
            raise BroadcastError(outcome)
        return "0x" + f"{count:064x}"

    def signatures(self) -> list[str]:
        return [call.function_signature.split("(")[0] for call in self.calls]
