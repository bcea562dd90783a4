from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import time
from typing import Any

from rfq_maker.errors import ParseError


class EventKind(str, Enum):
    RFQ_CREATED = "RFQ_CREATED"
    QUOTE_SUBMITTED = "QUOTE_SUBMITTED"
    QUOTE_ACCEPTED = "QUOTE_ACCEPTED"
    QUOTE_CANCELLED = "QUOTE_CANCELLED"
    QUOTE_UPDATED = "QUOTE_UPDATED"
    RFQ_CANCELLED = "RFQ_CANCELLED"
    SWAP_EXECUTED = "SWAP_EXECUTED"

    @staticmethod
    def from_contract_event(name: str) -> "EventKind | None":
        return _CONTRACT_EVENT_KINDS.get(name)


_CONTRACT_EVENT_KINDS = {
    "RFQCreated": EventKind.RFQ_CREATED,
    "QuoteSubmitted": EventKind.QUOTE_SUBMITTED,
    "QuoteAccepted": EventKind.QUOTE_ACCEPTED,
    "QuoteCancelled": EventKind.QUOTE_CANCELLED,
    "QuoteUpdated": EventKind.QUOTE_UPDATED,
    "RFQCancelled": EventKind.RFQ_CANCELLED,
    "SwapExecuted": EventKind.SWAP_EXECUTED,
}

RFQ_DATA_FIELDS = ("requestId", "customer", "tokenIn", "tokenOut", "amountIn", "minAmountOut", "deadline")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_int(raw: Any, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return default
    if isinstance(raw, int):
        return raw
    try:
        text = str(raw).strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    except (TypeError, ValueError):
        return default


def parse_magnitude(raw: Any, name: str) -> str:
    """Normalize an unsigned decimal magnitude to its canonical string form."""
    if isinstance(raw, bool) or raw is None:
        raise ParseError(f"{name} missing")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not (text.isascii() and text.isdigit()):
            raise ParseError(f"{name} is not an unsigned decimal: {raw!r}")
        value = int(text)
    if value < 0:
        raise ParseError(f"{name} must be non-negative")
    return str(value)


@dataclass
class EventRecord:
    kind: str
    data: dict[str, Any]
    observed_at: int = 0
    block_number: int = 0
    transaction_hash: str = ""
    log_index: int = 0
    line: int = 0

    @property
    def eligible(self) -> bool:
        return self.kind == EventKind.RFQ_CREATED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "timestamp": self.observed_at,
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "logIndex": self.log_index,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, payload: Any, line: int = 0) -> "EventRecord":
        if not isinstance(payload, dict):
            raise ParseError("event record must be an object")
        kind = payload.get("type") or payload.get("kind")
        if not isinstance(kind, str) or not kind:
            raise ParseError("event record has no kind")
        data = payload.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ParseError("event data must be an object")
        observed_at = payload.get("timestamp", payload.get("observedAt"))
        return cls(
            kind=kind,
            data=data,
            observed_at=parse_int(observed_at),
            block_number=parse_int(payload.get("blockNumber")),
            transaction_hash=str(payload.get("transactionHash") or ""),
            log_index=parse_int(payload.get("logIndex")),
            line=line,
        )

    @classmethod
    def from_json(cls, raw: str, line: int = 0) -> "EventRecord":
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid JSON: {exc.msg}") from exc
        return cls.from_dict(payload, line=line)


@dataclass(frozen=True)
class RFQRequest:
    request_id: str
    customer: str
    token_in: str
    token_out: str
    amount_in: str
    min_amount_out: str
    deadline: str
    block_number: int = 0
    transaction_hash: str = ""
    log_index: int = 0
    observed_at: int = 0

    @classmethod
    def from_event(cls, record: EventRecord) -> "RFQRequest":
        if not record.eligible:
            raise ParseError(f"event kind {record.kind} is not an RFQ request")
        data = record.data
        missing = [name for name in RFQ_DATA_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise ParseError("RFQ event missing fields: " + ",".join(missing))
        return cls(
            request_id=str(data["requestId"]).strip(),
            customer=str(data["customer"]).strip(),
            token_in=str(data["tokenIn"]).strip(),
            token_out=str(data["tokenOut"]).strip(),
            amount_in=parse_magnitude(data["amountIn"], "amountIn"),
            min_amount_out=parse_magnitude(data["minAmountOut"], "minAmountOut"),
            deadline=parse_magnitude(data["deadline"], "deadline"),
            block_number=record.block_number,
            transaction_hash=record.transaction_hash,
            log_index=record.log_index,
            observed_at=record.observed_at,
        )


@dataclass
class ProcessedState:
    processed_request_ids: list[str] = field(default_factory=list)
    last_processed_line: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processedRequestIds": list(self.processed_request_ids),
            "lastProcessedLine": self.last_processed_line,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "ProcessedState":
        if not isinstance(payload, dict):
            raise ParseError("ledger must be an object")
        raw_ids = payload.get("processedRequestIds", [])
        if not isinstance(raw_ids, list):
            raise ParseError("processedRequestIds must be a list")
        seen: set[str] = set()
        ids: list[str] = []
        for raw in raw_ids:
            if not isinstance(raw, str):
                raise ParseError("processedRequestIds entries must be strings")
            if raw in seen:
                continue
            seen.add(raw)
            ids.append(raw)
        last_line = payload.get("lastProcessedLine", 0)
        if isinstance(last_line, bool) or not isinstance(last_line, int) or last_line < 0:
            raise ParseError("lastProcessedLine must be a non-negative integer")
        return cls(processed_request_ids=ids, last_processed_line=last_line)
