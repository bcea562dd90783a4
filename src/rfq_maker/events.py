from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
import json
import logging
import queue
import threading
import time
from typing import Any

from rfq_maker.errors import EventSourceError, ParseError
from rfq_maker.http_utils import websocket_sslopt
from rfq_maker.models import EventKind, EventRecord, now_ms, parse_int

LOGGER = logging.getLogger("rfq_maker")

RFQ_EVENTS_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "bytes32", "name": "requestId", "type": "bytes32"},
            {"indexed": True, "internalType": "address", "name": "customer", "type": "address"},
            {"indexed": False, "internalType": "address", "name": "tokenIn", "type": "address"},
            {"indexed": False, "internalType": "address", "name": "tokenOut", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "amountIn", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "minAmountOut", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "deadline", "type": "uint256"},
        ],
        "name": "RFQCreated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "bytes32", "name": "quoteId", "type": "bytes32"},
            {"indexed": True, "internalType": "bytes32", "name": "requestId", "type": "bytes32"},
            {"indexed": True, "internalType": "address", "name": "marketMaker", "type": "address"},
        ],
        "name": "QuoteSubmitted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "bytes32", "name": "quoteId", "type": "bytes32"},
            {"indexed": True, "internalType": "bytes32", "name": "requestId", "type": "bytes32"},
            {"indexed": True, "internalType": "address", "name": "marketMaker", "type": "address"},
        ],
        "name": "QuoteAccepted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "bytes32", "name": "quoteId", "type": "bytes32"},
            {"indexed": True, "internalType": "address", "name": "marketMaker", "type": "address"},
        ],
        "name": "QuoteCancelled",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "bytes32", "name": "quoteId", "type": "bytes32"},
            {"indexed": False, "internalType": "uint256", "name": "oldAmountOut", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "newAmountOut", "type": "uint256"},
        ],
        "name": "QuoteUpdated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "bytes32", "name": "requestId", "type": "bytes32"},
            {"indexed": True, "internalType": "address", "name": "customer", "type": "address"},
        ],
        "name": "RFQCancelled",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "bytes32", "name": "requestId", "type": "bytes32"},
            {"indexed": True, "internalType": "address", "name": "customer", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "marketMaker", "type": "address"},
            {"indexed": False, "internalType": "address", "name": "tokenIn", "type": "address"},
            {"indexed": False, "internalType": "address", "name": "tokenOut", "type": "address"},
        ],
        "name": "SwapExecuted",
        "type": "event",
    },
]


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    elif hasattr(value, "hex"):
        text = str(value.hex())
    else:
        text = str(value)
    return text if text.startswith("0x") else "0x" + text


class EventSource:
    """Ordered, restartable sequence of event records."""

    def replay(self) -> list[EventRecord]:
        raise NotImplementedError

    def follow(self, stop_event: threading.Event) -> Iterator[EventRecord]:
        raise NotImplementedError


class LogTailSource(EventSource):
    def __init__(self, path: str, poll_interval_seconds: float = 1.0) -> None:
        self.path = Path(path)
        self.poll_interval_seconds = float(poll_interval_seconds)
        self._offset = 0
        self._line = 0
        self._open_tail = False

    def replay(self) -> list[EventRecord]:
        self._offset = 0
        self._line = 0
        self._open_tail = False
        records = [record for record in self.poll() if record.eligible]
        LOGGER.info("event_log_replayed path=%s lines=%s rfq_records=%s", self.path, self._line, len(records))
        return records

    def poll(self) -> list[EventRecord]:
        records: list[EventRecord] = []
        for line_no, raw in self._read_new_lines():
            if not raw.strip():
                continue
            try:
                records.append(EventRecord.from_json(raw, line=line_no))
            except ParseError as exc:
                LOGGER.warning("event_line_skipped path=%s line=%s error=%s", self.path, line_no, exc)
        return records

    def follow(self, stop_event: threading.Event) -> Iterator[EventRecord]:
        LOGGER.info("event_log_watch path=%s from_line=%s", self.path, self._line)
        while not stop_event.is_set():
            try:
                records = self.poll()
            except OSError as exc:
                LOGGER.error("event_log_read_failed path=%s error=%s", self.path, exc)
                records = []
            if records:
                LOGGER.info("event_log_new_records count=%s", len(records))
            for record in records:
                yield record
            stop_event.wait(self.poll_interval_seconds)

    def _read_new_lines(self) -> list[tuple[int, str]]:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []
        if size < self._offset:
            LOGGER.warning("event_log_truncated path=%s size=%s offset=%s", self.path, size, self._offset)
            self._offset = 0
            self._line = 0
            self._open_tail = False
        if size == self._offset:
            return []
        with self.path.open("rb") as handle:
            handle.seek(self._offset)
            chunk = handle.read(size - self._offset)

        end = chunk.rfind(b"\n") + 1
        complete, tail = chunk[:end], chunk[end:]
        pieces = complete.split(b"\n")[:-1] if complete else []
        # The terminator of a tail already taken on an earlier read is not a line.
        if self._open_tail and pieces and not pieces[0].strip():
            pieces.pop(0)
        consumed = len(complete)
        if complete:
            self._open_tail = False
        # An unterminated tail is taken only once it is a whole JSON document.
        if tail.strip() and self._is_complete_document(tail):
            pieces.append(tail)
            consumed += len(tail)
            self._open_tail = True

        self._offset += consumed
        lines: list[tuple[int, str]] = []
        for raw in pieces:
            self._line += 1
            lines.append((self._line, raw.decode("utf-8", errors="replace")))
        return lines

    @staticmethod
    def _is_complete_document(raw: bytes) -> bool:
        try:
            json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return False
        return True


class EventLogWriter:
    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: EventRecord) -> None:
        line = record.to_json() + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self._ends_with_newline():
                line = "\n" + line
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
        LOGGER.info("event_written kind=%s block=%s", record.kind, record.block_number)

    def _ends_with_newline(self) -> bool:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return True
        if size == 0:
            return True
        with self.path.open("rb") as handle:
            handle.seek(size - 1)
            return handle.read(1) == b"\n"


class ContractEventDecoder:
    """Turns raw `eth_subscription` log payloads into event records."""

    def __init__(self, contract_address: str) -> None:
        from web3 import Web3

        self._w3 = Web3()
        self._contract = self._w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=RFQ_EVENTS_ABI)
        self._topics: dict[str, str] = {}
        for entry in RFQ_EVENTS_ABI:
            signature = "{}({})".format(entry["name"], ",".join(arg["type"] for arg in entry["inputs"]))
            self._topics[_hex(Web3.keccak(text=signature)).lower()] = entry["name"]

    def event_name(self, log: dict[str, Any]) -> str | None:
        topics = log.get("topics") or []
        if not topics:
            return None
        return self._topics.get(_hex(topics[0]).lower())

    def decode(self, log: dict[str, Any]) -> EventRecord | None:
        from web3 import Web3

        name = self.event_name(log)
        if name is None:
            return None
        kind = EventKind.from_contract_event(name)
        formatted = {
            "address": Web3.to_checksum_address(str(log.get("address") or self._contract.address)),
            "topics": [Web3.to_bytes(hexstr=_hex(topic)) for topic in log.get("topics") or []],
            "data": Web3.to_bytes(hexstr=_hex(log.get("data") or "0x")),
            "blockNumber": parse_int(log.get("blockNumber")),
            "blockHash": Web3.to_bytes(hexstr=_hex(log.get("blockHash") or "0x")),
            "transactionHash": Web3.to_bytes(hexstr=_hex(log.get("transactionHash") or "0x")),
            "transactionIndex": parse_int(log.get("transactionIndex")),
            "logIndex": parse_int(log.get("logIndex")),
        }
        try:
            event = getattr(self._contract.events, name)().process_log(formatted)
        except Exception as exc:
            raise ParseError(f"undecodable {name} log: {exc}") from exc

        data: dict[str, Any] = {}
        for key, value in dict(event["args"]).items():
            data[key] = _hex(value) if isinstance(value, (bytes, bytearray)) else str(value)
        return EventRecord(
            kind=kind.value if kind is not None else name,
            data=data,
            observed_at=now_ms(),
            block_number=formatted["blockNumber"],
            transaction_hash=_hex(log.get("transactionHash") or ""),
            log_index=formatted["logIndex"],
        )


class ContractLogStream:
    """Websocket `eth_subscribe("logs")` feed for one contract."""

    def __init__(
        self,
        ws_url: str,
        contract_address: str,
        on_record: Callable[[EventRecord], None],
        decoder: ContractEventDecoder | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.contract_address = contract_address
        self.on_record = on_record
        self.decoder = decoder or ContractEventDecoder(contract_address)
        self.subscription_id = ""
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._connected = False
        self._ws = None
        self._fatal_error: str | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        with self._lock:
            self._connected = False
            self._fatal_error = None
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="contract-log-ws", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception as exc:
                LOGGER.debug("contract ws close error=%s", exc)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.5)
        self._thread = None

    def wait_until_ready(self, timeout_seconds: float = 10.0) -> None:
        deadline = time.time() + timeout_seconds
        while time.time() < deadline:
            with self._lock:
                if self._fatal_error:
                    raise EventSourceError(f"contract WS failed: {self._fatal_error}")
                if self._connected and self.subscription_id:
                    return
            time.sleep(0.05)
        raise EventSourceError("contract WS did not subscribe within startup timeout")

    def assert_healthy(self) -> None:
        with self._lock:
            if self._fatal_error:
                raise EventSourceError(f"contract WS failed: {self._fatal_error}")

    def _run_loop(self) -> None:
        from websocket import WebSocketApp

        try:
            app = WebSocketApp(
                self.ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            self._ws = app
            app.run_forever(ping_interval=20, ping_timeout=10, sslopt=websocket_sslopt())
        except Exception as exc:
            self._mark_fatal(str(exc))
        finally:
            self._ws = None
            with self._lock:
                self._connected = False

    def _on_open(self, ws) -> None:
        with self._lock:
            self._connected = True
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self.contract_address}],
        }
        try:
            ws.send(json.dumps(request, separators=(",", ":")))
        except Exception as exc:
            self._mark_fatal(f"subscribe failed: {exc}")

    def _on_message(self, _ws, message: str) -> None:
        try:
            payload = json.loads(message)
        except ValueError:
            LOGGER.warning("contract ws non-json message dropped")
            return
        if isinstance(payload, dict):
            self.process_payload(payload)

    def process_payload(self, payload: dict[str, Any]) -> None:
        if payload.get("id") == 1:
            if payload.get("error"):
                self._mark_fatal(f"subscribe rejected: {payload['error']}")
                return
            with self._lock:
                self.subscription_id = str(payload.get("result") or "")
            LOGGER.info("contract_ws_subscribed id=%s", self.subscription_id)
            return
        if payload.get("method") != "eth_subscription":
            return
        log = (payload.get("params") or {}).get("result")
        if not isinstance(log, dict):
            return
        if log.get("removed"):
            LOGGER.warning("contract_log_removed tx=%s", log.get("transactionHash"))
            return
        try:
            record = self.decoder.decode(log)
        except ParseError as exc:
            LOGGER.warning("contract_log_skipped error=%s", exc)
            return
        if record is not None:
            self.on_record(record)

    def _on_error(self, _ws, error) -> None:
        self._mark_fatal(str(error))

    def _on_close(self, _ws, status_code, msg) -> None:
        with self._lock:
            self._connected = False
        if not self._stop_event.is_set():
            self._mark_fatal(f"closed code={status_code} msg={msg}")

    def _mark_fatal(self, message: str) -> None:
        with self._lock:
            if self._fatal_error is not None:
                return
            self._fatal_error = message
            self._connected = False
        LOGGER.error("contract WS fatal: %s", message)


class SubscriptionSource(EventSource):
    """Live push delivery pulled through a FIFO channel.

    RFQ records are appended to the journal log before they are yielded so a
    restart replays anything that did not finish.
    """

    def __init__(
        self,
        journal_path: str | None = None,
        poll_interval_seconds: float = 1.0,
        ready_timeout_seconds: float = 10.0,
    ) -> None:
        self.channel: queue.Queue[EventRecord] = queue.Queue()
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.ready_timeout_seconds = float(ready_timeout_seconds)
        self.journal = LogTailSource(journal_path) if journal_path else None
        self.writer = EventLogWriter(journal_path) if journal_path else None
        self.transport: ContractLogStream | None = None

    def attach(self, transport: ContractLogStream) -> None:
        self.transport = transport

    def push(self, record: EventRecord) -> None:
        self.channel.put(record)

    def replay(self) -> list[EventRecord]:
        if self.journal is None:
            return []
        return self.journal.replay()

    def follow(self, stop_event: threading.Event) -> Iterator[EventRecord]:
        if self.transport is not None:
            self.transport.start()
            self.transport.wait_until_ready(timeout_seconds=self.ready_timeout_seconds)
        try:
            while not stop_event.is_set():
                try:
                    record = self.channel.get(timeout=self.poll_interval_seconds)
                except queue.Empty:
                    if self.transport is not None:
                        self.transport.assert_healthy()
                    continue
                if self.writer is not None and record.eligible:
                    self.writer.append(record)
                yield record
        finally:
            if self.transport is not None:
                self.transport.stop()
