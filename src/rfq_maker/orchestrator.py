from __future__ import annotations

from concurrent.futures import Future
from dataclasses import asdict, dataclass
from enum import Enum
import logging
import threading

from rfq_maker.errors import ParseError
from rfq_maker.events import EventSource
from rfq_maker.execution import TransactionExecutor
from rfq_maker.execution_queue import ExecutionQueue
from rfq_maker.models import EventRecord, RFQRequest
from rfq_maker.storage import StateStore

LOGGER = logging.getLogger("rfq_maker")


class RequestOutcome(str, Enum):
    SKIPPED = "skipped"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class OrchestratorStats:
    observed: int = 0
    ignored: int = 0
    invalid: int = 0
    skipped: int = 0
    queued: int = 0
    processed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Orchestrator:
    """Routes observed events through dedup, the execution queue and the ledger.

    Ledger reads happen at observation time; ledger writes happen only inside
    the queued continuation, so at most one execution and one write are in
    flight at once.
    """

    def __init__(
        self,
        source: EventSource,
        store: StateStore,
        executor: TransactionExecutor,
        execution_queue: ExecutionQueue | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.executor = executor
        self.queue = execution_queue or ExecutionQueue()
        self.stats = OrchestratorStats()
        self._stats_lock = threading.Lock()
        self._started = False

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + 1)

    def start(self, stop_event: threading.Event | None = None) -> None:
        if self._started:
            return
        state = self.store.load()
        LOGGER.info("ledger_loaded processed=%s path=%s", len(state.processed_request_ids), self.store.path)
        self.queue.start()
        self._started = True
        self.replay_backlog(stop_event)

    def replay_backlog(self, stop_event: threading.Event | None = None) -> int:
        records = self.source.replay()
        LOGGER.info("backlog_replay records=%s", len(records))
        replayed = 0
        for record in records:
            if stop_event is not None and stop_event.is_set():
                LOGGER.warning("backlog_replay_interrupted replayed=%s remaining=%s", replayed, len(records) - replayed)
                break
            future = self.observe(record)
            if future is not None:
                future.result()
            replayed += 1
        return replayed

    def observe(self, record: EventRecord) -> Future | None:
        self._bump("observed")
        if not record.eligible:
            self._bump("ignored")
            LOGGER.info(
                "event_observed kind=%s block=%s tx=%s data=%s",
                record.kind,
                record.block_number,
                record.transaction_hash,
                record.data,
            )
            return None
        try:
            request = RFQRequest.from_event(record)
        except ParseError as exc:
            self._bump("invalid")
            LOGGER.warning("rfq_event_invalid line=%s tx=%s error=%s", record.line, record.transaction_hash, exc)
            return None

        if self.store.is_processed(request.request_id):
            self._bump("skipped")
            LOGGER.info("request_skipped request_id=%s reason=already_processed", request.request_id)
            return None

        self._bump("queued")
        LOGGER.info(
            "request_queued request_id=%s customer=%s token_in=%s token_out=%s amount_in=%s deadline=%s pending=%s",
            request.request_id,
            request.customer,
            request.token_in,
            request.token_out,
            request.amount_in,
            request.deadline,
            self.queue.pending,
        )
        return self.queue.enqueue(lambda: self._execute(request))

    def _execute(self, request: RFQRequest) -> RequestOutcome:
        # A duplicate observed while the first copy was still queued lands here.
        if self.store.is_processed(request.request_id):
            self._bump("skipped")
            LOGGER.info("request_skipped request_id=%s reason=processed_while_queued", request.request_id)
            return RequestOutcome.SKIPPED

        LOGGER.info("request_executing request_id=%s", request.request_id)
        try:
            result = self.executor.execute(request)
        except Exception as exc:
            self._bump("failed")
            LOGGER.error(
                "request_failed request_id=%s error=%s, left eligible for replay",
                request.request_id,
                exc,
            )
            return RequestOutcome.FAILED

        self.store.mark_processed(request.request_id)
        self._bump("processed")
        LOGGER.info(
            "request_processed request_id=%s approve_tx=%s quote_tx=%s",
            request.request_id,
            result.approve_tx,
            result.quote_tx,
        )
        return RequestOutcome.PROCESSED

    def run(self, stop_event: threading.Event) -> None:
        try:
            self.start(stop_event)
            if stop_event.is_set():
                return
            LOGGER.info("orchestrator_following")
            for record in self.source.follow(stop_event):
                self.observe(record)
        except (KeyboardInterrupt, SystemExit):
            self.abort()
            raise
        finally:
            self.close()

    def abort(self) -> None:
        """Stop without waiting for queued requests; they stay unrecorded and replay on restart."""
        if not self._started:
            return
        dropped = self.queue.stop(timeout_seconds=0, discard_pending=True)
        self._started = False
        LOGGER.warning("orchestrator_aborted dropped=%s stats=%s", dropped, self.stats.to_dict())

    def close(self, timeout_seconds: float | None = None) -> None:
        if not self._started:
            return
        self.queue.drain(timeout_seconds)
        self.queue.stop(timeout_seconds)
        self._started = False
        LOGGER.info("orchestrator_stopped stats=%s", self.stats.to_dict())
