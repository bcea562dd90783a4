from __future__ import annotations

from pathlib import Path
import json
import logging
import os
import tempfile

from rfq_maker.errors import ParseError, PersistenceError
from rfq_maker.models import ProcessedState

LOGGER = logging.getLogger("rfq_maker")


class StateStore:
    """Write-through ledger of request ids that completed execution."""

    def __init__(self, state_path: str) -> None:
        self.path = Path(state_path)
        self.state = ProcessedState()
        self._index: set[str] = set()

    def load(self) -> ProcessedState:
        self.state = self._read()
        self._index = set(self.state.processed_request_ids)
        return self.state

    def _read(self) -> ProcessedState:
        if not self.path.exists():
            return ProcessedState()
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            return ProcessedState.from_dict(payload)
        except (OSError, ValueError, ParseError) as exc:
            LOGGER.warning("ledger_unreadable path=%s error=%s, starting empty", self.path, exc)
            return ProcessedState()

    def is_processed(self, request_id: str) -> bool:
        return request_id in self._index

    def mark_processed(self, request_id: str) -> bool:
        if request_id in self._index:
            return False
        self._index.add(request_id)
        self.state.processed_request_ids.append(request_id)
        try:
            self.save()
        except PersistenceError as exc:
            LOGGER.error("ledger_write_failed request_id=%s error=%s", request_id, exc)
        return True

    def save(self) -> None:
        body = json.dumps(self.state.to_dict(), indent=2)
        target_dir = self.path.parent
        tmp = ""
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            # Temp file must share the directory so the replace stays atomic.
            fd, tmp = tempfile.mkstemp(prefix=".ledger_", suffix=".json", dir=target_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(body)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)

    def snapshot(self) -> ProcessedState:
        return ProcessedState(
            processed_request_ids=list(self.state.processed_request_ids),
            last_processed_line=self.state.last_processed_line,
        )
