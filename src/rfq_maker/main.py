from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv

from rfq_maker.config import MakerConfig, load_config
from rfq_maker.errors import ConfigurationError, EventSourceError
from rfq_maker.events import ContractLogStream, EventSource, LogTailSource, SubscriptionSource
from rfq_maker.execution import build_executor
from rfq_maker.orchestrator import Orchestrator
from rfq_maker.storage import StateStore

LOGGER = logging.getLogger("rfq_maker")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("urllib3", "web3", "websocket"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def build_source(config: MakerConfig, source: str) -> EventSource:
    if source == "subscription":
        subscription = SubscriptionSource(
            journal_path=config.events_file,
            poll_interval_seconds=config.poll_interval_seconds,
        )
        subscription.attach(ContractLogStream(config.ws_url, config.contract_address, on_record=subscription.push))
        return subscription
    return LogTailSource(config.events_file, poll_interval_seconds=config.poll_interval_seconds)


def build_orchestrator(config: MakerConfig, source: str = "log") -> Orchestrator:
    return Orchestrator(
        source=build_source(config, source),
        store=StateStore(config.state_file),
        executor=build_executor(config),
    )


def _install_signal_handlers(stop_event: threading.Event) -> None:
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning(
            "Received signal %s, stopping after queued requests settle (press Ctrl+C again to force-exit)",
            signum,
        )
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)


def _load_config_or_exit() -> MakerConfig | None:
    try:
        return load_config()
    except ConfigurationError as exc:
        _setup_logging("INFO")
        LOGGER.error("Configuration error: %s", exc)
        return None


def _run_command(args: argparse.Namespace) -> int:
    config = _load_config_or_exit()
    if config is None:
        return 2
    _setup_logging(config.log_level)
    LOGGER.info(
        "Starting market maker source=%s contract=%s events=%s state=%s backend=%s",
        args.source,
        config.contract_address,
        config.events_file,
        config.state_file,
        config.broadcast_backend,
    )
    orchestrator = build_orchestrator(config, args.source)
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    try:
        orchestrator.run(stop_event)
        return 0
    except EventSourceError as exc:
        LOGGER.error("Event source lost: %s", exc)
        return 2
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2


def _listen_command(args: argparse.Namespace) -> int:
    config = _load_config_or_exit()
    if config is None:
        return 2
    _setup_logging(config.log_level)
    LOGGER.info("Listening contract=%s events=%s", config.contract_address, config.events_file)
    source = build_source(config, "subscription")
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    try:
        for record in source.follow(stop_event):
            LOGGER.info(
                "event kind=%s block=%s tx=%s data=%s",
                record.kind,
                record.block_number,
                record.transaction_hash,
                record.data,
            )
        return 0
    except EventSourceError as exc:
        LOGGER.error("Event source lost: %s", exc)
        return 2


def _status_command(args: argparse.Namespace) -> int:
    state_file = args.state_file
    if not state_file:
        config = _load_config_or_exit()
        if config is None:
            return 2
        state_file = config.state_file
    _setup_logging("WARNING")
    store = StateStore(state_file)
    store.load()
    state = store.snapshot()
    report = {
        "stateFile": str(Path(state_file)),
        "processed": len(state.processed_request_ids),
        "lastProcessedLine": state.last_processed_line,
        "processedRequestIds": state.processed_request_ids[-args.tail :] if args.tail > 0 else [],
    }
    print(json.dumps(report, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rfq_maker", description="RFQ market maker bot")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Replay the event backlog, then quote new RFQs as they arrive")
    run.add_argument(
        "--source",
        choices=("log", "subscription"),
        default="log",
        help="Tail the events file, or subscribe to contract logs and journal them into it",
    )
    run.set_defaults(func=_run_command)

    listen = sub.add_parser("listen", help="Subscribe to contract events and append RFQs to the events file")
    listen.set_defaults(func=_listen_command)

    status = sub.add_parser("status", help="Print a summary of the processed-request ledger")
    status.add_argument("--state-file", default="", help="Ledger path (defaults to STATE_FILE)")
    status.add_argument("--tail", type=int, default=10, help="Number of most recent request ids to show")
    status.set_defaults(func=_status_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
