from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from tests.helpers import make_config
from rfq_maker.events import LogTailSource, SubscriptionSource
from rfq_maker.main import build_parser, build_source, cli


class CliTests(unittest.TestCase):
    def test_parser_defaults_run_source_to_log(self) -> None:
        args = build_parser().parse_args(["run"])
        self.assertEqual(args.command, "run")
        self.assertEqual(args.source, "log")

    def test_parser_accepts_subscription_source(self) -> None:
        args = build_parser().parse_args(["run", "--source", "subscription"])
        self.assertEqual(args.source, "subscription")

    def test_build_source_selects_transport(self) -> None:
        cfg = make_config()
        self.assertIsInstance(build_source(cfg, "log"), LogTailSource)
        subscription = build_source(cfg, "subscription")
        self.assertIsInstance(subscription, SubscriptionSource)
        self.assertIsNotNone(subscription.transport)

    def test_run_without_configuration_exits_before_processing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            cwd = os.getcwd()
            os.chdir(tmp)
            try:
                with patch.dict(os.environ, {}, clear=True):
                    with patch("rfq_maker.main.build_orchestrator") as build:
                        code = cli(["run"])
            finally:
                os.chdir(cwd)
        self.assertEqual(code, 2)
        build.assert_not_called()

    def test_status_prints_ledger_summary(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "ledger.json"
            path.write_text(
                json.dumps({"processedRequestIds": ["0x1", "0x2", "0x3"], "lastProcessedLine": 0}),
                encoding="utf-8",
            )
            out = io.StringIO()
            with redirect_stdout(out):
                code = cli(["status", "--state-file", str(path), "--tail", "2"])
        self.assertEqual(code, 0)
        report = json.loads(out.getvalue())
        self.assertEqual(report["processed"], 3)
        self.assertEqual(report["processedRequestIds"], ["0x2", "0x3"])


if __name__ == "__main__":
    unittest.main()
