from __future__ import annotations

import logging
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from rich.logging import RichHandler

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.config import configure_logging, import_stale_seconds, read_env_float, read_env_int


class TestConfig(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        self._saved = (list(root.handlers), root.level)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._saved[0]:
                handler.close()
        root.handlers[:] = self._saved[0]
        root.setLevel(self._saved[1])
        logging.getLogger("portfolio_health").setLevel(logging.NOTSET)

    def test_env_values_fall_back_on_bad_input(self) -> None:
        with patch.dict(os.environ, {"PH_IMPORT_STALE_SEC": "nan", "PH_MAX_WORKERS": "many"}):
            self.assertEqual(import_stale_seconds(), 3600.0)
            self.assertEqual(read_env_int("PH_MAX_WORKERS", default=4, minimum=1), 4)
        with patch.dict(os.environ, {"PH_OLLAMA_TIMEOUT_SEC": "-3"}):
            self.assertEqual(read_env_float("PH_OLLAMA_TIMEOUT_SEC", default=8.0, minimum=0.0), 0.0)

    def test_logging_goes_through_rich_on_stderr(self) -> None:
        with patch.dict(os.environ, {"PH_LOG_LEVEL": "debug"}):
            logger = configure_logging()
        self.assertEqual(logger.name, "portfolio_health")
        self.assertEqual(logger.level, logging.DEBUG)
        handlers = logging.getLogger().handlers
        self.assertEqual(len(handlers), 1)
        self.assertIsInstance(handlers[0], RichHandler)
        self.assertTrue(handlers[0].console.stderr)

    def test_unknown_level_is_warning_and_file_handler_is_added(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "portfolio.log"
            logger = configure_logging("chatty", log_file=str(log_path))
            self.assertEqual(logger.level, logging.WARNING)
            logging.getLogger("portfolio_health.test").warning("gate rejected %s", "servicenow")
            for handler in logging.getLogger().handlers:
                handler.flush()
                if isinstance(handler, logging.FileHandler):
                    handler.close()
            self.assertIn("gate rejected servicenow", log_path.read_text(encoding="utf-8"))


if __name__ == "__main__":
    unittest.main()
