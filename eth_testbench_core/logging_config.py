# eth_testbench_core/logging_config.py
"""
Logging setup for the library.

Every module logs through ``logging.getLogger(__name__)``; this module only
decides where those records end up.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from . import config as core_config

ROOT_LOGGER_NAME = "eth_testbench_core"


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record, for machine-read logs. The per-test extras
    (test name, group, seed, case index) are copied when a record carries them.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("test_name", "group", "seed", "case_index"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


def configure_logging(level: str = core_config.LOG_LEVEL,
                      log_to_file: bool = core_config.LOG_TO_FILE,
                      log_file_path: str = core_config.LOG_FILE_PATH,
                      json_format: bool = core_config.LOG_JSON_FORMAT,
                      stream: Optional[Any] = None) -> logging.Logger:
    """
    Configures the library's root logger.

    :param level: Minimum level name, e.g. "DEBUG" or "INFO".
    :param log_to_file: Also write records to ``log_file_path``.
    :param log_file_path: Destination of the file handler.
    :param json_format: Emit JSON lines instead of plain text.
    :param stream: Stream for the console handler, stdout by default.
    :return: The configured library logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    console = logging.StreamHandler(stream or sys.stdout)
    console.setLevel(numeric_level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_to_file:
        file_handler = logging.FileHandler(log_file_path)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # web3 is chatty at DEBUG
    for noisy in ("web3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
