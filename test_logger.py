import logging
import os
import sys
import pytest
from datetime import datetime

import logger as log_setup


@pytest.fixture
def clean_logging(monkeypatch):
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    root = logging.getLogger()
    discord_logger = logging.getLogger("discord")
    saved = (list(root.handlers), root.level, discord_logger.level)
    yield
    for handler in root.handlers:
        if handler not in saved[0]:
            handler.close()
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    discord_logger.setLevel(saved[2])


def test_log_file_path_is_timestamped():
    path = log_setup.log_file_path("logs", datetime(2024, 5, 1, 20, 15, 0))
    assert path == os.path.join("logs", "Meeting_Log_2024-05-01_20-15-00.txt")


def test_setup_logging_writes_to_a_fresh_log_dir(tmp_path, clean_logging):
    log_dir = tmp_path / "nested" / "logs"

    path = log_setup.setup_logging(str(log_dir), level="DEBUG", discord_level="ERROR",
                                   capture_std_streams=False)
    logging.getLogger("SessionManager").debug("[SessionManager] hello")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert os.path.dirname(path) == str(log_dir)
    with open(path, encoding="utf-8") as f:
        contents = f.read()
    assert "[DEBUG] [SessionManager] [SessionManager] hello" in contents
    assert logging.getLogger("discord").level == logging.ERROR
    assert sys.excepthook is log_setup.log_uncaught


def test_stream_to_logger_splits_lines(caplog):
    stream = log_setup.StreamToLogger(logging.getLogger("STDOUT"), logging.WARNING)

    stream.write("first\nsecond\n")

    assert [r.getMessage() for r in caplog.records] == ["first", "second"]
