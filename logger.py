import logging
import os
import sys
from datetime import datetime

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s'


class StreamToLogger:
    """File-like object that turns writes (print, stray tracebacks) into log lines."""

    def __init__(self, logger, level):
        self.logger = logger
        self.level = level

    def write(self, buf):
        for line in buf.rstrip().splitlines():
            self.logger.log(self.level, line.rstrip())

    def flush(self):
        pass


def log_uncaught(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logging.getLogger("UncaughtException").error(
        "Uncaught exception",
        exc_info=(exc_type, exc_value, exc_traceback)
    )


def log_file_path(log_dir: str, when: datetime = None) -> str:
    """One file per bot run, e.g. logs/Meeting_Log_2024-05-01_20-15-00.txt"""
    stamp = (when or datetime.now()).strftime('%Y-%m-%d_%H-%M-%S')
    return os.path.join(log_dir, f'Meeting_Log_{stamp}.txt')


def setup_logging(log_dir: str = "logs", level="INFO", discord_level="WARNING", capture_std_streams=True) -> str:
    """
    Configure process-wide logging for the bot.

    Args:
        log_dir (str): Directory for the run's log file, created if missing.
        level (str | int): Level for the bot's own loggers (LOG_LEVEL in config).
        discord_level (str | int): Level for discord.py's loggers, which are chatty at INFO.
        capture_std_streams (bool): Route stdout/stderr through logging as well.

    Returns:
        str: Path of the log file.
    """
    os.makedirs(log_dir, exist_ok=True)
    path = log_file_path(log_dir)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(path, encoding='utf-8'),
            logging.StreamHandler(sys.__stdout__)
        ],
        force=True,
    )
    logging.getLogger('discord').setLevel(discord_level)

    sys.excepthook = log_uncaught

    if capture_std_streams:
        sys.stdout = StreamToLogger(logging.getLogger('STDOUT'), logging.INFO)
        sys.stderr = StreamToLogger(logging.getLogger('STDERR'), logging.ERROR)

    logging.getLogger(__name__).info(f"Logging to {path}")
    return path
