import logging
import os

GREY = "\x1b[38;20m"
GREEN = "\x1b[32;20m"
YELLOW = "\x1b[33;20m"
RED = "\x1b[31;20m"
BOLD_RED = "\x1b[31;1m"
RESET = "\x1b[0m"


class ColorfulFormatter(logging.Formatter):
    """Colours the whole line by level."""

    fmt = "%(asctime)s::%(name)s::%(levelname)s: %(message)s (%(filename)s:%(lineno)d)"
    colors = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def __init__(self):
        super().__init__()
        self._formatters = {
            level: logging.Formatter(f"{color}{self.fmt}{RESET}" if color else self.fmt)
            for level, color in self.colors.items()
        }

    def format(self, record: logging.LogRecord):
        formatter = self._formatters.get(record.levelno)
        if formatter is None:
            formatter = logging.Formatter(self.fmt)
        return formatter.format(record)


# messages relayed from the worker process are printed as the worker wrote them
class RelayedFormatter(ColorfulFormatter):
    fmt = "%(message)s"
    colors = {**ColorfulFormatter.colors, logging.INFO: ""}


def _level_from_env(default: int) -> int:
    # getLevelName maps known names to ints and anything else to a string
    level = logging.getLevelName((os.getenv("LMNR_LOG_LEVEL") or "").upper())
    return level if isinstance(level, int) else default


def get_default_logger(
    name: str,
    level: int = logging.INFO,
    propagate: bool = False,
    verbose: bool = True,
):
    logger = logging.getLogger(name)
    logger.setLevel(_level_from_env(level))
    # called at import time of many modules; do not stack handlers
    if not logger.handlers:
        console_log_handler = logging.StreamHandler()
        console_log_handler.setFormatter(
            ColorfulFormatter() if verbose else RelayedFormatter()
        )
        logger.addHandler(console_log_handler)
    logger.propagate = propagate
    return logger
