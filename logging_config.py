import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure the root logger once for the whole process.

    Logs go to stdout, and additionally to ``log_file`` when one is given.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    # redis and uvicorn access logs are noisy at DEBUG
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))
    logging.getLogger("redis").setLevel(max(level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
