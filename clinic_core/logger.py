# clinic_core/logger.py
import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from .config import LOG_FILE, LOG_LEVEL

formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(LOG_LEVEL)
console_handler.setFormatter(formatter)

handlers: list[logging.Handler] = [console_handler]

# File handler with rotation, only when a log file is configured
if LOG_FILE:
    log_dir = os.path.dirname(LOG_FILE)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    file_handler = RotatingFileHandler(
        filename=LOG_FILE,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3,
    )
    file_handler.setLevel(LOG_LEVEL)
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

logger = logging.getLogger("clinic_core")
logger.setLevel(LOG_LEVEL)
for _handler in handlers:
    logger.addHandler(_handler)
logger.propagate = False


def get_module_logger(name: str) -> logging.Logger:
    """Child of the package logger so records share its handlers."""
    if not name.startswith("clinic_core"):
        name = f"clinic_core.{name}"
    module_logger = logging.getLogger(name)
    module_logger.setLevel(LOG_LEVEL)
    return module_logger
