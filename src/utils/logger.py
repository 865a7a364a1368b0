"""
Logging Setup
Named loggers with console and optional file output
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(
    name: str,
    log_file: Optional[str] = None,
    level: Union[str, int] = "INFO"
) -> logging.Logger:
    """
    Create or fetch a configured logger.

    Args:
        name: Logger name
        log_file: Optional path of a file that also receives the records
        level: Logging level name or number

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)

    # Handlers are attached once per logger name
    if not any(getattr(h, "_nca_console", False) for h in logger.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        console._nca_console = True
        logger.addHandler(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        known = {getattr(h, "baseFilename", None) for h in logger.handlers}
        if os.path.abspath(log_path) not in known:
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.propagate = False

    return logger
