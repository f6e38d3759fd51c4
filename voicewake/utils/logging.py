from __future__ import annotations

import logging
import os
from typing import Optional

# Capture callbacks log from the PortAudio thread, everything else from the loop
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def configure_logging(level: Optional[str] = None) -> int:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    logging.getLogger("voicewake").setLevel(numeric_level)

    # The speech client logs every request at INFO
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(logging.WARNING, numeric_level))
    return numeric_level
