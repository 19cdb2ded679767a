# core/logs.py
from __future__ import annotations
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    if level.upper() != "DEBUG":
        logging.getLogger("asyncio").setLevel(logging.WARNING)
