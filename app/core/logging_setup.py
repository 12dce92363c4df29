import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from app.core.config import Settings, settings as default_settings


def _gzip_namer(name: str) -> str:
    return name + ".gz"


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


def setup_logging(config: Optional[Settings] = None):
    """Configures logging to the console and, if enabled, a size-rotated file."""
    config = config or default_settings
    handlers = [logging.StreamHandler(sys.stdout)]

    if config.log_to_file:
        log_dir = os.path.dirname(config.log_file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file_path,
            maxBytes=config.log_max_size_mb * 1024 * 1024,
            backupCount=config.log_max_backups,
            encoding="utf-8",
        )
        if config.log_compress:
            file_handler.namer = _gzip_namer
            file_handler.rotator = _gzip_rotator
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    # Ensure specific loggers are also propagating or handled
    logging.getLogger("uvicorn").handlers = []  # Avoid double logging if uvicorn sets its own
    logging.getLogger("uvicorn").propagate = True
    logging.getLogger("httpx").setLevel(logging.INFO)
