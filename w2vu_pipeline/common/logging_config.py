from __future__ import annotations

import logging
from pathlib import Path
from typing import Final


DEFAULT_LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
PIPELINE_LOG_NAME: Final[str] = "pipeline.log"


def configure_logging(level: int = logging.INFO, log_dir: str | None = None) -> None:
    """Configure standard library logging for the CLI.

    If log_dir is provided, records are appended to '<log_dir>/pipeline.log'
    as well as stderr, so a resumed run extends the same log.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_dir) / PIPELINE_LOG_NAME, encoding="utf-8"))

    logging.basicConfig(level=level, format=DEFAULT_LOG_FORMAT, handlers=handlers, force=True)
